"""
Tests for the Constants module.

Tests centralized configuration values, version helpers and environment
overrides.
"""

import re

import pytest

from safe_upgrade.constants import (
    BackupNaming,
    Defaults,
    Paths,
    Retries,
    Timeouts,
    _env_override,
    _env_override_list,
    is_valid_version,
    version_key,
)


# ===========================================================================
# Timeout Constants Tests
# ===========================================================================

class TestTimeouts:
    """Tests for Timeouts dataclass."""

    def test_timeouts_positive(self):
        """Every external call must be bounded."""
        assert Timeouts.HTTP_REQUEST > 0
        assert Timeouts.VERIFIER_PROCESS > 0
        assert Timeouts.DIFF_PROCESS > 0
        assert Timeouts.MERGE_PROCESS > 0

    def test_merge_allows_interactive_session(self):
        """Merging is interactive and gets the longest bound."""
        assert Timeouts.MERGE_PROCESS > Timeouts.VERIFIER_PROCESS

    def test_single_retry(self):
        assert Retries.NETWORK_FETCH == 1


# ===========================================================================
# Path Constants Tests
# ===========================================================================

class TestPaths:
    """Tests for persisted state locations."""

    def test_state_under_control_dir(self):
        for path in (Paths.VERSION_FILE, Paths.BACKUP_DIR, Paths.LOCK_FILE, Paths.CONFIG_FILE):
            assert path.startswith(Paths.CONTROL_STATE_DIR + '/')


# ===========================================================================
# Backup Naming Tests
# ===========================================================================

class TestBackupNaming:
    """Tests for snapshot file names."""

    @pytest.mark.parametrize('name,original,batch', [
        ('pre-push.20250101_120000_123456.backup', 'pre-push', '20250101_120000_123456'),
        ('pre-push.20250101_120000.backup', 'pre-push', '20250101_120000'),
        ('my.hook.sh.20250101_120000_000001.backup', 'my.hook.sh', '20250101_120000_000001'),
    ])
    def test_pattern_matches(self, name, original, batch):
        match = re.match(BackupNaming.SNAPSHOT_PATTERN, name)
        assert match.group('name') == original
        assert match.group('batch') == batch

    def test_pattern_rejects_other_files(self):
        assert re.match(BackupNaming.SNAPSHOT_PATTERN, 'pre-push.backup') is None
        assert re.match(BackupNaming.SNAPSHOT_PATTERN, 'pre-push.2025.backup') is None


# ===========================================================================
# Version Helpers Tests
# ===========================================================================

class TestVersions:
    """Tests for version validation and ordering."""

    def test_valid_versions(self):
        assert is_valid_version('0.6.10')
        assert is_valid_version('v1.2.3')

    def test_invalid_versions(self):
        for version in ('', '1.2', '1.2.3-rc1', 'latest', 'vv1.2.3'):
            assert not is_valid_version(version)

    def test_version_key_numeric(self):
        assert version_key('0.6.10') > version_key('0.6.9')
        assert version_key('v0.7.0') == version_key('0.7.0')

    def test_defaults(self):
        assert '/' in Defaults.REPOSITORY
        assert Defaults.MERGE_TOOL_PREFERENCE
        assert 'TBD' in Defaults.PENDING_MARKERS


# ===========================================================================
# Environment Override Tests
# ===========================================================================

class TestEnvOverride:
    """Tests for SAFE_UPGRADE_ prefixed overrides."""

    def test_unset_uses_default(self, monkeypatch):
        monkeypatch.delenv('SAFE_UPGRADE_TEST_VALUE', raising=False)
        assert _env_override('TEST_VALUE', 5.0, float) == 5.0

    def test_valid_override(self, monkeypatch):
        monkeypatch.setenv('SAFE_UPGRADE_TEST_VALUE', '12.5')
        assert _env_override('TEST_VALUE', 5.0, float) == 12.5

    def test_invalid_override_ignored(self, monkeypatch):
        monkeypatch.setenv('SAFE_UPGRADE_TEST_VALUE', 'fast')
        assert _env_override('TEST_VALUE', 5.0, float) == 5.0

    def test_bounds(self, monkeypatch):
        monkeypatch.setenv('SAFE_UPGRADE_TEST_VALUE', '0.5')
        assert _env_override('TEST_VALUE', 5.0, float, min_value=1.0) == 5.0
        monkeypatch.setenv('SAFE_UPGRADE_TEST_VALUE', '9999')
        assert _env_override('TEST_VALUE', 5.0, float, max_value=600.0) == 5.0

    def test_validator(self, monkeypatch):
        monkeypatch.setenv('SAFE_UPGRADE_TEST_VALUE', 'gpg')
        assert _env_override('TEST_VALUE', 'ed25519', validator=lambda v: v == 'ed25519') == 'ed25519'

    def test_list_override(self, monkeypatch):
        monkeypatch.setenv('SAFE_UPGRADE_TEST_LIST', 'kdiff3, meld,')
        assert _env_override_list('TEST_LIST', ('meld',)) == ('kdiff3', 'meld')
        monkeypatch.setenv('SAFE_UPGRADE_TEST_LIST', ' , ')
        assert _env_override_list('TEST_LIST', ('meld',)) == ('meld',)
