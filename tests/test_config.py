"""
Tests for configuration loading and the managed-file list.
"""

import pytest
import yaml

from safe_upgrade.config import ConfigError, UpgradeConfig, load_config
from safe_upgrade.manifest import DEFAULT_MANAGED_FILES, FileRole, ManagedFile, load_managed_files

KEY_HEX = '3b6a27bcceb6a42d62a3a8d02a6f0d73653215771de243a63ac048a18b59da29'


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ('MERGE_TOOL', 'SAFE_UPGRADE_RELEASE_DIR', 'SAFE_UPGRADE_TRUSTED_KEY'):
        monkeypatch.delenv(name, raising=False)


def write_config(project_root, data):
    path = project_root / '.security-controls' / 'upgrade.yaml'
    path.write_text(yaml.safe_dump(data))
    return path


class TestManagedFiles:
    """Tests for the managed-file list."""

    def test_defaults(self):
        files = load_managed_files(None)
        assert [f.path for f in files] == [f.path for f in DEFAULT_MANAGED_FILES]

    def test_string_entries_guess_role(self):
        files = load_managed_files(['.git/hooks/post-merge', '.security-controls/bin/tool', 'setup.sh', 'x.yml'])
        assert [f.role for f in files] == [FileRole.HOOK, FileRole.BINARY, FileRole.INSTALLER, FileRole.CONFIG]

    def test_mapping_entries(self):
        files = load_managed_files([{'path': 'bin/tool', 'role': 'binary', 'asset': 'tool-linux'}])
        assert files[0].asset_name == 'tool-linux'
        assert files[0].executable

    def test_duplicates_ignored(self):
        files = load_managed_files(['.git/hooks/pre-push', '.git/hooks/pre-push'])
        assert len(files) == 1

    def test_paths_must_be_relative(self):
        with pytest.raises(ValueError):
            ManagedFile('/etc/passwd', FileRole.CONFIG)
        with pytest.raises(ValueError):
            ManagedFile('../outside', FileRole.CONFIG)

    def test_round_trip(self):
        managed = ManagedFile('.git/hooks/pre-push', FileRole.HOOK)
        assert ManagedFile.from_dict(managed.to_dict()) == ManagedFile('.git/hooks/pre-push', FileRole.HOOK,
                                                                       'pre-push')
        assert managed.name == 'pre-push'


class TestLoadConfig:
    """Tests for the YAML configuration file."""

    def test_defaults_without_file(self, project_root):
        config = load_config(project_root)
        assert config.verifier in ('ed25519', 'slsa-verifier')
        assert config.trusted_keys == {}
        assert len(config.managed_files) == len(DEFAULT_MANAGED_FILES)

    def test_file_values(self, project_root):
        write_config(project_root, {
            'repository': 'org/repo',
            'verifier': 'slsa-verifier',
            'require_transparency_log': True,
            'trusted_keys': {'release-2025': KEY_HEX},
            'managed_files': ['.git/hooks/pre-push'],
            'http_timeout': 10,
        })
        config = load_config(project_root)

        assert config.repository == 'org/repo'
        assert config.source_uri == 'github.com/org/repo'
        assert config.verifier == 'slsa-verifier'
        assert config.require_transparency_log is True
        assert config.trusted_keys == {'release-2025': KEY_HEX}
        assert [f.path for f in config.managed_files] == ['.git/hooks/pre-push']
        assert config.http_timeout == 10

    def test_explicit_path_must_exist(self, project_root):
        with pytest.raises(ConfigError):
            load_config(project_root, project_root / 'nope.yaml')

    def test_invalid_yaml(self, project_root):
        path = project_root / '.security-controls' / 'upgrade.yaml'
        path.write_text('repository: [unclosed\n')
        with pytest.raises(ConfigError):
            load_config(project_root)

    def test_not_a_mapping(self, project_root):
        path = project_root / '.security-controls' / 'upgrade.yaml'
        path.write_text('- a\n- b\n')
        with pytest.raises(ConfigError):
            load_config(project_root)

    def test_unknown_verifier(self, project_root):
        write_config(project_root, {'verifier': 'gpg'})
        with pytest.raises(ConfigError, match="verifier"):
            load_config(project_root)

    def test_bad_trusted_key(self, project_root):
        write_config(project_root, {'trusted_keys': {'release': 'abcd'}})
        with pytest.raises(ConfigError, match="Trusted key"):
            load_config(project_root)

    def test_bad_repository(self, project_root):
        write_config(project_root, {'repository': 'no-slash'})
        with pytest.raises(ConfigError):
            load_config(project_root)

    def test_environment_overrides(self, project_root, monkeypatch):
        monkeypatch.setenv('MERGE_TOOL', 'kdiff3')
        monkeypatch.setenv('SAFE_UPGRADE_RELEASE_DIR', '/srv/releases')
        monkeypatch.setenv('SAFE_UPGRADE_TRUSTED_KEY', KEY_HEX)

        config = load_config(project_root)
        assert config.merge_tool == 'kdiff3'
        assert config.release_dir == '/srv/releases'
        assert config.trusted_keys['env'] == KEY_HEX

    def test_unknown_keys_ignored(self, project_root):
        write_config(project_root, {'colour': 'blue'})
        assert isinstance(load_config(project_root), UpgradeConfig)
