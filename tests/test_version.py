"""
Tests for the installed-version marker and file operations.
"""

import os

import pytest

from safe_upgrade.errors import UpgradeLockedError, VersionMarkerError
from safe_upgrade.utils.fileops import UpgradeLock, atomic_write_bytes, sha256_bytes, sha256_file
from safe_upgrade.version import VersionMarker


class TestVersionMarker:
    """Tests for reading and writing .security-controls/.version"""

    def test_missing_marker(self, project_root):
        assert VersionMarker(project_root).read_version() is None

    def test_quoted_value(self, project_root):
        marker = VersionMarker(project_root)
        marker.path.write_text('# installed by installer\nversion="0.6.10"\ninstalled_at=2025-01-01\n')
        assert marker.read_version() == '0.6.10'
        assert marker.read_fields()['installed_at'] == '2025-01-01'

    def test_v_prefix_stripped(self, project_root):
        marker = VersionMarker(project_root)
        marker.path.write_text("version='v0.6.10'\n")
        assert marker.read_version() == '0.6.10'

    def test_malformed_version(self, project_root):
        marker = VersionMarker(project_root)
        marker.path.write_text('version=latest\n')
        with pytest.raises(VersionMarkerError):
            marker.read_version()

    def test_marker_without_version(self, project_root):
        marker = VersionMarker(project_root)
        marker.path.write_text('installed_at=2025-01-01\n')
        assert marker.read_version() is None

    def test_write_keeps_other_fields(self, project_root):
        marker = VersionMarker(project_root)
        marker.path.write_text('version="0.6.10"\ninstaller=1-click\n')

        marker.write_version('0.7.0', kept='.git/hooks/pre-push')

        fields = marker.read_fields()
        assert fields['version'] == '0.7.0'
        assert fields['installer'] == '1-click'
        assert fields['kept'] == '.git/hooks/pre-push'
        assert 'upgraded_at' in fields

    def test_write_rejects_invalid(self, project_root):
        with pytest.raises(VersionMarkerError):
            VersionMarker(project_root).write_version('next')


class TestFileOps:
    """Tests for hashing, atomic writes and the session lock."""

    def test_sha256(self, temp_dir):
        path = temp_dir / 'file'
        path.write_bytes(b'abc')
        expected = 'ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad'
        assert sha256_file(path) == expected
        assert sha256_bytes(b'abc') == expected

    def test_atomic_write_creates_parents(self, temp_dir):
        target = temp_dir / 'a' / 'b' / 'file'
        atomic_write_bytes(target, b'content', mode=0o640)
        assert target.read_bytes() == b'content'
        assert target.stat().st_mode & 0o777 == 0o640

    def test_atomic_write_keeps_mode(self, temp_dir):
        target = temp_dir / 'hook'
        target.write_bytes(b'old')
        os.chmod(target, 0o755)

        atomic_write_bytes(target, b'new')
        assert target.read_bytes() == b'new'
        assert target.stat().st_mode & 0o777 == 0o755

    def test_atomic_write_leaves_no_temp_files(self, temp_dir):
        atomic_write_bytes(temp_dir / 'file', b'x')
        assert os.listdir(temp_dir) == ['file']

    def test_lock_is_exclusive(self, temp_dir):
        lock_path = temp_dir / '.upgrade.lock'
        with UpgradeLock(lock_path) as lock:
            assert lock.held
            with pytest.raises(UpgradeLockedError):
                UpgradeLock(lock_path).acquire()
        assert not lock.held

        with UpgradeLock(lock_path):
            pass
