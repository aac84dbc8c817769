"""
Tests for release sources.

HTTP is mocked at the requests.Session level; retry delays are patched out.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from safe_upgrade.config import UpgradeConfig
from safe_upgrade.errors import ArtifactFetchError, NetworkError
from safe_upgrade.release import GitHubReleaseSource, LocalReleaseSource, create_release_source


def response(status_code=200, text='', content=b'', json_data=None):
    mock = MagicMock()
    mock.status_code = status_code
    mock.text = text
    mock.content = content
    mock.json.return_value = json_data or {}
    return mock


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def github(session):
    return GitHubReleaseSource('org/repo', provenance_asset='multiple.intoto.jsonl', timeout=5, session=session)


@pytest.fixture(autouse=True)
def no_retry_delay():
    with patch('safe_upgrade.utils.error_handling.time.sleep') as mock_sleep:
        yield mock_sleep


class TestGitHubReleaseSource:
    """Tests for GitHub release downloads."""

    def test_asset_url(self, github):
        assert github.asset_url('0.7.0', 'pinactlite') == (
            'https://github.com/org/repo/releases/download/v0.7.0/pinactlite'
        )

    def test_latest_version(self, github, session):
        session.get.return_value = response(json_data={'tag_name': 'v0.7.0'})
        assert github.latest_version() == '0.7.0'
        assert session.get.call_args[0][0] == 'https://api.github.com/repos/org/repo/releases/latest'
        assert session.get.call_args[1]['timeout'] == 5

    def test_latest_version_not_a_version(self, github, session):
        session.get.return_value = response(json_data={'tag_name': 'nightly'})
        assert github.latest_version() is None

    def test_fetch_provenance(self, github, session):
        session.get.return_value = response(text='{"payload": "..."}')
        assert github.fetch_provenance('0.7.0') == '{"payload": "..."}'
        assert session.get.call_args[0][0].endswith('/v0.7.0/multiple.intoto.jsonl')

    def test_unpublished_provenance(self, github, session):
        """A 404 means the release has no provenance, not a network failure."""
        session.get.return_value = response(status_code=404)
        assert github.fetch_provenance('0.7.0') is None
        assert session.get.call_count == 1

    def test_server_error_retried_once(self, github, session, no_retry_delay):
        """Failures are retried once, then raised."""
        session.get.return_value = response(status_code=502)
        with pytest.raises(NetworkError, match="HTTP 502"):
            github.fetch_provenance('0.7.0')
        assert session.get.call_count == 2
        assert no_retry_delay.call_count == 1

    def test_transient_failure_recovers(self, github, session):
        session.get.side_effect = [
            requests.ConnectionError("reset by peer"),
            response(text='provenance'),
        ]
        assert github.fetch_provenance('0.7.0') == 'provenance'
        assert session.get.call_count == 2

    def test_timeout_is_network_error(self, github, session):
        session.get.side_effect = requests.Timeout("read timed out")
        with pytest.raises(NetworkError):
            github.fetch_provenance('0.7.0')

    def test_fetch_artifact(self, github, session, temp_dir):
        """Artifacts are staged privately in the destination directory."""
        session.get.return_value = response(content=b'#!/bin/sh\n')
        staged = github.fetch_artifact('0.7.0', 'pre-push', temp_dir)

        assert staged == temp_dir / 'pre-push'
        assert staged.read_bytes() == b'#!/bin/sh\n'
        assert staged.stat().st_mode & 0o777 == 0o600

    def test_missing_artifact(self, github, session, temp_dir):
        session.get.return_value = response(status_code=404)
        with pytest.raises(ArtifactFetchError):
            github.fetch_artifact('0.7.0', 'pre-push', temp_dir)

    def test_description(self, github):
        assert github.description == 'github.com/org/repo'


class TestLocalReleaseSource:
    """Tests for unpacked releases on disk."""

    def test_version_directories(self, temp_dir):
        for version in ('0.6.10', '0.7.0', 'v0.6.9'):
            (temp_dir / version).mkdir()
        (temp_dir / 'notes').mkdir()
        assert LocalReleaseSource(temp_dir).latest_version() == '0.7.0'

    def test_numeric_ordering(self, temp_dir):
        """0.6.10 is newer than 0.6.9."""
        for version in ('0.6.9', '0.6.10'):
            (temp_dir / version).mkdir()
        assert LocalReleaseSource(temp_dir).latest_version() == '0.6.10'

    def test_flat_layout_with_version_file(self, temp_dir):
        (temp_dir / 'VERSION').write_text('v0.7.0\n')
        (temp_dir / 'pre-push').write_bytes(b'hook')
        source = LocalReleaseSource(temp_dir)

        assert source.latest_version() == '0.7.0'
        staged = source.fetch_artifact('0.7.0', 'pre-push', temp_dir / 'staging')
        assert staged.read_bytes() == b'hook'

    def test_v_prefixed_directory(self, temp_dir):
        (temp_dir / 'v0.7.0').mkdir()
        (temp_dir / 'v0.7.0' / 'multiple.intoto.jsonl').write_text('doc')
        assert LocalReleaseSource(temp_dir, 'multiple.intoto.jsonl').fetch_provenance('0.7.0') == 'doc'

    def test_missing_provenance(self, temp_dir):
        (temp_dir / '0.7.0').mkdir()
        assert LocalReleaseSource(temp_dir).fetch_provenance('0.7.0') is None

    def test_missing_artifact(self, temp_dir):
        (temp_dir / '0.7.0').mkdir()
        with pytest.raises(ArtifactFetchError):
            LocalReleaseSource(temp_dir).fetch_artifact('0.7.0', 'pre-push', temp_dir / 'staging')

    def test_empty_directory(self, temp_dir):
        assert LocalReleaseSource(temp_dir).latest_version() is None


class TestCreateReleaseSource:

    def test_local_when_release_dir_set(self, temp_dir):
        source = create_release_source(UpgradeConfig(release_dir=str(temp_dir)))
        assert isinstance(source, LocalReleaseSource)

    def test_github_by_default(self):
        source = create_release_source(UpgradeConfig(repository='org/repo', http_timeout=7))
        assert isinstance(source, GitHubReleaseSource)
        assert source.repository == 'org/repo'
        assert source.timeout == 7
