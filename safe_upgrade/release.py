"""
Release sources - where new versions, their artifacts and provenance come from.

GitHubReleaseSource downloads release assets over HTTPS with a bounded
timeout and a single retry. LocalReleaseSource reads an unpacked release
from disk (``--release-dir``), for offline upgrades and tests.

Nothing fetched here is trusted: staged artifacts are only used after their
digests match the hash registry.
"""

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

import requests

from safe_upgrade.constants import Defaults, Retries, Timeouts, is_valid_version, version_key
from safe_upgrade.errors import ArtifactFetchError, NetworkError
from safe_upgrade.utils.error_handling import ErrorCategory, with_error_handling
from safe_upgrade.utils.fileops import atomic_write_bytes

logger = logging.getLogger(__name__)


class ReleaseSource(ABC):
    """Fetches release metadata and assets for a version."""

    @abstractmethod
    def latest_version(self) -> Optional[str]:
        """Newest published version, or None when it cannot be determined."""

    @abstractmethod
    def fetch_provenance(self, version: str) -> Optional[str]:
        """
        Provenance document text for a version.

        Returns None when the release publishes no provenance.

        Raises:
            NetworkError: If the provenance could not be downloaded
        """

    @abstractmethod
    def fetch_artifact(self, version: str, asset: str, dest_dir: Union[str, Path]) -> Path:
        """
        Download one release asset into dest_dir.

        Raises:
            ArtifactFetchError: If the release has no such asset
            NetworkError: If the download failed
        """

    @property
    def description(self) -> str:
        return type(self).__name__


class GitHubReleaseSource(ReleaseSource):
    """
    GitHub releases of a repository.

    Usage:
        source = GitHubReleaseSource('h4x0r/1-click-github-sec')
        text = source.fetch_provenance('0.7.0')
    """

    def __init__(
        self,
        repository: str = Defaults.REPOSITORY,
        provenance_asset: str = Defaults.PROVENANCE_ASSET,
        timeout: float = Timeouts.HTTP_REQUEST,
        session: Optional[requests.Session] = None,
    ):
        self.repository = repository
        self.provenance_asset = provenance_asset
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def description(self) -> str:
        return f"github.com/{self.repository}"

    def asset_url(self, version: str, asset: str) -> str:
        return Defaults.RELEASE_URL_TEMPLATE.format(
            repository=self.repository, version=version, asset=asset,
        )

    @with_error_handling(
        category=ErrorCategory.NETWORK,
        operation="release_download",
        reraise=True,
        retry_count=Retries.NETWORK_FETCH,
        retry_delay=Timeouts.NETWORK_RETRY_DELAY,
        retry_exceptions=(NetworkError,),
    )
    def _get(self, url: str) -> Optional[requests.Response]:
        """GET a URL. 404 -> None; any other failure -> NetworkError."""
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {e}", phase="fetch")

        if response.status_code == 404:
            logger.debug(f"Not found: {url}")
            return None
        if response.status_code >= 400:
            raise NetworkError(
                f"Request to {url} failed with HTTP {response.status_code}",
                phase="fetch",
            )
        return response

    def latest_version(self) -> Optional[str]:
        url = Defaults.LATEST_RELEASE_API.format(repository=self.repository)
        response = self._get(url)
        if response is None:
            return None
        try:
            tag = response.json().get('tag_name', '')
        except ValueError:
            logger.warning("Latest release response is not valid JSON")
            return None
        if not is_valid_version(tag):
            logger.warning(f"Latest release tag is not a version: {tag!r}")
            return None
        return tag[1:] if tag.startswith('v') else tag

    def fetch_provenance(self, version: str) -> Optional[str]:
        url = self.asset_url(version, self.provenance_asset)
        logger.info(f"Downloading provenance for v{version}")
        response = self._get(url)
        if response is None:
            logger.warning(f"Release v{version} publishes no {self.provenance_asset}")
            return None
        return response.text

    def fetch_artifact(self, version: str, asset: str, dest_dir: Union[str, Path]) -> Path:
        url = self.asset_url(version, asset)
        response = self._get(url)
        if response is None:
            raise ArtifactFetchError(
                f"Release v{version} has no asset {asset}",
                path=asset,
                phase="fetch",
            )
        dest = Path(dest_dir) / asset
        atomic_write_bytes(dest, response.content, mode=0o600)
        logger.debug(f"Staged {asset} ({len(response.content)} bytes)")
        return dest


class LocalReleaseSource(ReleaseSource):
    """
    A release unpacked on disk.

    Layouts supported:
        <dir>/<version>/<asset>   (or <dir>/v<version>/<asset>)
        <dir>/<asset> with the version in <dir>/VERSION
    """

    def __init__(
        self,
        release_dir: Union[str, Path],
        provenance_asset: str = Defaults.PROVENANCE_ASSET,
    ):
        self.release_dir = Path(release_dir)
        self.provenance_asset = provenance_asset

    @property
    def description(self) -> str:
        return str(self.release_dir)

    def _version_dir(self, version: str) -> Path:
        for candidate in (self.release_dir / version, self.release_dir / f"v{version}"):
            if candidate.is_dir():
                return candidate
        return self.release_dir

    def latest_version(self) -> Optional[str]:
        versions = []
        if self.release_dir.is_dir():
            for entry in self.release_dir.iterdir():
                if entry.is_dir() and is_valid_version(entry.name):
                    versions.append(entry.name.lstrip('v'))
        if versions:
            return max(versions, key=version_key)

        marker = self.release_dir / 'VERSION'
        if marker.is_file():
            version = marker.read_text(encoding='utf-8').strip()
            if is_valid_version(version):
                return version.lstrip('v')
        return None

    def fetch_provenance(self, version: str) -> Optional[str]:
        path = self._version_dir(version) / self.provenance_asset
        if not path.is_file():
            logger.warning(f"No {self.provenance_asset} in {path.parent}")
            return None
        return path.read_text(encoding='utf-8')

    def fetch_artifact(self, version: str, asset: str, dest_dir: Union[str, Path]) -> Path:
        source = self._version_dir(version) / asset
        if not source.is_file():
            raise ArtifactFetchError(
                f"Release v{version} has no asset {asset}",
                path=str(source),
                phase="fetch",
            )
        dest = Path(dest_dir) / asset
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest)
        return dest


def create_release_source(config) -> ReleaseSource:
    """Release source for an UpgradeConfig."""
    if config.release_dir:
        logger.info(f"Using local release directory {config.release_dir}")
        return LocalReleaseSource(config.release_dir, provenance_asset=config.provenance_asset)
    return GitHubReleaseSource(
        repository=config.repository,
        provenance_asset=config.provenance_asset,
        timeout=config.http_timeout,
    )


__all__ = [
    'ReleaseSource',
    'GitHubReleaseSource',
    'LocalReleaseSource',
    'create_release_source',
]
