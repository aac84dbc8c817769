"""
Opt-in installer for the external slsa-verifier tool.

When the slsa-verifier backend is configured and the tool is not on PATH,
the user is offered a download of the pinned release binary. The binary is
only installed after its published .sha256 checksum matches; without a
checksum nothing is installed.
"""

import os
import platform
import shutil
from pathlib import Path
from typing import Optional, Union

import requests

from safe_upgrade.constants import Defaults, Retries, Timeouts
from safe_upgrade.errors import ArtifactFetchError, NetworkError, TrustError
from safe_upgrade.interaction import InteractionPort
from safe_upgrade.logging_config import get_logger
from safe_upgrade.utils.error_handling import ErrorCategory, with_error_handling
from safe_upgrade.utils.fileops import atomic_write_bytes, sha256_bytes

logger = get_logger(__name__)

_ARCHITECTURES = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
}


def platform_asset_name(system: Optional[str] = None, machine: Optional[str] = None) -> str:
    """
    Release asset name for this platform, e.g. 'slsa-verifier-linux-amd64'.

    Raises:
        ArtifactFetchError: If no binary is published for the architecture
    """
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    arch = _ARCHITECTURES.get(machine)
    if arch is None:
        raise ArtifactFetchError(
            f"No slsa-verifier binary is published for architecture {machine}",
            phase="install_verifier",
            next_step="install slsa-verifier manually or configure the ed25519 verifier",
        )
    return f"{Defaults.SLSA_VERIFIER_BINARY}-{system}-{arch}"


def find_slsa_verifier(
    binary: str = Defaults.SLSA_VERIFIER_BINARY,
    install_dir: Union[str, Path] = Defaults.SLSA_VERIFIER_INSTALL_DIR,
) -> Optional[str]:
    """Path of an installed slsa-verifier, looking in the install dir as well as PATH."""
    found = shutil.which(binary)
    if found:
        return found
    candidate = Path(install_dir).expanduser() / binary
    if candidate.is_file() and os.access(candidate, os.X_OK):
        return str(candidate)
    return None


def parse_checksum(text: str) -> str:
    """First field of a sha256sum line."""
    fields = text.split()
    if not fields or len(fields[0]) != 64:
        raise TrustError("Malformed slsa-verifier checksum file", phase="install_verifier")
    return fields[0].lower()


class SlsaVerifierInstaller:
    """
    Downloads and installs a pinned slsa-verifier release.

    Usage:
        installer = SlsaVerifierInstaller()
        path = installer.install()
    """

    def __init__(
        self,
        version: str = Defaults.SLSA_VERIFIER_VERSION,
        install_dir: Union[str, Path] = Defaults.SLSA_VERIFIER_INSTALL_DIR,
        timeout: float = Timeouts.HTTP_REQUEST,
        session: Optional[requests.Session] = None,
        asset: Optional[str] = None,
    ):
        self.version = version
        self.install_dir = Path(install_dir).expanduser()
        self.timeout = timeout
        self.session = session or requests.Session()
        self._asset = asset

    @property
    def asset(self) -> str:
        if self._asset is None:
            self._asset = platform_asset_name()
        return self._asset

    @property
    def target(self) -> Path:
        return self.install_dir / Defaults.SLSA_VERIFIER_BINARY

    def url(self, asset: str) -> str:
        return Defaults.SLSA_VERIFIER_URL_TEMPLATE.format(version=self.version, asset=asset)

    @with_error_handling(
        category=ErrorCategory.NETWORK,
        operation="slsa_verifier_download",
        reraise=True,
        retry_count=Retries.NETWORK_FETCH,
        retry_delay=Timeouts.NETWORK_RETRY_DELAY,
        retry_exceptions=(NetworkError,),
    )
    def _download(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {e}", phase="install_verifier")

        if response.status_code == 404:
            raise ArtifactFetchError(f"{url} not found", phase="install_verifier")
        if response.status_code >= 400:
            raise NetworkError(
                f"Request to {url} failed with HTTP {response.status_code}",
                phase="install_verifier",
            )
        return response.content

    def install(self) -> Path:
        """
        Download, check and install the binary.

        Raises:
            NetworkError, ArtifactFetchError: If a download failed
            TrustError: If the binary does not match its checksum
        """
        asset = self.asset
        logger.info(f"Downloading slsa-verifier {self.version} ({asset})")
        binary = self._download(self.url(asset))
        expected = parse_checksum(self._download(self.url(f"{asset}.sha256")).decode('utf-8', 'replace'))

        actual = sha256_bytes(binary)
        if actual != expected:
            raise TrustError(
                f"slsa-verifier checksum mismatch: expected {expected}, got {actual}",
                path=asset,
                phase="install_verifier",
                next_step="do not use this download; install slsa-verifier manually",
            )

        atomic_write_bytes(self.target, binary, mode=0o755)
        logger.security(f"Installed slsa-verifier {self.version} to {self.target} (sha256 {actual})")
        return self.target


def ensure_slsa_verifier(
    interaction: InteractionPort,
    installer: Optional[SlsaVerifierInstaller] = None,
    binary: str = Defaults.SLSA_VERIFIER_BINARY,
) -> Optional[str]:
    """
    Locate slsa-verifier, offering to install it when it is missing.

    Returns the binary path, or None when it is not installed and the user
    declined or the download failed. A checksum mismatch is raised.
    """
    installer = installer or SlsaVerifierInstaller()
    found = find_slsa_verifier(binary, installer.install_dir)
    if found:
        return found

    interaction.notify(f"{binary} is not installed; provenance cannot be verified without it",
                       level="warning")
    if not interaction.confirm(
        f"Download slsa-verifier {installer.version} and install it to {installer.install_dir}?"
    ):
        logger.warning("slsa-verifier installation declined")
        return None

    try:
        path = installer.install()
    except (NetworkError, ArtifactFetchError) as e:
        logger.warning(f"Could not install slsa-verifier: {e.message}")
        interaction.notify(f"Could not install slsa-verifier: {e.message}", level="error")
        return None

    interaction.notify(f"Installed slsa-verifier to {path}", level="success")
    if not shutil.which(binary):
        interaction.notify(f"Add {installer.install_dir} to your PATH to use it directly")
    return str(path)


__all__ = [
    'platform_asset_name',
    'find_slsa_verifier',
    'parse_checksum',
    'SlsaVerifierInstaller',
    'ensure_slsa_verifier',
]
