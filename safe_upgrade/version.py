"""
Installed-version marker.

A simple key=value text file (``.security-controls/.version``) written by the
installer. Values may be quoted; blank lines and ``#`` comments are ignored.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Union

from safe_upgrade.constants import Paths, is_valid_version
from safe_upgrade.errors import VersionMarkerError
from safe_upgrade.utils.fileops import atomic_write_bytes

logger = logging.getLogger(__name__)


class VersionMarker:
    """Reads and updates the installed-version marker file."""

    def __init__(self, root: Union[str, Path], relative_path: str = Paths.VERSION_FILE):
        self.root = Path(root)
        self.path = self.root / relative_path

    def read_fields(self) -> Dict[str, str]:
        """Parse all key=value fields. Missing file -> empty dict."""
        if not self.path.is_file():
            return {}

        fields: Dict[str, str] = {}
        for line in self.path.read_text(encoding='utf-8').splitlines():
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, value = line.split('=', 1)
            fields[key.strip()] = value.strip().strip('"').strip("'")
        return fields

    def read_version(self) -> Optional[str]:
        """
        Return the installed version, or None when it cannot be determined.

        Raises:
            VersionMarkerError: If the marker exists but holds a malformed version
        """
        version = self.read_fields().get('version')
        if not version:
            logger.debug(f"No version marker at {self.path}")
            return None

        if not is_valid_version(version):
            raise VersionMarkerError(
                f"Malformed version '{version}' in version marker",
                path=str(self.path),
                phase="detect_version",
            )
        return version[1:] if version.startswith('v') else version

    def write_version(self, version: str, **extra: str) -> None:
        """Record a new installed version, keeping other fields."""
        if not is_valid_version(version):
            raise VersionMarkerError(f"Refusing to record invalid version '{version}'",
                                     path=str(self.path))

        fields = self.read_fields()
        fields['version'] = version
        fields['upgraded_at'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
        fields.update(extra)

        content = ''.join(f'{key}="{value}"\n' for key, value in fields.items())
        atomic_write_bytes(self.path, content.encode('utf-8'))
        logger.info(f"Recorded installed version {version}")


__all__ = ['VersionMarker']
