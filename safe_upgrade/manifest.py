"""
Managed files - the artifacts whose install/verify/upgrade lifecycle is tracked.

The list is registered at install time. It can be overridden from the
configuration file; entries are never dropped silently.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class FileRole(Enum):
    """Logical role of a managed file."""
    BINARY = "binary"           # Helper binaries (pinactlite, gitleakslite)
    HOOK = "hook"               # Git hooks
    CONFIG = "config"           # Generated configuration
    INSTALLER = "installer"     # Top-level installer artifact


@dataclass(frozen=True)
class ManagedFile:
    """A project-relative path tracked by the upgrade engine."""
    path: str
    role: FileRole
    asset: Optional[str] = None  # Release asset name (defaults to basename)

    def __post_init__(self):
        normalized = PurePosixPath(self.path)
        if normalized.is_absolute() or '..' in normalized.parts:
            raise ValueError(f"Managed file path must be project-relative: {self.path}")
        object.__setattr__(self, 'path', str(normalized))

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name

    @property
    def asset_name(self) -> str:
        return self.asset or self.name

    @property
    def executable(self) -> bool:
        return self.role in (FileRole.BINARY, FileRole.HOOK, FileRole.INSTALLER)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'role': self.role.value,
            'asset': self.asset_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ManagedFile':
        return cls(
            path=data['path'],
            role=FileRole(data.get('role', FileRole.CONFIG.value)),
            asset=data.get('asset'),
        )


DEFAULT_MANAGED_FILES = (
    ManagedFile(".security-controls/bin/pinactlite", FileRole.BINARY),
    ManagedFile(".security-controls/bin/gitleakslite", FileRole.BINARY),
    ManagedFile(".git/hooks/pre-push", FileRole.HOOK),
    ManagedFile(".git/hooks/pre-commit", FileRole.HOOK),
)


def load_managed_files(entries: Optional[Iterable[Any]]) -> List[ManagedFile]:
    """
    Build the managed-file list from configuration entries.

    Entries may be plain path strings or mappings with path/role/asset.
    Returns the default list when no entries are configured.
    """
    if not entries:
        return list(DEFAULT_MANAGED_FILES)

    files: List[ManagedFile] = []
    seen = set()
    for entry in entries:
        if isinstance(entry, str):
            managed = ManagedFile(entry, _guess_role(entry))
        else:
            managed = ManagedFile.from_dict(entry)
        if managed.path in seen:
            logger.warning(f"Duplicate managed file entry ignored: {managed.path}")
            continue
        seen.add(managed.path)
        files.append(managed)
    return files


def _guess_role(path: str) -> FileRole:
    if '/hooks/' in path:
        return FileRole.HOOK
    if '/bin/' in path:
        return FileRole.BINARY
    if path.endswith('.sh'):
        return FileRole.INSTALLER
    return FileRole.CONFIG


__all__ = [
    'FileRole',
    'ManagedFile',
    'DEFAULT_MANAGED_FILES',
    'load_managed_files',
]
