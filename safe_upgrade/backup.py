"""
Backup & Rollback Manager.

Snapshots live under ``.security-controls/backup/`` and mirror the managed
tree: the snapshot of ``.git/hooks/pre-push`` taken in batch
``20250101_120000_000000`` is

    .security-controls/backup/.git/hooks/pre-push.20250101_120000_000000.backup

so stripping the ``.<batch>.backup`` suffix and the backup directory prefix
gives back the original path. Batches are discovered from file names alone;
there is no index, and unrelated files in the backup directory are skipped.

Snapshots written by older releases (flat ``<name>.<YYYYMMDD_HHMMSS>.backup``
files) are recognised and mapped back through the managed-file list.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from safe_upgrade.constants import BackupNaming, Paths
from safe_upgrade.errors import BackupIOError, RestoreTargetMissingError
from safe_upgrade.interaction import InteractionPort
from safe_upgrade.manifest import ManagedFile
from safe_upgrade.utils.fileops import atomic_write_bytes, fsync_directory, sha256_bytes, sha256_file

logger = logging.getLogger(__name__)

SNAPSHOT_RE = re.compile(BackupNaming.SNAPSHOT_PATTERN)


def new_batch_id(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime(BackupNaming.BATCH_FORMAT)


def parse_batch_id(batch_id: str) -> datetime:
    """Timestamp of a batch id (current or legacy format)."""
    for fmt in (BackupNaming.BATCH_FORMAT, BackupNaming.LEGACY_BATCH_FORMAT):
        try:
            return datetime.strptime(batch_id, fmt)
        except ValueError:
            continue
    raise ValueError(f"Not a backup batch id: {batch_id}")


@dataclass(frozen=True)
class BackupRecord:
    """One snapshot of one managed file."""
    original_path: str
    snapshot_path: str
    batch_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'original_path': self.original_path,
            'snapshot_path': self.snapshot_path,
            'batch_id': self.batch_id,
        }


@dataclass
class BackupBatch:
    """All snapshots taken in one upgrade session."""
    batch_id: str
    created_at: datetime
    records: List[BackupRecord] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"Backup from {self.created_at.strftime('%Y-%m-%d %H:%M:%S')} ({len(self.records)} files)"


@dataclass
class RestoreResult:
    """Outcome of restoring a batch. Partial restores are reported, not fatal."""
    batch_id: str
    restored: List[str] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)  # (path, next step)
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.cancelled and not self.skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            'batch_id': self.batch_id,
            'restored': self.restored,
            'skipped': [{'path': p, 'next_step': s} for p, s in self.skipped],
            'cancelled': self.cancelled,
        }


class BackupManager:
    """
    Backup & Rollback Manager.

    Usage:
        backups = BackupManager(project_root, managed_files=config.managed_files)
        backups.start_batch()
        record = backups.backup('.git/hooks/pre-push')
        ...
        backups.rollback(interaction)
    """

    def __init__(
        self,
        root: Union[str, Path],
        backup_dir: str = Paths.BACKUP_DIR,
        managed_files: Optional[Iterable[ManagedFile]] = None,
    ):
        self.root = Path(root)
        self.backup_dir = self.root / backup_dir
        self.managed_files = list(managed_files or [])
        self.batch_id: Optional[str] = None
        self.records: List[BackupRecord] = []

    def start_batch(self, batch_id: Optional[str] = None) -> str:
        """Begin a new batch; all following backups share its timestamp."""
        self.batch_id = batch_id or new_batch_id()
        self.records = []
        logger.debug(f"Started backup batch {self.batch_id}")
        return self.batch_id

    def snapshot_path(self, path: str, batch_id: str) -> Path:
        return self.backup_dir / f"{path}.{batch_id}{BackupNaming.SUFFIX}"

    def backup(self, path: str) -> BackupRecord:
        """
        Durably snapshot the current content of a managed file.

        Raises:
            BackupIOError: If the snapshot could not be written and verified
        """
        if self.batch_id is None:
            self.start_batch()

        source = self.root / path
        snapshot = self.snapshot_path(path, self.batch_id)
        try:
            content = source.read_bytes()
            mode = source.stat().st_mode & 0o7777
            atomic_write_bytes(snapshot, content, mode=mode)
            fsync_directory(snapshot.parent)
            if sha256_file(snapshot) != sha256_bytes(content):
                raise OSError("snapshot content does not match original")
        except OSError as e:
            raise BackupIOError(
                f"Could not back up {path}: {e}",
                path=path,
                phase="backup",
            )

        record = BackupRecord(path, str(snapshot), self.batch_id)
        self.records.append(record)
        logger.info(f"Backed up {path} to {snapshot}")
        return record

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def _legacy_original(self, name: str) -> str:
        matches = [m.path for m in self.managed_files if m.name == name]
        return matches[0] if len(matches) == 1 else name

    def list_batches(self) -> List[BackupBatch]:
        """All batches, newest first."""
        if not self.backup_dir.is_dir():
            return []

        batches: Dict[str, BackupBatch] = {}
        for snapshot in sorted(self.backup_dir.rglob(f"*{BackupNaming.SUFFIX}")):
            if not snapshot.is_file():
                continue
            match = SNAPSHOT_RE.match(snapshot.name)
            if not match:
                logger.debug(f"Skipping unrelated file in backup dir: {snapshot}")
                continue

            batch_id = match.group('batch')
            try:
                created_at = parse_batch_id(batch_id)
            except ValueError:
                logger.debug(f"Skipping snapshot with invalid timestamp: {snapshot}")
                continue

            relative_dir = snapshot.parent.relative_to(self.backup_dir)
            name = match.group('name')
            if relative_dir == Path('.'):
                original = self._legacy_original(name)
            else:
                original = str(PurePosixPath(*relative_dir.parts, name))

            batch = batches.setdefault(batch_id, BackupBatch(batch_id, created_at))
            batch.records.append(BackupRecord(original, str(snapshot), batch_id))

        return sorted(batches.values(), key=lambda b: b.created_at, reverse=True)

    def get_batch(self, batch_id: str) -> Optional[BackupBatch]:
        for batch in self.list_batches():
            if batch.batch_id == batch_id:
                return batch
        return None

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore(self, batch_id: str, interaction: InteractionPort) -> RestoreResult:
        """
        Restore every snapshot of a batch after explicit confirmation.

        Files whose original location no longer exists are skipped with a
        warning; the rest of the batch proceeds.

        Raises:
            ValueError: If no such batch exists
        """
        batch = self.get_batch(batch_id)
        if batch is None:
            raise ValueError(f"No backup batch {batch_id}")

        result = RestoreResult(batch_id)
        interaction.notify("Files to restore:")
        for record in batch.records:
            interaction.notify(f"  - {record.original_path}")

        if not interaction.confirm("Restore these files?"):
            interaction.notify("Rollback cancelled")
            result.cancelled = True
            return result

        for record in batch.records:
            target = self.root / record.original_path
            if not target.parent.is_dir() or not target.is_file():
                error = RestoreTargetMissingError(record.original_path, record.snapshot_path)
                logger.warning(error.describe())
                interaction.notify(f"Original location not found: {record.original_path}", level="warning")
                result.skipped.append((record.original_path, error.next_step))
                continue

            snapshot = Path(record.snapshot_path)
            try:
                atomic_write_bytes(target, snapshot.read_bytes(), mode=snapshot.stat().st_mode & 0o7777)
            except OSError as e:
                logger.error(f"Failed to restore {record.original_path}: {e}")
                result.skipped.append(
                    (record.original_path, f"restore manually from backup at {record.snapshot_path}")
                )
                continue

            result.restored.append(record.original_path)
            interaction.notify(f"Restored {record.original_path}", level="success")

        logger.info(
            f"Restored {len(result.restored)} file(s) from batch {batch_id}"
            + (f", skipped {len(result.skipped)}" if result.skipped else "")
        )
        return result

    def rollback(self, interaction: InteractionPort) -> Optional[RestoreResult]:
        """Rollback wizard: pick a batch (newest first) and restore it."""
        batches = self.list_batches()
        if not batches:
            interaction.notify("No backups available for rollback", level="error")
            return None

        options = [(str(index), batch.label) for index, batch in enumerate(batches, 1)]
        answer = interaction.choose("Available backups (q to quit):", options)
        if answer is None:
            interaction.notify("Rollback cancelled")
            return None

        batch = batches[int(answer) - 1]
        logger.info(f"Selected backup batch {batch.batch_id}")
        return self.restore(batch.batch_id, interaction)


__all__ = [
    'new_batch_id',
    'parse_batch_id',
    'BackupRecord',
    'BackupBatch',
    'RestoreResult',
    'BackupManager',
]
