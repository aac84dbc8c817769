"""
File operations shared by the checker, backup manager and orchestrator.

- Chunked SHA-256 hashing
- Durable, atomic writes (temp file + fsync + rename)
- An advisory lock over the managed-file root
"""

import fcntl
import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from safe_upgrade.errors import UpgradeLockedError

logger = logging.getLogger(__name__)

FILE_CHUNK = 65536


def sha256_file(path: Union[str, Path]) -> str:
    """Compute the SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(FILE_CHUNK), b''):
            digest.update(chunk)
    return digest.hexdigest()


def sha256_bytes(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def atomic_write_bytes(
    filepath: Union[str, Path],
    content: bytes,
    mode: Optional[int] = None,
) -> None:
    """
    Write file atomically.

    The content is written to a temp file in the same directory, fsync'd,
    and renamed over the target, so a crash never leaves a half-written
    file. The target's permission bits are kept unless ``mode`` is given.
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    if mode is None and filepath.exists():
        mode = filepath.stat().st_mode & 0o7777

    fd, temp_path = tempfile.mkstemp(
        dir=filepath.parent,
        prefix=f".{filepath.name}.",
        suffix=".tmp",
    )

    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        if mode is not None:
            os.chmod(temp_path, mode)

        os.replace(temp_path, filepath)

    except BaseException:
        try:
            os.unlink(temp_path)
        except FileNotFoundError:
            pass
        raise


def fsync_directory(directory: Union[str, Path]) -> None:
    """Flush a directory entry so a newly created file survives a crash."""
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class UpgradeLock:
    """
    Exclusive advisory lock over the managed-file root.

    Usage:
        with UpgradeLock(root / Paths.LOCK_FILE):
            orchestrator.run()
    """

    def __init__(self, lock_path: Union[str, Path]):
        self.lock_path = Path(lock_path)
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise UpgradeLockedError(
                "Another upgrade session is in progress",
                path=str(self.lock_path),
                phase="lock",
            )
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug(f"Acquired upgrade lock {self.lock_path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released upgrade lock {self.lock_path}")

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> 'UpgradeLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


__all__ = [
    'sha256_file',
    'sha256_bytes',
    'atomic_write_bytes',
    'fsync_directory',
    'UpgradeLock',
]
