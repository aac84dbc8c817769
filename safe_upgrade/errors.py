"""
Exception hierarchy for the upgrade engine.

Trust failures are hard failures and are never downgraded. Absence of
information (no digest record, no network) is recoverable and degrades
visibly. Every error names the file/phase involved and the safe next step
so the CLI can tell the user what to do.
"""

from typing import Optional


class UpgradeError(Exception):
    """Base class for all upgrade engine errors."""

    default_next_step = "re-run 'safe-upgrade check' to inspect the installation"

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        phase: Optional[str] = None,
        next_step: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.path = path
        self.phase = phase
        self.next_step = next_step or self.default_next_step

    def describe(self) -> str:
        """Human readable description including file, phase and next step."""
        parts = [self.message]
        if self.path:
            parts.append(f"file: {self.path}")
        if self.phase:
            parts.append(f"phase: {self.phase}")
        parts.append(f"next step: {self.next_step}")
        return " | ".join(parts)


class TrustError(UpgradeError):
    """Bad or missing signature, source URI or tag mismatch, digest not attested."""

    default_next_step = (
        "do not install this release; verify the download source and re-run "
        "'safe-upgrade verify-provenance'"
    )


class DigestNotFoundError(UpgradeError):
    """No digest record exists for a (version, path) pair."""

    default_next_step = "review the file manually before deciding whether to replace it"

    def __init__(self, version: Optional[str], path: str):
        super().__init__(
            f"No digest record for {path} in version {version or 'unknown'}",
            path=path,
            phase="lookup",
        )
        self.version = version


class NetworkError(UpgradeError):
    """A download failed or timed out."""

    default_next_step = "check network connectivity or use --release-dir for an offline release"


class ArtifactFetchError(UpgradeError):
    """A release artifact could not be retrieved or staged."""

    default_next_step = "re-run the upgrade once the release assets are reachable"


class UserCancelledError(UpgradeError):
    """The user aborted the session; the filesystem was left as it was."""

    default_next_step = "nothing was changed; re-run 'safe-upgrade' when ready"


class BackupIOError(UpgradeError):
    """A backup snapshot could not be written; no replacement may proceed."""

    default_next_step = "free disk space or fix permissions on the backup directory, then retry"


class RestoreTargetMissingError(UpgradeError):
    """The original location of a snapshot no longer exists."""

    def __init__(self, path: str, snapshot_path: str):
        super().__init__(
            f"Original location not found: {path}",
            path=path,
            phase="restore",
            next_step=f"restore manually from backup at {snapshot_path}",
        )
        self.snapshot_path = snapshot_path


class MergeToolError(UpgradeError):
    """The merge tool is unavailable, failed, or was cancelled."""

    default_next_step = "set MERGE_TOOL to an installed merge tool or choose another option"


class VersionMarkerError(UpgradeError):
    """The installed-version marker is missing or malformed."""

    default_next_step = "re-run the installer or confirm an upgrade without a known version"


class UpgradeLockedError(UpgradeError):
    """Another upgrade session holds the lock over the managed-file root."""

    default_next_step = "wait for the other upgrade to finish, then retry"


__all__ = [
    'UpgradeError',
    'TrustError',
    'DigestNotFoundError',
    'NetworkError',
    'ArtifactFetchError',
    'UserCancelledError',
    'BackupIOError',
    'RestoreTargetMissingError',
    'MergeToolError',
    'VersionMarkerError',
    'UpgradeLockedError',
]
