"""
Safe Upgrade - integrity-verified upgrades of installed security controls
"""

# Logging first so that module loggers get the UpgradeLogger class
from .logging_config import get_logger, setup_logging

from .constants import Timeouts, Retries, Paths, BackupNaming, Defaults
from .errors import (
    UpgradeError,
    TrustError,
    DigestNotFoundError,
    NetworkError,
    ArtifactFetchError,
    UserCancelledError,
    BackupIOError,
    RestoreTargetMissingError,
    MergeToolError,
    VersionMarkerError,
    UpgradeLockedError,
)
from .manifest import FileRole, ManagedFile, DEFAULT_MANAGED_FILES
from .config import UpgradeConfig, load_config

__version__ = "1.0.0"

__all__ = [
    # Logging
    'get_logger',
    'setup_logging',

    # Constants
    'Timeouts',
    'Retries',
    'Paths',
    'BackupNaming',
    'Defaults',

    # Errors
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

    # Configuration
    'FileRole',
    'ManagedFile',
    'DEFAULT_MANAGED_FILES',
    'UpgradeConfig',
    'load_config',
]
