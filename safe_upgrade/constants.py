"""
Centralized Constants Module for Safe Upgrade.

Consolidates timeouts, paths, file names and release defaults used by the
upgrade engine so that security-relevant values are easy to audit.

Every value can be overridden through a ``SAFE_UPGRADE_`` prefixed
environment variable; invalid overrides are logged and ignored.

Usage:
    from safe_upgrade.constants import Timeouts, Paths, Defaults

    requests.get(url, timeout=Timeouts.HTTP_REQUEST)
    marker = root / Paths.VERSION_FILE
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

ENV_PREFIX = "SAFE_UPGRADE_"

T = TypeVar('T')


# =============================================================================
# ENVIRONMENT VARIABLE OVERRIDE UTILITIES
# =============================================================================

def _env_override(
    env_var: str,
    default: T,
    converter: Callable[[str], T] = str,
    validator: Optional[Callable[[T], bool]] = None,
    min_value: Optional[T] = None,
    max_value: Optional[T] = None,
) -> T:
    """Get a configuration value with environment variable override.

    Args:
        env_var: Environment variable name (prefixed with SAFE_UPGRADE_)
        default: Default value if env var not set
        converter: Function to convert string to target type
        validator: Optional validation function
        min_value: Optional minimum allowed value
        max_value: Optional maximum allowed value

    Returns:
        Configured value (from env var if valid, otherwise default)
    """
    full_env_var = f"{ENV_PREFIX}{env_var}"
    env_value = os.environ.get(full_env_var)

    if env_value is None:
        return default

    try:
        converted = converter(env_value)

        if min_value is not None and converted < min_value:
            logger.warning(
                f"{full_env_var}={env_value} below minimum {min_value}, using default"
            )
            return default
        if max_value is not None and converted > max_value:
            logger.warning(
                f"{full_env_var}={env_value} above maximum {max_value}, using default"
            )
            return default

        if validator is not None and not validator(converted):
            logger.warning(f"{full_env_var}={env_value} failed validation, using default")
            return default

        logger.debug(f"Using {full_env_var}={converted} (override)")
        return converted

    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid value for {full_env_var}: {e}, using default")
        return default


def _env_override_list(
    env_var: str,
    default: Tuple[str, ...],
    separator: str = ",",
) -> Tuple[str, ...]:
    """Get a list configuration value with environment variable override."""
    full_env_var = f"{ENV_PREFIX}{env_var}"
    env_value = os.environ.get(full_env_var)

    if env_value is None:
        return default

    items = tuple(item.strip() for item in env_value.split(separator) if item.strip())
    if not items:
        logger.warning(f"Empty list for {full_env_var}, using default")
        return default
    return items


SEMVER_PATTERN = re.compile(r'^\d+\.\d+\.\d+$')


def is_valid_version(version: str) -> bool:
    """Check a MAJOR.MINOR.PATCH version string (a leading 'v' is tolerated)."""
    if not version:
        return False
    return bool(SEMVER_PATTERN.match(version[1:] if version.startswith('v') else version))


def version_key(version: str) -> Tuple[int, ...]:
    """Sort key for MAJOR.MINOR.PATCH versions."""
    version = version[1:] if version.startswith('v') else version
    return tuple(int(part) for part in version.split('.'))


def _is_repository(value: str) -> bool:
    return bool(re.match(r'^[\w.-]+/[\w.-]+$', value))


# =============================================================================
# TIMEOUT CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Timeouts:
    """
    Centralized timeout values in seconds.

    External tool invocations and network fetches are blocking calls and
    must always be bounded.
    """
    HTTP_REQUEST: float = _env_override('HTTP_TIMEOUT', 30.0, float, min_value=1.0, max_value=600.0)
    VERIFIER_PROCESS: float = _env_override('VERIFIER_TIMEOUT', 60.0, float, min_value=1.0, max_value=600.0)
    DIFF_PROCESS: float = 30.0
    MERGE_PROCESS: float = _env_override('MERGE_TIMEOUT', 1800.0, float, min_value=10.0)
    NETWORK_RETRY_DELAY: float = 1.0


# =============================================================================
# RETRY CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Retries:
    """Single retry-or-fail policy for fallible external calls."""
    NETWORK_FETCH: int = 1


# =============================================================================
# PATH CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Paths:
    """
    Project-relative paths of persisted upgrade state.

    All paths are relative to the project root that holds the managed files.
    """
    CONTROL_STATE_DIR: str = ".security-controls"
    VERSION_FILE: str = f"{CONTROL_STATE_DIR}/.version"
    BACKUP_DIR: str = f"{CONTROL_STATE_DIR}/backup"
    LOCK_FILE: str = f"{CONTROL_STATE_DIR}/.upgrade.lock"
    CONFIG_FILE: str = f"{CONTROL_STATE_DIR}/upgrade.yaml"
    STAGING_PREFIX: str = "safe-upgrade-"


# =============================================================================
# BACKUP NAMING
# =============================================================================

@dataclass(frozen=True)
class BackupNaming:
    """Snapshot file naming: <relative path>.<batch id>.backup"""
    SUFFIX: str = ".backup"
    BATCH_FORMAT: str = "%Y%m%d_%H%M%S_%f"
    LEGACY_BATCH_FORMAT: str = "%Y%m%d_%H%M%S"
    # Matches both the current and the legacy (second resolution) batch ids
    SNAPSHOT_PATTERN: str = r'^(?P<name>.+)\.(?P<batch>\d{8}_\d{6}(?:_\d{6})?)\.backup$'


# =============================================================================
# RELEASE DEFAULTS
# =============================================================================

@dataclass(frozen=True)
class Defaults:
    """Release source and trust defaults."""
    REPOSITORY: str = _env_override('REPOSITORY', 'h4x0r/1-click-github-sec', str, validator=_is_repository)
    SOURCE_HOST: str = "github.com"
    RELEASE_URL_TEMPLATE: str = "https://github.com/{repository}/releases/download/v{version}/{asset}"
    LATEST_RELEASE_API: str = "https://api.github.com/repos/{repository}/releases/latest"
    PROVENANCE_ASSET: str = _env_override('PROVENANCE_ASSET', 'multiple.intoto.jsonl')
    INSTALLER_ASSET: str = "install-security-controls.sh"
    VERIFIER_BACKEND: str = _env_override(
        'VERIFIER', 'ed25519', str, validator=lambda v: v in ('ed25519', 'slsa-verifier'),
    )
    SLSA_VERIFIER_BINARY: str = "slsa-verifier"
    SLSA_VERIFIER_VERSION: str = _env_override('SLSA_VERIFIER_VERSION', 'v2.7.1')
    SLSA_VERIFIER_URL_TEMPLATE: str = (
        "https://github.com/slsa-framework/slsa-verifier/releases/download/{version}/{asset}"
    )
    SLSA_VERIFIER_INSTALL_DIR: str = "~/.local/bin"
    MERGE_TOOL_PREFERENCE: Tuple[str, ...] = _env_override_list(
        'MERGE_TOOLS', ('meld', 'kdiff3', 'vimdiff'),
    )
    DIFF_TOOL_PREFERENCE: Tuple[str, ...] = ('delta', 'colordiff', 'diff')
    PENDING_MARKERS: Tuple[str, ...] = ('TBD', 'PENDING', '')
    DSSE_PAYLOAD_TYPE: str = "application/vnd.in-toto+json"
    INTOTO_STATEMENT_TYPE: str = "https://in-toto.io/Statement/v0.1"
    SLSA_PREDICATE_TYPE: str = "https://slsa.dev/provenance/v0.2"


__all__ = [
    'ENV_PREFIX',
    'Timeouts',
    'Retries',
    'Paths',
    'BackupNaming',
    'Defaults',
    'is_valid_version',
    'version_key',
]
