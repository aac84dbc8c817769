"""
Upgrade configuration.

Loaded from an optional YAML file (``.security-controls/upgrade.yaml`` by
default) and overridden by environment variables. Everything has a safe
default so the engine runs without any configuration file.

Example upgrade.yaml:

    repository: h4x0r/1-click-github-sec
    verifier: ed25519
    require_transparency_log: false
    trusted_keys:
      release-2025: 3b6a27bcceb6a42d62a3a8d02a6f0d73653215771de243a63ac048a18b59da29
    managed_files:
      - .security-controls/bin/pinactlite
      - path: .git/hooks/pre-push
        role: hook
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from safe_upgrade.constants import Defaults, Paths, Timeouts
from safe_upgrade.errors import UpgradeError
from safe_upgrade.manifest import ManagedFile, load_managed_files

logger = logging.getLogger(__name__)

MERGE_TOOL_ENV = "MERGE_TOOL"


class ConfigError(UpgradeError):
    """The configuration file could not be parsed or holds invalid values."""

    default_next_step = "fix the configuration file or remove it to use defaults"


@dataclass
class UpgradeConfig:
    """Settings for one upgrade engine run."""
    repository: str = Defaults.REPOSITORY
    provenance_asset: str = Defaults.PROVENANCE_ASSET
    installer_asset: str = Defaults.INSTALLER_ASSET
    verifier: str = Defaults.VERIFIER_BACKEND
    trusted_keys: Dict[str, str] = field(default_factory=dict)
    require_transparency_log: bool = False
    managed_files: List[ManagedFile] = field(default_factory=lambda: load_managed_files(None))
    merge_tool: Optional[str] = None
    http_timeout: float = Timeouts.HTTP_REQUEST
    verifier_timeout: float = Timeouts.VERIFIER_PROCESS
    embedded_hashes: Optional[str] = None
    release_dir: Optional[str] = None

    @property
    def source_uri(self) -> str:
        """Expected source repository URI claimed by provenance."""
        return f"{Defaults.SOURCE_HOST}/{self.repository}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UpgradeConfig':
        """Create from a parsed YAML mapping."""
        known = {
            'repository', 'provenance_asset', 'installer_asset', 'verifier',
            'trusted_keys', 'require_transparency_log', 'managed_files',
            'merge_tool', 'http_timeout', 'verifier_timeout', 'embedded_hashes',
            'release_dir',
        }
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")

        config = cls()
        for key in known - {'managed_files', 'trusted_keys'}:
            if key in data and data[key] is not None:
                setattr(config, key, data[key])

        if data.get('trusted_keys'):
            if not isinstance(data['trusted_keys'], dict):
                raise ConfigError("trusted_keys must be a mapping of key id to hex public key")
            config.trusted_keys = {str(k): str(v) for k, v in data['trusted_keys'].items()}

        if data.get('managed_files'):
            try:
                config.managed_files = load_managed_files(data['managed_files'])
            except (KeyError, ValueError) as e:
                raise ConfigError(f"Invalid managed_files entry: {e}")

        config.validate()
        return config

    def apply_environment(self) -> 'UpgradeConfig':
        """Apply environment overrides (MERGE_TOOL, SAFE_UPGRADE_RELEASE_DIR)."""
        merge_tool = os.environ.get(MERGE_TOOL_ENV)
        if merge_tool:
            self.merge_tool = merge_tool

        release_dir = os.environ.get('SAFE_UPGRADE_RELEASE_DIR')
        if release_dir:
            self.release_dir = release_dir

        trusted_key = os.environ.get('SAFE_UPGRADE_TRUSTED_KEY')
        if trusted_key:
            self.trusted_keys.setdefault('env', trusted_key.strip())

        self.validate()
        return self

    def validate(self) -> None:
        if self.verifier not in ('ed25519', 'slsa-verifier'):
            raise ConfigError(f"Unknown verifier backend: {self.verifier}")
        if '/' not in self.repository:
            raise ConfigError(f"repository must be owner/name, got: {self.repository}")
        for key_id, key_hex in self.trusted_keys.items():
            try:
                if len(bytes.fromhex(key_hex)) != 32:
                    raise ValueError("expected 32 bytes")
            except ValueError as e:
                raise ConfigError(f"Trusted key '{key_id}' is not a hex Ed25519 public key: {e}")


def load_config(
    root: Union[str, Path],
    config_path: Optional[Union[str, Path]] = None,
) -> UpgradeConfig:
    """
    Load configuration for a project root.

    Args:
        root: Project root holding the managed files
        config_path: Explicit config file (default: <root>/.security-controls/upgrade.yaml)

    Returns:
        UpgradeConfig with environment overrides applied
    """
    path = Path(config_path) if config_path else Path(root) / Paths.CONFIG_FILE

    if not path.exists():
        if config_path:
            raise ConfigError(f"Config file not found: {path}", path=str(path))
        logger.debug(f"No configuration file at {path}, using defaults")
        return UpgradeConfig().apply_environment()

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration: {e}", path=str(path))

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping", path=str(path))

    logger.info(f"Loaded configuration from {path}")
    return UpgradeConfig.from_dict(data).apply_environment()


__all__ = [
    'ConfigError',
    'UpgradeConfig',
    'load_config',
    'MERGE_TOOL_ENV',
]
