"""
Logging Configuration for Safe Upgrade.

Provides centralized logging configuration with a verbose level,
per-feature logger naming, and text or JSON log formatting.

Usage:
    from safe_upgrade.logging_config import setup_logging, get_logger

    # Setup once from the CLI entry point
    setup_logging(verbose=True)

    # Get feature-specific logger
    logger = get_logger('safe_upgrade.orchestrator')
    logger.pipeline_start("upgrade", target="0.7.0")
"""

import json
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Optional


# =============================================================================
# LOGGING LEVELS AND FEATURES
# =============================================================================

class LogLevel(Enum):
    """Extended logging levels."""
    DEBUG = 10      # Debug information
    VERBOSE = 15    # Verbose operational info
    INFO = 20       # Standard information
    NOTICE = 25     # Notable events (fallbacks, skipped files)
    WARNING = 30    # Warning conditions
    ERROR = 40      # Error conditions
    CRITICAL = 50   # Critical conditions
    SECURITY = 55   # Trust decisions (always logged)


class FeatureArea(Enum):
    """Feature areas, derived from the logger name."""
    CORE = auto()
    PROVENANCE = auto()
    REGISTRY = auto()
    INTEGRITY = auto()
    RESOLVER = auto()
    MERGE = auto()
    BACKUP = auto()
    ORCHESTRATOR = auto()
    RELEASE = auto()
    CLI = auto()


for _level in (LogLevel.VERBOSE, LogLevel.NOTICE, LogLevel.SECURITY):
    logging.addLevelName(_level.value, _level.name)


@dataclass
class LoggingState:
    """Thread-safe logging configuration state."""
    initialized: bool = False
    _lock: threading.RLock = field(default_factory=threading.RLock)


_state = LoggingState()


# =============================================================================
# CUSTOM FORMATTER
# =============================================================================

class UpgradeFormatter(logging.Formatter):
    """Formatter with color support and structured output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'VERBOSE': '\033[94m',    # Light blue
        'INFO': '\033[34m',       # Blue
        'NOTICE': '\033[33m',     # Yellow
        'WARNING': '\033[33;1m',  # Bold yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[31;1m', # Bold red
        'SECURITY': '\033[35;1m', # Bold magenta
        'RESET': '\033[0m',
    }

    def __init__(self, use_colors: bool = True, json_format: bool = False, stream=None):
        stream = stream or sys.stderr
        self.use_colors = use_colors and hasattr(stream, 'isatty') and stream.isatty()
        self.json_format = json_format
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            return self._format_json(record)
        return self._format_text(record)

    def _format_text(self, record: logging.LogRecord) -> str:
        level_name = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level_name, '')
            reset = self.COLORS['RESET']
            level_str = f"{color}[{level_name}]{reset}"
        else:
            level_str = f"[{level_name}]"

        msg = record.getMessage()

        extra_str = ""
        if hasattr(record, 'extra_data') and record.extra_data:
            extra_items = [f"{k}={v}" for k, v in record.extra_data.items()]
            extra_str = f" | {', '.join(extra_items)}"

        text = f"{level_str} {msg}{extra_str}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text

    def _format_json(self, record: logging.LogRecord) -> str:
        data = {
            'timestamp': datetime.now().isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'feature': self._extract_feature(record.name),
        }

        if hasattr(record, 'extra_data') and record.extra_data:
            data['extra'] = record.extra_data

        if record.exc_info:
            data['exception'] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)

    def _extract_feature(self, logger_name: str) -> str:
        """safe_upgrade.integrity.registry -> registry"""
        parts = logger_name.split('.')
        return parts[-1] if parts else 'core'


# =============================================================================
# CUSTOM LOGGER CLASS
# =============================================================================

class UpgradeLogger(logging.Logger):
    """Logger with extra levels and pipeline helpers."""

    _FEATURE_MAP = {
        'provenance': FeatureArea.PROVENANCE,
        'signer': FeatureArea.PROVENANCE,
        'registry': FeatureArea.REGISTRY,
        'checker': FeatureArea.INTEGRITY,
        'integrity': FeatureArea.INTEGRITY,
        'resolver': FeatureArea.RESOLVER,
        'mergetools': FeatureArea.MERGE,
        'backup': FeatureArea.BACKUP,
        'orchestrator': FeatureArea.ORCHESTRATOR,
        'release': FeatureArea.RELEASE,
        'cli': FeatureArea.CLI,
    }

    def __init__(self, name: str, level: int = logging.NOTSET):
        super().__init__(name, level)
        self.feature = self._detect_feature(name)

    def _detect_feature(self, name: str) -> FeatureArea:
        name_lower = name.lower()
        for key, feature in self._FEATURE_MAP.items():
            if key in name_lower:
                return feature
        return FeatureArea.CORE

    def verbose(self, msg: str, *args, **kwargs):
        """Log at VERBOSE level."""
        if self.isEnabledFor(LogLevel.VERBOSE.value):
            self._log(LogLevel.VERBOSE.value, msg, args, **kwargs)

    def notice(self, msg: str, *args, **kwargs):
        """Log at NOTICE level."""
        if self.isEnabledFor(LogLevel.NOTICE.value):
            self._log(LogLevel.NOTICE.value, msg, args, **kwargs)

    def security(self, msg: str, *args, **kwargs):
        """Log trust decisions (always logged)."""
        self._log(LogLevel.SECURITY.value, msg, args, **kwargs)

    def pipeline_start(self, pipeline_name: str, **data):
        self.info(f"Pipeline START: {pipeline_name}", extra={'extra_data': data})

    def pipeline_end(self, pipeline_name: str, success: bool, **data):
        status = "SUCCESS" if success else "FAILED"
        level = logging.INFO if success else logging.ERROR
        self._log(level, f"Pipeline END: {pipeline_name} - {status}",
                  (), extra={'extra_data': data})

    def pipeline_step(self, step_name: str, **data):
        self.verbose(f"  Step: {step_name}", extra={'extra_data': data})


logging.setLoggerClass(UpgradeLogger)


# =============================================================================
# SETUP AND CONFIGURATION
# =============================================================================

def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    use_colors: bool = True,
) -> None:
    """
    Initialize the logging system.

    Console output goes to stderr so that reports printed on stdout stay
    machine readable.

    Args:
        verbose: Enable verbose logging (VERBOSE level)
        log_file: Optional file path for log output
        console: Enable console output
        json_format: Use JSON format for logs
        use_colors: Colorize console output when attached to a terminal
    """
    with _state._lock:
        base_level = LogLevel.VERBOSE.value if verbose else logging.INFO

        root = logging.getLogger()
        root.setLevel(base_level)

        for handler in root.handlers[:]:
            root.removeHandler(handler)

        if console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(base_level)
            console_handler.setFormatter(UpgradeFormatter(
                use_colors=use_colors,
                json_format=json_format,
                stream=sys.stderr,
            ))
            root.addHandler(console_handler)

        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
            file_handler.setFormatter(UpgradeFormatter(use_colors=False, json_format=json_format))
            root.addHandler(file_handler)

        _state.initialized = True


def get_logger(name: str) -> UpgradeLogger:
    """
    Get a feature-aware logger.

    Loggers created before this module was imported are plain
    logging.Logger instances; those are upgraded in place so existing
    references and the handler hierarchy stay valid.
    """
    logger = logging.getLogger(name)
    if not isinstance(logger, UpgradeLogger):
        with _state._lock:
            logger.__class__ = UpgradeLogger
            logger.feature = UpgradeLogger._detect_feature(logger, name)
    return logger


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def configure_from_environment(**overrides) -> None:
    """Configure logging from SAFE_UPGRADE_* environment variables.

    Keyword arguments take precedence over the environment.
    """
    options = {
        'verbose': _env_flag('SAFE_UPGRADE_VERBOSE'),
        'log_file': os.environ.get('SAFE_UPGRADE_LOG_FILE'),
        'json_format': _env_flag('SAFE_UPGRADE_LOG_JSON'),
        'console': not _env_flag('SAFE_UPGRADE_LOG_NO_CONSOLE'),
        'use_colors': not _env_flag('NO_COLOR'),
    }
    options.update({k: v for k, v in overrides.items() if v is not None})
    setup_logging(**options)


__all__ = [
    'LogLevel',
    'FeatureArea',
    'setup_logging',
    'configure_from_environment',
    'get_logger',
    'UpgradeLogger',
    'UpgradeFormatter',
]
