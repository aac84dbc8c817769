"""
Error Handling Utilities for Safe Upgrade

Provides consistent error handling across the upgrade engine with:
1. Detailed error logging with context
2. Error categorization and severity levels
3. Retry logic with backoff for fallible external calls

USAGE:
    from safe_upgrade.utils.error_handling import (
        handle_error,
        ErrorCategory,
        with_error_handling,
    )

    @with_error_handling(category=ErrorCategory.NETWORK, retry_count=1, reraise=True)
    def fetch():
        ...

    try:
        risky_operation()
    except UpgradeError as e:
        handle_error(e, "apply", ErrorCategory.FILESYSTEM)
"""

import functools
import logging
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from safe_upgrade.errors import (
    BackupIOError,
    DigestNotFoundError,
    NetworkError,
    RestoreTargetMissingError,
    TrustError,
    UpgradeError,
    UserCancelledError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ErrorCategory(Enum):
    """Categories of errors for proper handling and reporting."""
    # Signature, identity or digest attestation failures
    TRUST = "trust"

    # Download failures and timeouts
    NETWORK = "network"

    # Reading or writing managed files, backups and state
    FILESYSTEM = "filesystem"

    # External verifier, diff and merge tools
    EXTERNAL_TOOL = "external_tool"

    # Configuration and version marker problems
    CONFIG = "configuration"

    # User decisions (cancellation)
    USER = "user"

    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    # Informational - operation can continue
    INFO = "info"

    # Warning - degraded but safe (fallbacks, skipped files)
    WARNING = "warning"

    # Error - operation failed but the tree is consistent
    ERROR = "error"

    # Critical - trust in an artifact source was broken
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Detailed context information for an error."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    stack_trace: str = ""
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.stack_trace and self.error.__traceback__ is not None:
            self.stack_trace = ''.join(traceback.format_exception(
                type(self.error), self.error, self.error.__traceback__,
            ))

    @property
    def next_step(self) -> Optional[str]:
        return getattr(self.error, 'next_step', None)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'category': self.category.value,
            'severity': self.severity.value,
            'operation': self.operation,
            'timestamp': self.timestamp,
            'next_step': self.next_step,
            'additional_context': self.additional_context,
        }

    def format_log_message(self, include_trace: bool = False) -> str:
        """Format a detailed log message."""
        error = self.error
        message = error.describe() if isinstance(error, UpgradeError) else str(error)
        lines = [
            f"{self.operation} failed [{self.severity.value.upper()}]: {message}",
            f"  Category: {self.category.value}",
            f"  Type: {type(error).__name__}",
        ]

        if self.additional_context:
            lines.append("  Context:")
            for key, value in self.additional_context.items():
                lines.append(f"    {key}: {value}")

        if include_trace and self.stack_trace:
            lines.append("  Stack Trace:")
            for line in self.stack_trace.split('\n'):
                if line.strip():
                    lines.append(f"    {line}")

        return '\n'.join(lines)


def categorize(error: Exception) -> ErrorCategory:
    """Map an exception onto an error category."""
    if isinstance(error, TrustError):
        return ErrorCategory.TRUST
    if isinstance(error, NetworkError):
        return ErrorCategory.NETWORK
    if isinstance(error, UserCancelledError):
        return ErrorCategory.USER
    if isinstance(error, (BackupIOError, RestoreTargetMissingError, OSError)):
        return ErrorCategory.FILESYSTEM
    return ErrorCategory.UNKNOWN


def determine_severity(
    error: Exception,
    category: ErrorCategory,
) -> ErrorSeverity:
    """
    Determine the severity level for an error based on type and category.

    Trust failures are always critical; absence of information is a warning.
    """
    if category == ErrorCategory.TRUST or isinstance(error, TrustError):
        return ErrorSeverity.CRITICAL

    if isinstance(error, (DigestNotFoundError, RestoreTargetMissingError, NetworkError)):
        return ErrorSeverity.WARNING

    if isinstance(error, UserCancelledError):
        return ErrorSeverity.INFO

    if isinstance(error, FileNotFoundError):
        return ErrorSeverity.WARNING

    error_type = type(error).__name__
    if 'timeout' in error_type.lower() or 'timeout' in str(error).lower():
        return ErrorSeverity.WARNING

    return ErrorSeverity.ERROR


_LOG_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


def handle_error(
    error: Exception,
    operation: str,
    category: Optional[ErrorCategory] = None,
    severity: Optional[ErrorSeverity] = None,
    additional_context: Optional[Dict[str, Any]] = None,
    reraise: bool = False,
) -> ErrorContext:
    """
    Handle an error with logging.

    Args:
        error: The exception that occurred
        operation: Name of the operation that failed
        category: Category of the error (derived from the type if omitted)
        severity: Severity level (auto-determined if not provided)
        additional_context: Additional context information
        reraise: Whether to re-raise the exception after handling

    Returns:
        ErrorContext with full error details
    """
    if category is None:
        category = categorize(error)
    if severity is None:
        severity = determine_severity(error, category)

    context = ErrorContext(
        error=error,
        category=category,
        severity=severity,
        operation=operation,
        additional_context=additional_context or {},
    )

    log_level = _LOG_LEVELS.get(severity, logging.ERROR)
    logger.log(
        log_level,
        context.format_log_message(include_trace=logger.isEnabledFor(logging.DEBUG)),
    )

    if reraise:
        raise error

    return context


def with_error_handling(
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    operation: Optional[str] = None,
    default_return: Any = None,
    reraise: bool = False,
    retry_count: int = 0,
    retry_delay: float = 1.0,
    retry_backoff: float = 2.0,
    retry_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator for functions with automatic error handling and retry.

    Args:
        category: Error category for this function
        operation: Operation name (defaults to function name)
        default_return: Value to return on error
        reraise: Whether to re-raise the last exception once retries are spent
        retry_count: Number of retries on failure
        retry_delay: Initial delay between retries
        retry_backoff: Multiplier for delay on each retry
        retry_exceptions: Exception types to retry on (defaults to all)

    Usage:
        @with_error_handling(category=ErrorCategory.NETWORK, retry_count=1)
        def fetch_data():
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            op_name = operation or func.__name__
            attempts = 0
            current_delay = retry_delay
            last_error: Optional[Exception] = None

            while attempts <= retry_count:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    last_error = e
                    attempts += 1

                    should_retry = (
                        attempts <= retry_count and
                        (retry_exceptions is None or isinstance(e, retry_exceptions))
                    )

                    if should_retry:
                        logger.info(
                            f"Retrying {op_name} in {current_delay:.1f}s "
                            f"(attempt {attempts}/{retry_count + 1}): {e}"
                        )
                        time.sleep(current_delay)
                        current_delay *= retry_backoff
                    else:
                        break

            if reraise and last_error:
                raise last_error

            handle_error(
                last_error,
                op_name,
                category=category,
                additional_context={'attempts': attempts},
            )
            return default_return

        return wrapper
    return decorator


__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'categorize',
    'determine_severity',
    'handle_error',
    'with_error_handling',
]
