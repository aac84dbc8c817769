"""
Utility modules for Safe Upgrade.

Provides common utilities including:
- Error handling with categorized logging and retry
- File locking and atomic writes
"""

from .error_handling import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    categorize,
    determine_severity,
    handle_error,
    with_error_handling,
)
from .fileops import (
    UpgradeLock,
    atomic_write_bytes,
    sha256_file,
)

__all__ = [
    # Error handling
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'categorize',
    'determine_severity',
    'handle_error',
    'with_error_handling',

    # File operations
    'UpgradeLock',
    'atomic_write_bytes',
    'sha256_file',
]
