"""Error handling framework for MarketSync.

This package provides:
- Error code registry with E-XXXX format codes
- Classification of caught exceptions into the failure taxonomy
- Error formatting and grouping utilities

Error categories:
- E-1xxx: Configuration errors
- E-2xxx: Rejected-item errors
- E-3xxx: Transient marketplace API errors
- E-4xxx: System/internal errors
- E-5xxx: Duplicate/idempotency conflicts
"""

from src.errors.registry import (
    ErrorCategory,
    ErrorCode,
    ERROR_REGISTRY,
    get_error,
)
from src.errors.formatter import (
    SyncError,
    format_error,
    format_error_summary,
    group_errors,
)
from src.errors.classification import classify_exception

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    # Classification
    "classify_exception",
    # Formatter
    "SyncError",
    "format_error",
    "group_errors",
    "format_error_summary",
]
