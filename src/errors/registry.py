"""Error code registry with E-XXXX format codes.

This module defines the failure taxonomy for MarketSync, organizing errors
into categories:
- E-1xxx: Configuration errors (connection skipped, entry not retried)
- E-2xxx: Rejected-item errors (per-entity, retried up to the ceiling)
- E-3xxx: Transient marketplace API errors (retried up to the ceiling)
- E-4xxx: System/internal errors
- E-5xxx: Duplicate/idempotency conflicts (absorbed as no-ops)

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    CONFIGURATION = "configuration"  # E-1xxx
    REJECTED = "rejected"  # E-2xxx
    TRANSIENT = "transient"  # E-3xxx
    SYSTEM = "system"  # E-4xxx
    DUPLICATE = "duplicate"  # E-5xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action the operator should take to resolve.
        is_retryable: Whether the work may be retried without operator action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Configuration errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.CONFIGURATION,
        title="Unreadable Connection Credentials",
        message_template="Credentials for connection '{connection}' could not be decrypted: {reason}",
        remediation="Re-enter the API keys for this connection or restore the credential key file.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.CONFIGURATION,
        title="Invalid Connection Settings",
        message_template="Export settings for connection '{connection}' are invalid: {reason}",
        remediation="Correct the connection's export settings and rerun the export.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.CONFIGURATION,
        title="Entity Not Found",
        message_template="{entity_type} '{entity_id}' no longer exists in the host store.",
        remediation="No action needed if the entity was deleted on purpose.",
    ),
    "E-1004": ErrorCode(
        code="E-1004",
        category=ErrorCategory.CONFIGURATION,
        title="Marketplace Authentication Rejected",
        message_template="The marketplace rejected the credentials of connection '{connection}' (HTTP {status}).",
        remediation="Verify the public and secret key of this connection.",
    ),
    # Rejected-item errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.REJECTED,
        title="Item Rejected",
        message_template="The marketplace rejected {entity_type} '{entity_id}': {reason}",
        remediation="Fix the entity data in the host store; it will be retried on the next run.",
        is_retryable=True,
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.REJECTED,
        title="Batch Rejected",
        message_template="The marketplace rejected the whole batch (HTTP {status}): {reason}",
        remediation="Inspect the batch payload in the sync event log.",
        is_retryable=True,
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.REJECTED,
        title="Order Not Created",
        message_template="The host store could not create marketplace order '{external_id}': {reason}",
        remediation="Resolve the host store problem; the order is retried on the next import.",
        is_retryable=True,
    ),
    # Transient API errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.TRANSIENT,
        title="Marketplace Timeout",
        message_template="The marketplace API did not respond in time: {reason}",
        remediation="No action needed; the work is retried on the next run.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.TRANSIENT,
        title="Marketplace Unreachable",
        message_template="Could not reach the marketplace API: {reason}",
        remediation="Check network connectivity; the work is retried on the next run.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.TRANSIENT,
        title="Marketplace Server Error",
        message_template="The marketplace API returned HTTP {status}: {reason}",
        remediation="No action needed; the work is retried on the next run.",
        is_retryable=True,
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.TRANSIENT,
        title="Marketplace Rate Limit",
        message_template="The marketplace API is rate limiting requests (HTTP {status}).",
        remediation="Lower the batch size or the schedule frequency if this persists.",
        is_retryable=True,
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Unexpected Error",
        message_template="Unexpected {exception_type}: {reason}",
        remediation="Check the application log for the full traceback.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Malformed Marketplace Response",
        message_template="The marketplace API returned an unreadable response: {reason}",
        remediation="Check the marketplace API version configured for this connection.",
        is_retryable=True,
    ),
    # Duplicate/idempotency conflicts (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.DUPLICATE,
        title="Order Already Imported",
        message_template="Marketplace order '{external_id}' already exists in the host store.",
        remediation="No action needed.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.DUPLICATE,
        title="Entity Already Pending",
        message_template="{entity_type} '{entity_id}' is already queued for connection '{connection}'.",
        remediation="No action needed.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)

