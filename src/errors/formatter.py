"""Error formatting and grouping utilities.

This module provides:
- SyncError exception class for classified synchronization failures
- Error formatting for operator display
- Error grouping to combine duplicates across entities
"""

from dataclasses import dataclass, field

from src.errors.registry import ErrorCategory, get_error


@dataclass
class SyncError(Exception):
    """Classified failure with code, message, and context.

    Attributes:
        code: Error code in E-XXXX format.
        message: Human-readable error message.
        remediation: Action the operator should take to resolve.
        category: Taxonomy category of the failure.
        is_retryable: Whether the work can be retried without operator action.
        entity_ids: Affected host-store entity ids.
        details: Additional context dictionary.
    """

    code: str
    message: str
    remediation: str
    category: ErrorCategory = ErrorCategory.SYSTEM
    is_retryable: bool = False
    entity_ids: list[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        """Return string representation of the error."""
        return f"{self.code}: {self.message}"

    @classmethod
    def from_code(cls, code: str, **kwargs: object) -> "SyncError":
        """Create error from registry code with context substitution.

        Args:
            code: Error code in E-XXXX format.
            **kwargs: Context values for message template substitution.
                Special keys 'entity_ids' and 'details' populate the
                SyncError fields rather than the message.

        Returns:
            SyncError instance with formatted message.
        """
        entity_ids = kwargs.get("entity_ids", [])
        if not isinstance(entity_ids, list):
            entity_ids = []
        details = kwargs.get("details", {})
        if not isinstance(details, dict):
            details = {}

        error_def = get_error(code)
        if not error_def:
            return cls(
                code=code,
                message=f"Unknown error: {code}",
                remediation="Contact support.",
                entity_ids=entity_ids,
                details=details,
            )

        message = error_def.message_template
        try:
            template_kwargs = {
                k: v for k, v in kwargs.items() if k not in ("entity_ids", "details")
            }
            message = message.format(**template_kwargs)
        except KeyError:
            # Keep template if some placeholders are missing
            pass

        return cls(
            code=error_def.code,
            message=message,
            remediation=error_def.remediation,
            category=error_def.category,
            is_retryable=error_def.is_retryable,
            entity_ids=entity_ids,
            details=details,
        )


def format_error(error: SyncError, include_remediation: bool = True) -> str:
    """Format error for display to an operator.

    Args:
        error: The SyncError to format.
        include_remediation: Whether to include remediation steps.

    Returns:
        Multi-line formatted string.
    """
    lines = [f"{error.code}: {error.message}"]

    if error.entity_ids:
        if len(error.entity_ids) == 1:
            lines.append(f"  Entity: {error.entity_ids[0]}")
        else:
            ids_str = ", ".join(error.entity_ids[:10])
            if len(error.entity_ids) > 10:
                ids_str += f" (and {len(error.entity_ids) - 10} more)"
            lines.append(f"  Affected entities: {ids_str}")

    if include_remediation:
        lines.append(f"  Action: {error.remediation}")

    return "\n".join(lines)


def group_errors(errors: list[SyncError]) -> list[SyncError]:
    """Group errors by code and message, combining entity ids.

    Example:
        5 identical "Marketplace Timeout" errors on offers 1..5
        -> 1 error with entity_ids=['1', '2', '3', '4', '5']

    Args:
        errors: List of SyncError objects to group.

    Returns:
        List of grouped SyncError objects with combined entity ids.
    """
    groups: dict[str, SyncError] = {}

    for error in errors:
        key = f"{error.code}|{error.message}"
        if key in groups:
            groups[key].entity_ids.extend(error.entity_ids)
        else:
            groups[key] = SyncError(
                code=error.code,
                message=error.message,
                remediation=error.remediation,
                category=error.category,
                is_retryable=error.is_retryable,
                entity_ids=list(error.entity_ids),
                details=error.details.copy(),
            )

    result = list(groups.values())
    for error in result:
        error.entity_ids = sorted(set(error.entity_ids))

    return result


def format_error_summary(errors: list[SyncError]) -> str:
    """Format a list of errors for display, grouping duplicates.

    Args:
        errors: List of SyncError objects.

    Returns:
        Operator-friendly summary.
    """
    if not errors:
        return "No errors."

    grouped = group_errors(errors)

    if len(grouped) == 1:
        return format_error(grouped[0])

    lines = [f"{len(grouped)} error type(s) found:\n"]
    for i, error in enumerate(grouped, 1):
        lines.append(f"{i}. {format_error(error)}")
        lines.append("")

    return "\n".join(lines)
