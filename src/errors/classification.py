"""Map caught exceptions onto the error taxonomy.

Every exception caught at the orchestrator/importer boundary goes through
``classify_exception`` so it is recorded with a code and category instead of
being discarded.
"""

from src.errors.formatter import SyncError
from src.services.marketplace_client import MarketplaceError
from src.utils.redaction import sanitize_error_message


def classify_exception(
    exc: BaseException,
    connection: str | None = None,
    entity_ids: list[str] | None = None,
) -> SyncError:
    """Classify an exception into a SyncError.

    Args:
        exc: The caught exception.
        connection: Connection name for message context.
        entity_ids: Affected entity ids, if known.

    Returns:
        SyncError with code, category, and retryability set.
    """
    if isinstance(exc, SyncError):
        if entity_ids and not exc.entity_ids:
            exc.entity_ids = list(entity_ids)
        return exc

    reason = sanitize_error_message(str(exc), max_length=500) or type(exc).__name__
    ids = list(entity_ids or [])

    if isinstance(exc, MarketplaceError):
        return SyncError.from_code(
            exc.code,
            reason=reason,
            status=exc.status_code if exc.status_code is not None else "n/a",
            connection=connection or "?",
            entity_ids=ids,
            details={"status_code": exc.status_code},
        )

    return SyncError.from_code(
        "E-4001",
        exception_type=type(exc).__name__,
        reason=reason,
        entity_ids=ids,
    )
