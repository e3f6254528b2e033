"""Durable per-connection work queues for offer and shipment exports.

Each change notification becomes a QueueEntry row; drains claim bounded
batches of them, export, and report the outcome back. Rows survive process
crashes, and in-flight rows left behind by a dead claimer return to pending
once their claim goes stale.

Lifecycle:
    pending -> in_flight (claim_batch)
    in_flight -> done (mark_done)
    in_flight -> pending (retryable failure below the ceiling, release,
                          stale reclamation)
    in_flight -> failed (ceiling reached or non-retryable failure)

Every transition out of in_flight is guarded by the batch's claim token, so a
batch that was reclaimed and claimed again cannot be finalized by its first
owner.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.db.connection import Database
from src.db.models import (
    TERMINAL_STATUSES,
    Connection,
    EntityType,
    EntryStatus,
    QueueEntry,
    generate_uuid,
    to_iso,
)
from src.errors.formatter import SyncError
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

# Failed deliveries allowed before an entry becomes terminally failed
MAX_ATTEMPTS = 5

# In-flight claims older than this are presumed abandoned
STALE_CLAIM_SECONDS = 600


@dataclass
class QueuePolicy:
    """Retry and deduplication policy of the work queues.

    Attributes:
        max_attempts: Failed attempts before an entry is terminally failed.
        retry_backoff_seconds: Base delay before a failed entry is claimable
            again; doubles with each attempt. 0 retries on the next run.
        stale_claim_seconds: Age after which an in-flight claim is reclaimed.
        dedup_window_seconds: Repeat notifications inside this window leave
            the pending entry untouched. 0 always refreshes enqueued_at.
    """

    max_attempts: int = MAX_ATTEMPTS
    retry_backoff_seconds: float = 0.0
    stale_claim_seconds: float = STALE_CLAIM_SECONDS
    dedup_window_seconds: float = 0.0

    def backoff(self, attempt: int) -> timedelta:
        """Delay before retrying after the given (1-based) failed attempt."""
        if self.retry_backoff_seconds <= 0:
            return timedelta(0)
        return timedelta(seconds=self.retry_backoff_seconds * 2 ** max(attempt - 1, 0))


class EnqueueResult(str, Enum):
    """Outcome of one enqueue call."""

    created = "created"
    refreshed = "refreshed"
    deduplicated = "deduplicated"


@dataclass(frozen=True)
class ClaimedEntry:
    """Detached snapshot of one claimed queue row."""

    id: str
    entity_id: str
    attempt_count: int
    enqueued_at: str


@dataclass
class ExportBatch:
    """Entries claimed together for one connection and entity type."""

    connection_id: str
    entity_type: str
    claim_token: str
    entries: list[ClaimedEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def entity_ids(self) -> list[str]:
        return [entry.entity_id for entry in self.entries]

    @property
    def entry_ids(self) -> list[str]:
        return [entry.id for entry in self.entries]

    def entry_ids_for(self, entity_ids: Iterable[str]) -> list[str]:
        """Map host entity ids back to the entry ids of this batch."""
        wanted = set(entity_ids)
        return [entry.id for entry in self.entries if entry.entity_id in wanted]


class WorkQueue:
    """Durable queue of offer/shipment work, partitioned by connection.

    Args:
        database: State database.
        policy: Retry and deduplication policy.
        clock: Returns the current UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        database: Database,
        policy: QueuePolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._database = database
        self.policy = policy or QueuePolicy()
        self._clock = clock or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        """Current time on the queue's clock."""
        return self._clock()

    # --- Producer side ---

    def enqueue(
        self,
        connection_id: str,
        entity_type: EntityType | str,
        entity_id: str,
    ) -> EnqueueResult:
        """Record that an entity needs exporting to a connection.

        Creates a pending entry, or refreshes the existing pending entry's
        enqueued_at so repeated notifications never produce duplicates.

        Args:
            connection_id: Target connection.
            entity_type: 'offer', 'catalog' or 'shipment'.
            entity_id: Host-store entity id.

        Returns:
            Whether a row was created, refreshed, or left untouched.
        """
        entity_type = EntityType(entity_type).value
        entity_id = str(entity_id)
        now = self.now()

        with self._database.session() as session:
            existing = self._find_pending(session, connection_id, entity_type, entity_id)
            if existing is not None:
                return self._refresh(existing, now)

            session.add(QueueEntry(
                connection_id=connection_id,
                entity_type=entity_type,
                entity_id=entity_id,
                status=EntryStatus.pending.value,
                attempt_count=0,
                enqueued_at=to_iso(now),
                available_at=to_iso(now),
                updated_at=to_iso(now),
            ))
            try:
                session.flush()
            except IntegrityError:
                # A concurrent notifier inserted the pending row first.
                session.rollback()
                existing = self._find_pending(session, connection_id, entity_type, entity_id)
                if existing is None:
                    raise
                return self._refresh(existing, now)

        logger.debug("Enqueued %s %s for connection %s", entity_type, entity_id, connection_id)
        return EnqueueResult.created

    def _find_pending(
        self, session: Session, connection_id: str, entity_type: str, entity_id: str,
    ) -> QueueEntry | None:
        return session.scalars(
            select(QueueEntry).where(
                QueueEntry.connection_id == connection_id,
                QueueEntry.entity_type == entity_type,
                QueueEntry.entity_id == entity_id,
                QueueEntry.status == EntryStatus.pending.value,
            )
        ).first()

    def _refresh(self, entry: QueueEntry, now: datetime) -> EnqueueResult:
        window = self.policy.dedup_window_seconds
        if window > 0 and entry.enqueued_at > to_iso(now - timedelta(seconds=window)):
            logger.debug(
                "E-5002: %s %s already pending for connection %s",
                entry.entity_type, entry.entity_id, entry.connection_id,
            )
            return EnqueueResult.deduplicated
        entry.enqueued_at = to_iso(now)
        entry.updated_at = to_iso(now)
        return EnqueueResult.refreshed

    # --- Consumer side ---

    def claim_batch(
        self,
        connection_id: str,
        entity_type: EntityType | str,
        max_size: int,
        available_before: datetime | None = None,
    ) -> ExportBatch:
        """Atomically claim up to ``max_size`` claimable pending entries.

        Stale in-flight entries of the connection are reclaimed first. The
        claim is one conditional UPDATE guarded by ``status = 'pending'``, so
        concurrent claimers always receive disjoint sets.

        Args:
            connection_id: Connection whose queue is drained.
            entity_type: 'offer', 'catalog' or 'shipment'.
            max_size: Maximum entries in the batch.
            available_before: Only claim entries that became claimable at or
                before this time. A drain passes its start time so entries it
                returned to pending are left for the next run.

        Returns:
            The claimed batch; empty when nothing is claimable.
        """
        entity_type = EntityType(entity_type).value
        self.reclaim_stale(connection_id)

        token = generate_uuid()
        now = self.now()
        now_iso = to_iso(now)
        cutoff_iso = to_iso(min(now, available_before)) if available_before else now_iso

        with self._database.session() as session:
            candidates = (
                select(QueueEntry.id)
                .where(
                    QueueEntry.connection_id == connection_id,
                    QueueEntry.entity_type == entity_type,
                    QueueEntry.status == EntryStatus.pending.value,
                    QueueEntry.available_at <= cutoff_iso,
                )
                .order_by(QueueEntry.available_at, QueueEntry.enqueued_at)
                .limit(max_size)
            )
            session.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.id.in_(candidates),
                    QueueEntry.status == EntryStatus.pending.value,
                )
                .values(
                    status=EntryStatus.in_flight.value,
                    claim_token=token,
                    claimed_at=now_iso,
                    updated_at=now_iso,
                )
                .execution_options(synchronize_session=False)
            )
            rows = session.scalars(
                select(QueueEntry)
                .where(QueueEntry.claim_token == token)
                .order_by(QueueEntry.available_at, QueueEntry.enqueued_at)
            ).all()
            entries = [
                ClaimedEntry(
                    id=row.id,
                    entity_id=row.entity_id,
                    attempt_count=row.attempt_count,
                    enqueued_at=row.enqueued_at,
                )
                for row in rows
            ]

        if entries:
            logger.debug(
                "Claimed %d %s entries for connection %s (token %s)",
                len(entries), entity_type, connection_id, token,
            )
        return ExportBatch(
            connection_id=connection_id,
            entity_type=entity_type,
            claim_token=token,
            entries=entries,
        )

    def _selected_ids(self, batch: ExportBatch, entry_ids: Iterable[str] | None) -> list[str]:
        if entry_ids is None:
            return batch.entry_ids
        owned = set(batch.entry_ids)
        return [entry_id for entry_id in entry_ids if entry_id in owned]

    def _owned_rows(self, session: Session, batch: ExportBatch, ids: list[str]) -> list[QueueEntry]:
        return list(session.scalars(
            select(QueueEntry).where(
                QueueEntry.id.in_(ids),
                QueueEntry.claim_token == batch.claim_token,
                QueueEntry.status == EntryStatus.in_flight.value,
            )
        ).all())

    def mark_done(self, batch: ExportBatch, entry_ids: Iterable[str] | None = None) -> int:
        """Mark entries of a batch as successfully exported.

        Args:
            batch: The claimed batch.
            entry_ids: Subset of the batch's entry ids; None means all.

        Returns:
            Number of entries transitioned to done.
        """
        ids = self._selected_ids(batch, entry_ids)
        if not ids:
            return 0
        now_iso = to_iso(self.now())
        with self._database.session() as session:
            result = session.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.id.in_(ids),
                    QueueEntry.claim_token == batch.claim_token,
                    QueueEntry.status == EntryStatus.in_flight.value,
                )
                .values(
                    status=EntryStatus.done.value,
                    completed_at=now_iso,
                    updated_at=now_iso,
                    last_error_code=None,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount
        if count < len(ids):
            logger.warning(
                "Claim %s lost %d of %d entries before completion",
                batch.claim_token, len(ids) - count, len(ids),
            )
        return count

    def mark_failed(
        self,
        batch: ExportBatch,
        retryable: bool,
        error: SyncError | None = None,
        entry_ids: Iterable[str] | None = None,
    ) -> dict[str, int]:
        """Record a failed delivery attempt for entries of a batch.

        Each entry's attempt count is incremented. Retryable failures below
        the ceiling return the entry to pending behind the backoff delay;
        everything else becomes terminally failed.

        Args:
            batch: The claimed batch.
            retryable: Whether the failure may succeed on a later attempt.
            error: Classified failure stored on the entries.
            entry_ids: Subset of the batch's entry ids; None means all.

        Returns:
            Dict with 'retried' and 'failed' counts.
        """
        counts = {"retried": 0, "failed": 0}
        ids = self._selected_ids(batch, entry_ids)
        if not ids:
            return counts

        now = self.now()
        error_code = error.code if error else None
        error_message = sanitize_error_message(str(error)) if error else None

        with self._database.session() as session:
            for row in self._owned_rows(session, batch, ids):
                row.attempt_count += 1
                row.last_error_code = error_code
                row.last_error = error_message
                row.updated_at = to_iso(now)
                if retryable and row.attempt_count < self.policy.max_attempts:
                    available_at = now + self.policy.backoff(row.attempt_count)
                    self._return_to_pending(session, row, available_at)
                    counts["retried"] += 1
                else:
                    row.status = EntryStatus.failed.value
                    row.completed_at = to_iso(now)
                    counts["failed"] += 1

        if counts["failed"]:
            logger.warning(
                "%d %s entries of connection %s failed permanently (%s)",
                counts["failed"], batch.entity_type, batch.connection_id, error_code,
            )
        return counts

    def release(self, batch: ExportBatch) -> int:
        """Return a whole batch to pending without consuming an attempt."""
        if not batch.entries:
            return 0
        now = self.now()
        with self._database.session() as session:
            rows = self._owned_rows(session, batch, batch.entry_ids)
            for row in rows:
                self._return_to_pending(session, row, now)
        return len(rows)

    def _return_to_pending(
        self, session: Session, row: QueueEntry, available_at: datetime | None,
    ) -> None:
        """Move an in-flight row back to pending, merging into a newer sibling.

        With ``available_at`` None the row keeps its previous availability, so
        it is claimable again at once.

        A change notification that arrived while the row was in flight has
        already created a fresh pending row for the same entity; the two are
        merged so at most one pending row exists per entity.
        """
        sibling = session.scalars(
            select(QueueEntry).where(
                QueueEntry.connection_id == row.connection_id,
                QueueEntry.entity_type == row.entity_type,
                QueueEntry.entity_id == row.entity_id,
                QueueEntry.status == EntryStatus.pending.value,
                QueueEntry.id != row.id,
            )
        ).first()
        if sibling is not None:
            sibling.attempt_count = max(sibling.attempt_count, row.attempt_count)
            if row.last_error_code:
                sibling.last_error_code = row.last_error_code
                sibling.last_error = row.last_error
            sibling.updated_at = row.updated_at
            session.delete(row)
            session.flush()
            return

        row.status = EntryStatus.pending.value
        row.claim_token = None
        row.claimed_at = None
        if available_at is not None:
            row.available_at = to_iso(available_at)
        session.flush()

    def reclaim_stale(self, connection_id: str | None = None) -> int:
        """Return abandoned in-flight entries to pending.

        An entry is abandoned when its claim is older than
        ``policy.stale_claim_seconds``. Its attempt count and ``available_at``
        are unchanged, so a drain already under way can claim it again.

        Args:
            connection_id: Limit reclamation to one connection.

        Returns:
            Number of entries reclaimed.
        """
        now = self.now()
        cutoff = to_iso(now - timedelta(seconds=self.policy.stale_claim_seconds))
        with self._database.session() as session:
            query = select(QueueEntry).where(
                QueueEntry.status == EntryStatus.in_flight.value,
                QueueEntry.claimed_at < cutoff,
            )
            if connection_id is not None:
                query = query.where(QueueEntry.connection_id == connection_id)
            rows = session.scalars(query).all()
            for row in rows:
                row.updated_at = to_iso(now)
                self._return_to_pending(session, row, None)

        if rows:
            logger.warning("Reclaimed %d stale in-flight queue entries", len(rows))
        return len(rows)

    # --- Maintenance and reporting ---

    def purge_terminal(self, older_than: datetime) -> int:
        """Delete done/failed entries last updated before ``older_than``."""
        with self._database.session() as session:
            result = session.execute(
                delete(QueueEntry)
                .where(
                    QueueEntry.status.in_(TERMINAL_STATUSES),
                    QueueEntry.updated_at < to_iso(older_than),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def stats(self, connection_id: str | None = None) -> list[dict[str, Any]]:
        """Count entries per connection, entity type, and status."""
        with self._database.session() as session:
            query = (
                select(
                    Connection.name,
                    QueueEntry.connection_id,
                    QueueEntry.entity_type,
                    QueueEntry.status,
                    func.count(QueueEntry.id),
                )
                .join(Connection, Connection.id == QueueEntry.connection_id)
                .group_by(
                    Connection.name,
                    QueueEntry.connection_id,
                    QueueEntry.entity_type,
                    QueueEntry.status,
                )
                .order_by(Connection.name, QueueEntry.entity_type, QueueEntry.status)
            )
            if connection_id is not None:
                query = query.where(QueueEntry.connection_id == connection_id)
            return [
                {
                    "connection": name,
                    "connection_id": conn_id,
                    "entity_type": entity_type,
                    "status": status,
                    "count": count,
                }
                for name, conn_id, entity_type, status, count in session.execute(query)
            ]

    def list_entries(
        self,
        connection_id: str | None = None,
        entity_type: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """List queue entries, most recently updated first."""
        with self._database.session() as session:
            query = select(QueueEntry).order_by(QueueEntry.updated_at.desc()).limit(limit)
            if connection_id is not None:
                query = query.where(QueueEntry.connection_id == connection_id)
            if entity_type is not None:
                query = query.where(QueueEntry.entity_type == entity_type)
            if status is not None:
                query = query.where(QueueEntry.status == status)
            return [
                {
                    "id": row.id,
                    "connection_id": row.connection_id,
                    "entity_type": row.entity_type,
                    "entity_id": row.entity_id,
                    "status": row.status,
                    "attempt_count": row.attempt_count,
                    "enqueued_at": row.enqueued_at,
                    "available_at": row.available_at,
                    "last_error_code": row.last_error_code,
                    "last_error": row.last_error,
                    "updated_at": row.updated_at,
                }
                for row in session.scalars(query).all()
            ]
