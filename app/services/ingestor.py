"""
Event Ingestor - Durable intake of storefront renewal events.

NO DICTIONARIES - All operations use strongly typed domain models.

An event is committed to the renewal_event_inbox table before the HTTP
layer acknowledges the delivery. A background worker drains the inbox
through the reconciler, so acknowledged events survive restarts.
"""

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.db.models import RenewalEventInbox as RenewalEventInboxRow
from app.exceptions import PersistenceError
from app.models.domain import PaymentState, ReconcileSource, RenewalEvent
from app.observability.metrics import metrics
from app.services.reconciler import EntitlementReconciler

logger = get_logger(__name__)


@dataclass(frozen=True)
class InboxEntry:
    """A pending inbox row: the event plus how often processing has failed."""

    event: RenewalEvent
    attempts: int

    def __post_init__(self) -> None:
        if self.attempts < 0:
            raise ValueError(f"Attempts cannot be negative: {self.attempts}")


class RenewalEventInbox(Protocol):
    """Durable, delivery-id-keyed queue of renewal events."""

    async def enqueue(self, event: RenewalEvent) -> bool:
        """Store an event. Returns False when the delivery id was already stored."""
        ...

    async def contains(self, delivery_id: str) -> bool: ...

    async def claim_pending(self, limit: int) -> list[InboxEntry]: ...

    async def mark_processed(self, delivery_id: str) -> None: ...

    async def record_failure(self, delivery_id: str, error: str, give_up: bool) -> None: ...


class SqlRenewalEventInbox:
    """PostgreSQL-backed inbox. Every call runs in its own short transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def enqueue(self, event: RenewalEvent) -> bool:
        stmt = (
            insert(RenewalEventInboxRow)
            .values(
                delivery_id=event.delivery_id,
                subscriber_id=event.subscriber_id,
                product_id=event.product_id,
                purchase_token=event.purchase_token,
                payment_state=event.payment_state.value,
                expires_at=event.expires_at,
                auto_renew=event.auto_renew,
                event_time=event.event_time,
                checksum=event.checksum,
                status="pending",
                attempts=0,
                received_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=[RenewalEventInboxRow.delivery_id])
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Inbox enqueue failed: {exc}") from exc
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def contains(self, delivery_id: str) -> bool:
        stmt = select(RenewalEventInboxRow.delivery_id).where(
            RenewalEventInboxRow.delivery_id == delivery_id
        )
        try:
            async with self.session_factory() as session:
                found = (await session.execute(stmt)).scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Inbox lookup failed: {exc}") from exc
        return found is not None

    async def claim_pending(self, limit: int) -> list[InboxEntry]:
        """Oldest pending events first."""
        stmt = (
            select(RenewalEventInboxRow)
            .where(RenewalEventInboxRow.status == "pending")
            .order_by(RenewalEventInboxRow.received_at, RenewalEventInboxRow.delivery_id)
            .limit(limit)
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Inbox read failed: {exc}") from exc
        return [InboxEntry(event=_row_to_event(row), attempts=row.attempts) for row in rows]

    async def mark_processed(self, delivery_id: str) -> None:
        stmt = (
            update(RenewalEventInboxRow)
            .where(RenewalEventInboxRow.delivery_id == delivery_id)
            .values(status="processed", processed_at=datetime.now(UTC), last_error=None)
        )
        await self._execute(stmt, "mark processed")

    async def record_failure(self, delivery_id: str, error: str, give_up: bool) -> None:
        stmt = (
            update(RenewalEventInboxRow)
            .where(RenewalEventInboxRow.delivery_id == delivery_id)
            .values(
                attempts=RenewalEventInboxRow.attempts + 1,
                last_error=error,
                status="failed" if give_up else "pending",
            )
        )
        await self._execute(stmt, "record failure")

    async def _execute(self, stmt: object, operation: str) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(stmt)  # type: ignore[call-overload]
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Inbox {operation} failed: {exc}") from exc


def _row_to_event(row: RenewalEventInboxRow) -> RenewalEvent:
    return RenewalEvent(
        subscriber_id=row.subscriber_id,
        product_id=row.product_id,
        purchase_token=row.purchase_token,
        payment_state=PaymentState(row.payment_state),
        expires_at=row.expires_at,
        auto_renew=row.auto_renew,
        event_time=row.event_time,
        checksum=row.checksum,
        delivery_id=row.delivery_id,
    )


class EventIngestor:
    """
    Accepts renewal events and feeds them to the reconciler.

    ingest() only makes the event durable; the worker started with start()
    does the reconciliation.
    """

    def __init__(
        self,
        inbox: RenewalEventInbox,
        reconciler: EntitlementReconciler,
        batch_size: int = 50,
        poll_interval_seconds: float = 5.0,
        max_attempts: int = 10,
    ) -> None:
        self.inbox = inbox
        self.reconciler = reconciler
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def ingest(self, event: RenewalEvent) -> bool:
        """
        Durably accept a renewal event.

        Returns:
            True if the event was new, False for a duplicate delivery (a
            successful no-op)

        Raises:
            PersistenceError: The event could not be stored; do not acknowledge
        """
        accepted = await self.inbox.enqueue(event)
        if not accepted:
            metrics.inbox_events_total.labels(result="duplicate").inc()
            logger.info(
                "duplicate_delivery_ignored",
                delivery_id=event.delivery_id,
                subscriber_id=event.subscriber_id,
            )
            return False

        metrics.inbox_events_total.labels(result="enqueued").inc()
        logger.info(
            "renewal_event_enqueued",
            delivery_id=event.delivery_id,
            subscriber_id=event.subscriber_id,
            payment_state=event.payment_state.value,
        )
        self._wakeup.set()
        return True

    async def is_duplicate(self, delivery_id: str) -> bool:
        """
        Check whether a delivery is already stored, before any work is done for it.

        Raises:
            PersistenceError: The inbox could not be read
        """
        if not await self.inbox.contains(delivery_id):
            return False

        metrics.inbox_events_total.labels(result="duplicate").inc()
        logger.info("duplicate_delivery_ignored", delivery_id=delivery_id)
        return True

    async def drain(self) -> int:
        """
        Reconcile pending inbox events until the inbox is empty or only
        failing events remain.

        Returns:
            Number of events processed successfully
        """
        processed = 0
        while True:
            batch = await self.inbox.claim_pending(self.batch_size)
            metrics.inbox_pending_events.set(len(batch))
            if not batch:
                break

            progressed = 0
            for entry in batch:
                if await self._process(entry):
                    progressed += 1
            processed += progressed

            if len(batch) < self.batch_size or progressed == 0:
                break

        return processed

    async def _process(self, entry: InboxEntry) -> bool:
        event = entry.event
        try:
            await self.reconciler.reconcile(
                event.as_verification_result(), source=ReconcileSource.NOTIFICATION
            )
        except PersistenceError as exc:
            await self._record_failure(entry, exc.message)
            return False
        except Exception as exc:
            logger.exception("renewal_event_unexpected_error", delivery_id=event.delivery_id)
            await self._record_failure(entry, f"{type(exc).__name__}: {exc}")
            return False

        await self.inbox.mark_processed(event.delivery_id)
        metrics.inbox_events_total.labels(result="processed").inc()
        return True

    async def _record_failure(self, entry: InboxEntry, error: str) -> None:
        event = entry.event
        attempts = entry.attempts + 1
        give_up = attempts >= self.max_attempts
        await self.inbox.record_failure(event.delivery_id, error, give_up)
        if give_up:
            metrics.inbox_events_total.labels(result="failed").inc()
            logger.error(
                "renewal_event_failed",
                delivery_id=event.delivery_id,
                subscriber_id=event.subscriber_id,
                attempts=attempts,
                error=error,
            )
        else:
            metrics.inbox_events_total.labels(result="retry").inc()
            logger.warning(
                "renewal_event_retry_scheduled",
                delivery_id=event.delivery_id,
                attempts=attempts,
                max_attempts=self.max_attempts,
                error=error,
            )

    async def run(self) -> None:
        """Worker loop: drain, then sleep until woken or the poll interval passes."""
        logger.info("inbox_worker_started", poll_interval_seconds=self.poll_interval_seconds)
        while True:
            self._wakeup.clear()
            try:
                processed = await self.drain()
                if processed:
                    logger.info("inbox_drained", processed=processed)
            except PersistenceError as exc:
                logger.warning("inbox_drain_failed", error=exc.message)
            except Exception:
                # Keep the worker alive; the event stays pending
                logger.exception("inbox_worker_error")

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval_seconds)

    def start(self) -> None:
        """Start the background worker on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="renewal-event-inbox-worker")

    async def stop(self) -> None:
        """Stop the worker. Unprocessed events stay in the inbox."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("inbox_worker_stopped")
