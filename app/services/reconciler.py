"""
Entitlement Reconciler - Merges storefront results into entitlement records.

NO DICTIONARIES - All operations use strongly typed domain models.

Both writers (direct verification and storefront notifications) go through
reconcile(). Results are ordered by storefront event time, never by arrival.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from structlog import get_logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from app.exceptions import ConcurrencyError, PersistenceError
from app.models.domain import (
    EntitlementRecord,
    PaymentState,
    ReconcileOutcome,
    ReconcileSource,
    VerificationResult,
    compute_premium,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.entitlement_repository import RepositoryFactory
from app.services.google_play_provider import hash_token

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def apply_result(
    current: EntitlementRecord | None,
    result: VerificationResult,
    now: datetime,
) -> tuple[EntitlementRecord, ReconcileOutcome]:
    """
    Compute the record that results from applying a result to the stored one.

    Pure function: no I/O, no clock. When the outcome does not change the
    record, the stored record is returned as is.
    """
    if current is None:
        return _first_record(result, now), ReconcileOutcome.CREATED

    if result.checksum == current.last_checksum:
        return current, ReconcileOutcome.DUPLICATE

    if result.ordering_key() <= current.ordering_key():
        return current, ReconcileOutcome.STALE

    state = result.payment_state
    if state.is_terminal and not current.owns_token(result.purchase_token):
        # An older purchase being refunded must not take away a newer one
        return current, ReconcileOutcome.SUPERSEDED

    if state is PaymentState.RECEIVED:
        updated = _apply_received(current, result)
    elif state.is_terminal:
        updated = _apply_terminal(current, result)
    else:
        updated = _apply_pending(current, result)

    updated = replace(
        updated,
        premium_active=compute_premium(updated.payment_state, updated.expires_at, now),
        last_event_time=result.event_time,
        last_checksum=result.checksum,
        revision=current.revision + 1,
        updated_at=now,
    )
    return updated, ReconcileOutcome.APPLIED


def _first_record(result: VerificationResult, now: datetime) -> EntitlementRecord:
    pending = result.payment_state is PaymentState.PENDING
    # A purchase that never paid has no paid period to keep
    expires_at = None if pending else result.expires_at
    return EntitlementRecord(
        subscriber_id=result.subscriber_id,
        plan_id=result.product_id,
        premium_active=compute_premium(result.payment_state, expires_at, now),
        payment_state=result.payment_state,
        expires_at=expires_at,
        purchase_token=result.purchase_token,
        auto_renew=result.auto_renew and not result.payment_state.is_terminal,
        last_event_time=result.event_time,
        last_checksum=result.checksum,
        revision=1,
        updated_at=now,
        pending_purchase_token=result.purchase_token if pending else None,
        pending_product_id=result.product_id if pending else None,
    )


def _apply_received(current: EntitlementRecord, result: VerificationResult) -> EntitlementRecord:
    pending_token = current.pending_purchase_token
    pending_product_id = current.pending_product_id
    if pending_token == result.purchase_token:
        logger.info(
            "pending_purchase_confirmed",
            subscriber_id=current.subscriber_id,
            product_id=result.product_id,
        )
        pending_token = None
        pending_product_id = None

    return replace(
        current,
        plan_id=result.product_id,
        payment_state=PaymentState.RECEIVED,
        expires_at=result.expires_at,
        purchase_token=result.purchase_token,
        auto_renew=result.auto_renew,
        pending_purchase_token=pending_token,
        pending_product_id=pending_product_id,
    )


def _apply_terminal(current: EntitlementRecord, result: VerificationResult) -> EntitlementRecord:
    if (
        result.purchase_token == current.pending_purchase_token
        and result.purchase_token != current.purchase_token
    ):
        # The purchase awaiting payment was voided; the paid one is untouched
        state = current.payment_state
        if state is PaymentState.PENDING and current.expires_at is not None:
            state = PaymentState.RECEIVED
        return replace(
            current,
            payment_state=state,
            pending_purchase_token=None,
            pending_product_id=None,
        )

    return replace(
        current,
        payment_state=result.payment_state,
        auto_renew=False,
    )


def _apply_pending(current: EntitlementRecord, result: VerificationResult) -> EntitlementRecord:
    # Keep an already-paid period; a revoked or refunded one is gone
    expires_at = None if current.payment_state.is_terminal else current.expires_at
    return replace(
        current,
        payment_state=PaymentState.PENDING,
        expires_at=expires_at,
        auto_renew=result.auto_renew,
        pending_purchase_token=result.purchase_token,
        pending_product_id=result.product_id,
    )


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SubscriberLocks:
    """
    Keyed asyncio locks, one per subscriber currently being reconciled.

    Entries are dropped as soon as nobody holds or waits for them.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, subscriber_id: str) -> AsyncIterator[None]:
        entry = self._entries.get(subscriber_id)
        if entry is None:
            entry = _LockEntry()
            self._entries[subscriber_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[subscriber_id]


class EntitlementReconciler:
    """
    Serializes writes per subscriber and applies results in event-time order.

    Distinct subscribers reconcile in parallel. Within one subscriber the
    in-process lock orders local writers; the row lock and the
    revision-conditioned update order writers across processes.
    """

    def __init__(
        self,
        repository_factory: RepositoryFactory,
        clock: Callable[[], datetime] = _utc_now,
        max_conflict_retries: int = 3,
        conflict_backoff_seconds: float = 0.05,
        locks: SubscriberLocks | None = None,
    ) -> None:
        self.repository_factory = repository_factory
        self.max_conflict_retries = max_conflict_retries
        self.conflict_backoff_seconds = conflict_backoff_seconds
        self._clock = clock
        self._locks = locks or SubscriberLocks()

    async def reconcile(
        self,
        result: VerificationResult,
        source: ReconcileSource = ReconcileSource.VERIFICATION,
    ) -> EntitlementRecord:
        """
        Merge a verification result into the subscriber's record.

        Stale, duplicate and superseded results leave the record unchanged
        and are not errors. Calling again with the same result is safe.

        Returns:
            The stored record after reconciliation

        Raises:
            PersistenceError: Storage failed or conflicts did not resolve
        """
        with trace_operation(
            "entitlement_reconcile",
            subscriber_id=result.subscriber_id,
            source=source.value,
        ) as span:
            async with self._locks.hold(result.subscriber_id):
                try:
                    async for attempt in AsyncRetrying(
                        retry=retry_if_exception_type(ConcurrencyError),
                        stop=stop_after_attempt(self.max_conflict_retries + 1),
                        wait=wait_random(0, self.conflict_backoff_seconds),
                        before_sleep=lambda _: metrics.reconcile_conflicts_total.inc(),
                        reraise=True,
                    ):
                        with attempt:
                            record, outcome = await self._reconcile_once(result, source)
                except ConcurrencyError as exc:
                    metrics.record_error("concurrency", "reconcile")
                    logger.error(
                        "entitlement_conflict_unresolved",
                        subscriber_id=result.subscriber_id,
                        attempts=self.max_conflict_retries + 1,
                    )
                    raise PersistenceError(
                        f"Conflicting writes for subscriber {result.subscriber_id}"
                    ) from exc
                except PersistenceError:
                    metrics.record_error("persistence", "reconcile")
                    raise

            span.set_attribute("outcome", outcome.value)

        metrics.record_reconciliation(outcome.value, source.value)
        self._log_outcome(result, record, outcome, source)
        return record

    async def _reconcile_once(
        self, result: VerificationResult, source: ReconcileSource
    ) -> tuple[EntitlementRecord, ReconcileOutcome]:
        async with self.repository_factory() as repository:
            current = await repository.get_for_update(result.subscriber_id)
            record, outcome = apply_result(current, result, self._clock())

            if outcome is ReconcileOutcome.CREATED:
                await repository.insert(record, source)
            elif outcome is ReconcileOutcome.APPLIED:
                if current is None:
                    raise PersistenceError(
                        f"No stored record to update for subscriber {result.subscriber_id}"
                    )
                await repository.update(record, current.revision, source)

            if outcome.changed:
                await repository.commit()

        return record, outcome

    def _log_outcome(
        self,
        result: VerificationResult,
        record: EntitlementRecord,
        outcome: ReconcileOutcome,
        source: ReconcileSource,
    ) -> None:
        if outcome.changed:
            logger.info(
                "entitlement_reconciled",
                subscriber_id=record.subscriber_id,
                outcome=outcome.value,
                source=source.value,
                payment_state=record.payment_state.value,
                premium_active=record.premium_active,
                revision=record.revision,
            )
        elif outcome is ReconcileOutcome.STALE:
            logger.info(
                "stale_event_discarded",
                subscriber_id=record.subscriber_id,
                source=source.value,
                event_time=result.event_time.isoformat(),
                stored_event_time=record.last_event_time.isoformat(),
            )
        elif outcome is ReconcileOutcome.SUPERSEDED:
            logger.info(
                "superseded_result_ignored",
                subscriber_id=record.subscriber_id,
                source=source.value,
                payment_state=result.payment_state.value,
                token_hash=hash_token(result.purchase_token)[:16],
            )
        else:
            logger.debug(
                "duplicate_result_ignored",
                subscriber_id=record.subscriber_id,
                source=source.value,
                revision=record.revision,
            )
