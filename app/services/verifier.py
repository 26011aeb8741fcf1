"""
Receipt Verifier - Storefront status lookup and normalization.

NO DICTIONARIES - All results are strongly typed domain models.

The verifier never touches entitlement state. That keeps it idempotent,
cacheable, and safe to cancel at any point.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from functools import partial
from typing import Protocol

from structlog import get_logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.exceptions import (
    InvalidPurchaseError,
    StorefrontUnavailableError,
    UnverifiableResponseError,
)
from app.models.domain import PaymentState, VerificationResult
from app.models.google_play import GooglePlaySubscriptionStatus, GooglePlaySubscriptionToken
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.google_play_provider import hash_token
from app.services.subscription_catalog import is_known_product

logger = get_logger(__name__)

_MAX_RECENT_SIZE = 10000

StatusKey = tuple[str, str]


class SubscriptionStorefront(Protocol):
    """Anything that can answer "what is the status of this subscription purchase"."""

    async def get_subscription(
        self, token: GooglePlaySubscriptionToken
    ) -> GooglePlaySubscriptionStatus: ...


def normalize_payment_state(status: GooglePlaySubscriptionStatus) -> PaymentState:
    """Map Play's subscription fields onto the internal payment state."""
    if status.is_revoked():
        return PaymentState.REVOKED
    if status.is_pending():
        return PaymentState.PENDING
    # Received, free trial, or lapsed (paymentState omitted): the expiry decides access
    return PaymentState.RECEIVED


class ReceiptVerifier:
    """
    Verifies subscription purchases against the storefront.

    Transient storefront failures are retried with bounded exponential
    backoff. Identical (product, token) lookups share one in-flight call and
    are answered from a short-lived window afterwards, so client retry
    storms do not multiply storefront traffic.
    """

    def __init__(
        self,
        storefront: SubscriptionStorefront,
        package_name: str,
        max_attempts: int = 4,
        backoff_initial_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        dedup_window_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.storefront = storefront
        self.package_name = package_name
        self.max_attempts = max_attempts
        self.backoff_initial_seconds = backoff_initial_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.dedup_window_seconds = dedup_window_seconds
        self._clock = clock
        self._inflight: dict[StatusKey, asyncio.Future[GooglePlaySubscriptionStatus]] = {}
        self._recent: dict[StatusKey, tuple[float, GooglePlaySubscriptionStatus]] = {}

    async def verify(
        self,
        subscriber_id: str,
        product_id: str,
        purchase_token: str,
    ) -> VerificationResult:
        """
        Verify a subscription purchase for a subscriber.

        Returns:
            Normalized verification result, event time = storefront response time

        Raises:
            InvalidPurchaseError: Empty token, unknown product, or storefront 4xx
            StorefrontUnavailableError: Storefront still failing after all attempts
            UnverifiableResponseError: Storefront answered with something unusable
        """
        if not purchase_token or not purchase_token.strip():
            raise InvalidPurchaseError("Purchase token required")
        if not is_known_product(product_id):
            metrics.record_verification("unknown_product")
            raise InvalidPurchaseError(f"Unknown product ID: {product_id}")

        with trace_operation("receipt_verification", product_id=product_id):
            try:
                status = await self.fetch_status(product_id, purchase_token.strip())
                result = self.to_result(subscriber_id, status, status.fetched_at)
            except InvalidPurchaseError:
                metrics.record_verification("invalid")
                raise
            except StorefrontUnavailableError:
                metrics.record_verification("unavailable")
                raise
            except UnverifiableResponseError:
                metrics.record_verification("unverifiable")
                raise

        metrics.record_verification(result.payment_state.value)
        logger.info(
            "purchase_verified",
            subscriber_id=subscriber_id,
            product_id=product_id,
            payment_state=result.payment_state.value,
            expires_at=result.expires_at.isoformat() if result.expires_at else None,
        )
        return result

    def to_result(
        self,
        subscriber_id: str,
        status: GooglePlaySubscriptionStatus,
        event_time: datetime,
    ) -> VerificationResult:
        """
        Bind a storefront status to a subscriber.

        Raises:
            InvalidPurchaseError: If the purchase was made for another subscriber
        """
        if status.obfuscated_account_id and status.obfuscated_account_id != subscriber_id:
            logger.warning(
                "purchase_account_mismatch",
                subscriber_id=subscriber_id,
                token_hash=hash_token(status.purchase_token)[:16],
            )
            raise InvalidPurchaseError("Purchase belongs to a different subscriber")

        return VerificationResult(
            subscriber_id=subscriber_id,
            product_id=status.product_id,
            purchase_token=status.purchase_token,
            payment_state=normalize_payment_state(status),
            expires_at=status.expiry_time,
            auto_renew=status.auto_renewing,
            event_time=event_time,
            checksum=status.checksum,
        )

    async def fetch_status(
        self, product_id: str, purchase_token: str, use_recent: bool = True
    ) -> GooglePlaySubscriptionStatus:
        """
        Fetch storefront status, sharing in-flight and recent lookups.

        A cancelled caller only stops waiting; the shared lookup keeps going
        for the other waiters. With use_recent=False the recent-answer window
        is skipped, for callers that need a status at least as new as an
        event they already know about.
        """
        key = (product_id, purchase_token)

        cached = self._recent.get(key) if use_recent else None
        if cached is not None:
            expires_at, status = cached
            if self._clock() < expires_at:
                metrics.record_verification_dedup("recent")
                return status
            del self._recent[key]

        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._fetch_with_retry(key))
            self._inflight[key] = future
            future.add_done_callback(partial(self._on_fetch_done, key))
        else:
            metrics.record_verification_dedup("inflight")

        return await asyncio.shield(future)

    async def _fetch_with_retry(self, key: StatusKey) -> GooglePlaySubscriptionStatus:
        product_id, purchase_token = key
        lookup = GooglePlaySubscriptionToken(
            token=purchase_token,
            product_id=product_id,
            package_name=self.package_name,
        )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(StorefrontUnavailableError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_initial_seconds,
                max=self.backoff_max_seconds,
            ),
            before_sleep=self._before_retry,
            reraise=True,
        ):
            with attempt:
                started = time.perf_counter()
                try:
                    status = await self.storefront.get_subscription(lookup)
                finally:
                    metrics.storefront_request_duration_seconds.observe(
                        time.perf_counter() - started
                    )

        return status

    def _before_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        metrics.storefront_retries_total.inc()
        logger.warning(
            "storefront_retry_scheduled",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            error=str(exc),
        )

    def _on_fetch_done(
        self, key: StatusKey, future: asyncio.Future[GooglePlaySubscriptionStatus]
    ) -> None:
        self._inflight.pop(key, None)
        if future.cancelled():
            return
        if future.exception() is not None:
            return
        self._recent[key] = (self._clock() + self.dedup_window_seconds, future.result())
        self._prune_recent()

    def _prune_recent(self) -> None:
        """Remove expired entries once the window cache grows large."""
        if len(self._recent) < _MAX_RECENT_SIZE:
            return

        now = self._clock()
        expired = [k for k, (exp, _) in self._recent.items() if exp <= now]
        for k in expired:
            del self._recent[k]
