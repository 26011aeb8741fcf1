"""
Notification Translator - Turns Google Play notifications into renewal events.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from structlog import get_logger

from app.exceptions import InvalidPurchaseError, UnverifiableResponseError
from app.models.domain import EntitlementRecord, PaymentState, RenewalEvent, VerificationResult
from app.models.google_play import (
    GooglePlayNotification,
    GooglePlaySubscriptionStatus,
    NotificationKind,
)
from app.observability.metrics import metrics
from app.services.entitlement_repository import RepositoryFactory
from app.services.google_play_provider import hash_token
from app.services.verifier import ReceiptVerifier

logger = get_logger(__name__)


class GooglePlayNotificationTranslator:
    """
    Resolves a notification to a subscriber and a normalized renewal event.

    Revocations and refunds are synthesized from the stored record that holds
    the token. Every other subscription notification is re-verified against
    the storefront, since the notification itself carries no state.
    """

    def __init__(self, verifier: ReceiptVerifier, repository_factory: RepositoryFactory) -> None:
        self.verifier = verifier
        self.repository_factory = repository_factory

    async def to_renewal_event(self, notification: GooglePlayNotification) -> RenewalEvent | None:
        """
        Translate a notification.

        Returns:
            The renewal event, or None when there is nothing to reconcile
            (test notification, unresolvable subscriber, invalid purchase)

        Raises:
            StorefrontUnavailableError: Storefront could not answer; redeliver later
            PersistenceError: Subscriber lookup failed; redeliver later
        """
        if notification.kind == NotificationKind.TEST:
            logger.info("google_play_test_notification", delivery_id=notification.delivery_id)
            self._count(notification, "ignored")
            return None

        if notification.kind == NotificationKind.OTHER:
            logger.info("google_play_notification_ignored", delivery_id=notification.delivery_id)
            self._count(notification, "ignored")
            return None

        if notification.is_revocation() or notification.is_refund():
            return await self._synthesize_terminal(notification)

        return await self._reverify(notification)

    async def _synthesize_terminal(self, notification: GooglePlayNotification) -> RenewalEvent | None:
        async with self.repository_factory() as repository:
            record = await repository.find_by_purchase_token(notification.purchase_token)

        if record is None:
            self._unresolved(notification)
            return None

        state = PaymentState.REVOKED if notification.is_revocation() else PaymentState.REFUNDED
        event = RenewalEvent(
            subscriber_id=record.subscriber_id,
            product_id=notification.product_id or _product_for_token(record, notification),
            purchase_token=notification.purchase_token,
            payment_state=state,
            expires_at=record.expires_at,
            auto_renew=False,
            event_time=notification.event_time,
            checksum=notification.checksum,
            delivery_id=notification.delivery_id,
        )
        self._count(notification, "translated")
        return event

    async def _reverify(self, notification: GooglePlayNotification) -> RenewalEvent | None:
        try:
            # The status must postdate the notification it is labelled with
            status = await self.verifier.fetch_status(
                notification.product_id, notification.purchase_token, use_recent=False
            )
            subscriber_id = await self._resolve_subscriber(status)
            if subscriber_id is None:
                self._unresolved(notification)
                return None
            result = self.verifier.to_result(subscriber_id, status, notification.event_time)
        except (InvalidPurchaseError, UnverifiableResponseError) as exc:
            # Redelivery would get the same answer
            logger.warning(
                "google_play_notification_rejected",
                delivery_id=notification.delivery_id,
                event_type=notification.event_type,
                error=str(exc),
            )
            self._count(notification, "rejected")
            return None

        self._count(notification, "translated")
        return _as_event(result, notification.delivery_id)

    async def _resolve_subscriber(self, status: GooglePlaySubscriptionStatus) -> str | None:
        """Record by token, then by linked token, then the obfuscated account id."""
        async with self.repository_factory() as repository:
            record = await repository.find_by_purchase_token(status.purchase_token)
            if record is None and status.linked_purchase_token:
                record = await repository.find_by_purchase_token(status.linked_purchase_token)

        if record is not None:
            return record.subscriber_id
        return status.obfuscated_account_id

    def _unresolved(self, notification: GooglePlayNotification) -> None:
        logger.warning(
            "google_play_notification_unresolved",
            delivery_id=notification.delivery_id,
            event_type=notification.event_type,
            token_hash=hash_token(notification.purchase_token)[:16],
        )
        self._count(notification, "unresolved")

    def _count(self, notification: GooglePlayNotification, result: str) -> None:
        metrics.record_notification(notification.event_type, result)


def _product_for_token(record: EntitlementRecord, notification: GooglePlayNotification) -> str:
    if notification.purchase_token == record.pending_purchase_token and record.pending_product_id:
        return record.pending_product_id
    return record.plan_id


def _as_event(result: VerificationResult, delivery_id: str) -> RenewalEvent:
    return RenewalEvent(
        subscriber_id=result.subscriber_id,
        product_id=result.product_id,
        purchase_token=result.purchase_token,
        payment_state=result.payment_state,
        expires_at=result.expires_at,
        auto_renew=result.auto_renew,
        event_time=result.event_time,
        checksum=result.checksum,
        delivery_id=delivery_id,
    )
