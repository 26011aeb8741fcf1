"""
Google Play domain models - Immutable dataclasses for subscription verification.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum


class SubscriptionPaymentState(IntEnum):
    """paymentState of the v3 purchases.subscriptions resource."""

    PENDING = 0
    RECEIVED = 1
    FREE_TRIAL = 2
    PENDING_DEFERRED = 3


class SubscriptionCancelReason(IntEnum):
    """cancelReason of the v3 purchases.subscriptions resource."""

    USER = 0
    SYSTEM = 1
    REPLACED = 2
    DEVELOPER = 3


class SubscriptionNotificationType(IntEnum):
    """Real-Time Developer Notification subscription notification types."""

    RECOVERED = 1
    RENEWED = 2
    CANCELED = 3
    PURCHASED = 4
    ON_HOLD = 5
    IN_GRACE_PERIOD = 6
    RESTARTED = 7
    PRICE_CHANGE_CONFIRMED = 8
    DEFERRED = 9
    PAUSED = 10
    PAUSE_SCHEDULE_CHANGED = 11
    REVOKED = 12
    EXPIRED = 13
    PENDING_PURCHASE_CANCELED = 20


class NotificationKind(str, Enum):
    """Which payload a developer notification carries."""

    SUBSCRIPTION = "subscription"
    VOIDED_PURCHASE = "voided_purchase"
    TEST = "test"
    OTHER = "other"


VOIDED_PRODUCT_TYPE_SUBSCRIPTION = 1


@dataclass(frozen=True)
class GooglePlaySubscriptionToken:
    """Validated Google Play subscription lookup key."""

    token: str
    product_id: str
    package_name: str

    def __post_init__(self) -> None:
        """Validate purchase token fields."""
        if not self.token or not self.token.strip():
            raise ValueError("Invalid purchase token")
        if not self.product_id:
            raise ValueError("Product ID required")
        if not self.package_name:
            raise ValueError("Package name required")


@dataclass(frozen=True)
class GooglePlaySubscriptionStatus:
    """Parsed purchases.subscriptions.get response."""

    purchase_token: str
    product_id: str
    order_id: str | None
    start_time: datetime | None
    expiry_time: datetime
    auto_renewing: bool
    payment_state: SubscriptionPaymentState | None
    cancel_reason: SubscriptionCancelReason | None
    linked_purchase_token: str | None
    obfuscated_account_id: str | None
    fetched_at: datetime
    checksum: str

    def is_revoked(self) -> bool:
        """A developer cancel on Play is how refunds with revocation surface."""
        return self.cancel_reason == SubscriptionCancelReason.DEVELOPER

    def is_pending(self) -> bool:
        return self.payment_state in (
            SubscriptionPaymentState.PENDING,
            SubscriptionPaymentState.PENDING_DEFERRED,
        )


@dataclass(frozen=True)
class GooglePlayNotification:
    """Provider-agnostic view of one Real-Time Developer Notification."""

    delivery_id: str
    kind: NotificationKind
    package_name: str
    event_time: datetime
    purchase_token: str
    product_id: str
    notification_type: int
    checksum: str

    def is_revocation(self) -> bool:
        return (
            self.kind == NotificationKind.SUBSCRIPTION
            and self.notification_type == SubscriptionNotificationType.REVOKED
        )

    def is_refund(self) -> bool:
        return self.kind == NotificationKind.VOIDED_PURCHASE

    @property
    def event_type(self) -> str:
        """Readable event name for logs and metrics."""
        if self.kind == NotificationKind.SUBSCRIPTION:
            try:
                return SubscriptionNotificationType(self.notification_type).name.lower()
            except ValueError:
                return f"unknown_{self.notification_type}"
        return self.kind.value
