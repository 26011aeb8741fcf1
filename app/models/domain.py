"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum


class PaymentState(str, Enum):
    """Normalized storefront payment state."""

    PENDING = "pending"
    RECEIVED = "received"
    REFUNDED = "refunded"
    REVOKED = "revoked"

    @property
    def is_terminal(self) -> bool:
        """Refunded and revoked purchases remove access immediately."""
        return self in (PaymentState.REFUNDED, PaymentState.REVOKED)

    @property
    def rank(self) -> int:
        """Tie-break precedence for results sharing an event time."""
        return _STATE_RANK[self]


_STATE_RANK = {
    PaymentState.PENDING: 0,
    PaymentState.RECEIVED: 1,
    PaymentState.REVOKED: 2,
    PaymentState.REFUNDED: 3,
}


class ReconcileSource(str, Enum):
    """Which path produced a reconciled result."""

    VERIFICATION = "verification"
    NOTIFICATION = "notification"


class ReconcileOutcome(str, Enum):
    """What reconciliation did with an incoming result."""

    CREATED = "created"
    APPLIED = "applied"
    STALE = "stale"
    DUPLICATE = "duplicate"
    SUPERSEDED = "superseded"

    @property
    def changed(self) -> bool:
        return self in (ReconcileOutcome.CREATED, ReconcileOutcome.APPLIED)


OrderingKey = tuple[datetime, int, str]


def compute_premium(
    payment_state: PaymentState, expires_at: datetime | None, now: datetime
) -> bool:
    """Premium iff the paid period is still running and access was not taken back."""
    if payment_state.is_terminal or expires_at is None:
        return False
    return expires_at > now


def _require_aware(name: str, value: datetime | None) -> None:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


@dataclass(frozen=True)
class VerificationResult:
    """Normalized storefront status for one purchase, consumed once by the reconciler."""

    subscriber_id: str
    product_id: str
    purchase_token: str
    payment_state: PaymentState
    expires_at: datetime | None
    auto_renew: bool
    event_time: datetime
    checksum: str

    def __post_init__(self) -> None:
        """Validate verification result fields."""
        if not self.subscriber_id:
            raise ValueError("subscriber_id cannot be empty")
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        if not self.purchase_token:
            raise ValueError("purchase_token cannot be empty")
        if not self.checksum:
            raise ValueError("checksum cannot be empty")
        _require_aware("event_time", self.event_time)
        _require_aware("expires_at", self.expires_at)

    def ordering_key(self) -> OrderingKey:
        """Storefront event time first, then state precedence, then checksum."""
        return (self.event_time, self.payment_state.rank, self.checksum)


@dataclass(frozen=True)
class RenewalEvent(VerificationResult):
    """Storefront notification, shaped like a verification result plus its delivery id."""

    delivery_id: str = ""

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.delivery_id:
            raise ValueError("delivery_id cannot be empty")

    def as_verification_result(self) -> VerificationResult:
        """Coerce into the common shape the reconciler accepts."""
        return VerificationResult(
            **{f.name: getattr(self, f.name) for f in fields(VerificationResult)}
        )


@dataclass(frozen=True)
class EntitlementRecord:
    """Stored entitlement state for one subscriber."""

    subscriber_id: str
    plan_id: str
    premium_active: bool
    payment_state: PaymentState
    expires_at: datetime | None
    purchase_token: str
    auto_renew: bool
    last_event_time: datetime
    last_checksum: str
    revision: int
    updated_at: datetime
    pending_purchase_token: str | None = None
    pending_product_id: str | None = None

    def __post_init__(self) -> None:
        """Validate entitlement record constraints."""
        if not self.subscriber_id:
            raise ValueError("subscriber_id cannot be empty")
        if self.revision < 1:
            raise ValueError(f"Revision must be positive: {self.revision}")

    def ordering_key(self) -> OrderingKey:
        return (self.last_event_time, self.payment_state.rank, self.last_checksum)

    def is_premium(self, now: datetime) -> bool:
        """Recompute premium status at read time instead of trusting the stored flag."""
        return compute_premium(self.payment_state, self.expires_at, now)

    def owns_token(self, purchase_token: str) -> bool:
        return purchase_token in (self.purchase_token, self.pending_purchase_token)
