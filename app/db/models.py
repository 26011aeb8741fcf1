"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

PAYMENT_STATES = ("pending", "received", "refunded", "revoked")
INBOX_STATUSES = ("pending", "processed", "failed")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Entitlement(Base):
    """
    ORM model for entitlements table.

    One row per subscriber. Updated only through reconciliation, never deleted.
    """

    __tablename__ = "entitlements"

    # Primary Key
    subscriber_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Current plan and access
    plan_id: Mapped[str] = mapped_column(String(255), nullable=False)
    premium_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_state: Mapped[str] = mapped_column(String(20), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Purchase tokens (hashes are indexed for notification lookups)
    purchase_token: Mapped[str] = mapped_column(String(4096), nullable=False)
    purchase_token_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    pending_purchase_token: Mapped[str | None] = mapped_column(String(4096), nullable=True)
    pending_purchase_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pending_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Ordering and idempotency
    last_event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    revision: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("revision > 0", name="ck_entitlement_revision_positive"),
        CheckConstraint(
            _in_clause("payment_state", PAYMENT_STATES), name="ck_entitlement_payment_state"
        ),
        Index("idx_entitlements_purchase_token_hash", "purchase_token_hash"),
        Index(
            "idx_entitlements_pending_token_hash",
            "pending_purchase_token_hash",
            postgresql_where=(pending_purchase_token_hash.isnot(None)),
        ),
        Index("idx_entitlements_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Entitlement(subscriber_id={self.subscriber_id}, plan_id={self.plan_id}, "
            f"state={self.payment_state}, revision={self.revision})>"
        )


class EntitlementRevision(Base):
    """
    ORM model for entitlement_revisions table.

    Immutable audit trail: one row per applied revision.
    """

    __tablename__ = "entitlement_revisions"

    # Primary Key
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    subscriber_id: Mapped[str] = mapped_column(String(255), nullable=False)
    revision: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Snapshot of the applied state
    plan_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_state: Mapped[str] = mapped_column(String(20), nullable=False)
    premium_active: Mapped[bool] = mapped_column(Boolean, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("subscriber_id", "revision", name="uq_entitlement_revision"),
        Index("idx_entitlement_revisions_subscriber", "subscriber_id"),
        Index("idx_entitlement_revisions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<EntitlementRevision(subscriber_id={self.subscriber_id}, "
            f"revision={self.revision}, state={self.payment_state})>"
        )


class RenewalEventInbox(Base):
    """
    ORM model for renewal_event_inbox table.

    Durable queue of acknowledged storefront notifications. The delivery id
    primary key is the deduplication key.
    """

    __tablename__ = "renewal_event_inbox"

    # Primary Key - storefront delivery id (Pub/Sub messageId)
    delivery_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Event payload, same shape as a verification result
    subscriber_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_token: Mapped[str] = mapped_column(String(4096), nullable=False)
    payment_state: Mapped[str] = mapped_column(String(20), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)

    # Processing state
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_inbox_attempts_non_negative"),
        CheckConstraint(_in_clause("status", INBOX_STATUSES), name="ck_inbox_status"),
        CheckConstraint(
            _in_clause("payment_state", PAYMENT_STATES), name="ck_inbox_payment_state"
        ),
        Index(
            "idx_renewal_event_inbox_pending",
            "received_at",
            postgresql_where=(status == "pending"),
        ),
        Index("idx_renewal_event_inbox_subscriber", "subscriber_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<RenewalEventInbox(delivery_id={self.delivery_id}, "
            f"subscriber_id={self.subscriber_id}, status={self.status})>"
        )
