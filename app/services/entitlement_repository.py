"""
Entitlement Repository - Storage for entitlement records with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Purchase tokens are stored alongside their SHA-256 hash; lookups by token
go through the indexed hash column.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.db.models import Entitlement, EntitlementRevision
from app.exceptions import ConcurrencyError, PersistenceError
from app.models.domain import EntitlementRecord, PaymentState, ReconcileSource
from app.services.google_play_provider import hash_token

logger = get_logger(__name__)


class EntitlementRepository(Protocol):
    """Unit of work over entitlement records. Nothing is durable until commit()."""

    async def get(self, subscriber_id: str) -> EntitlementRecord | None: ...

    async def get_for_update(self, subscriber_id: str) -> EntitlementRecord | None: ...

    async def find_by_purchase_token(self, purchase_token: str) -> EntitlementRecord | None: ...

    async def insert(self, record: EntitlementRecord, source: ReconcileSource) -> None: ...

    async def update(
        self, record: EntitlementRecord, expected_revision: int, source: ReconcileSource
    ) -> None: ...

    async def commit(self) -> None: ...


RepositoryFactory = Callable[[], AbstractAsyncContextManager[EntitlementRepository]]


class SqlEntitlementRepository:
    """
    PostgreSQL-backed entitlement repository.

    Row locks taken by get_for_update() are held until the session commits
    or closes.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, subscriber_id: str) -> EntitlementRecord | None:
        """Plain keyed read, no lock."""
        try:
            row = await self.session.get(Entitlement, subscriber_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Entitlement lookup failed: {exc}") from exc
        return _to_domain(row) if row is not None else None

    async def get_for_update(self, subscriber_id: str) -> EntitlementRecord | None:
        """Lock entitlement row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(Entitlement)
            .where(Entitlement.subscriber_id == subscriber_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Entitlement lock failed: {exc}") from exc
        row = result.scalar_one_or_none()
        return _to_domain(row) if row is not None else None

    async def find_by_purchase_token(self, purchase_token: str) -> EntitlementRecord | None:
        """
        Find the record holding a purchase token, current or pending.

        When several subscribers ever held the token, the most recently
        updated record wins.
        """
        token_hash = hash_token(purchase_token)
        stmt = (
            select(Entitlement)
            .where(
                or_(
                    Entitlement.purchase_token_hash == token_hash,
                    Entitlement.pending_purchase_token_hash == token_hash,
                )
            )
            .order_by(Entitlement.updated_at.desc())
            .limit(1)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Purchase token lookup failed: {exc}") from exc
        row = result.scalar_one_or_none()
        return _to_domain(row) if row is not None else None

    async def insert(self, record: EntitlementRecord, source: ReconcileSource) -> None:
        """
        Insert a first record for a subscriber.

        Raises:
            ConcurrencyError: Another writer created the record first
            PersistenceError: Storage failure or write verification failure
        """
        self.session.add(Entitlement(subscriber_id=record.subscriber_id, **_columns(record)))
        self.session.add(_revision_row(record, source))
        try:
            await self.session.flush()
        except IntegrityError as exc:
            logger.warning(
                "entitlement_insert_conflict",
                subscriber_id=record.subscriber_id,
                error=str(exc.orig),
            )
            raise ConcurrencyError(f"entitlement:{record.subscriber_id}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Entitlement insert failed: {exc}") from exc

        await self._verify_revision(record)

    async def update(
        self, record: EntitlementRecord, expected_revision: int, source: ReconcileSource
    ) -> None:
        """
        Replace a record, conditioned on the revision the caller read.

        Raises:
            ConcurrencyError: The stored revision moved since it was read
            PersistenceError: Storage failure or write verification failure
        """
        stmt = (
            update(Entitlement)
            .where(
                Entitlement.subscriber_id == record.subscriber_id,
                Entitlement.revision == expected_revision,
            )
            .values(**_columns(record))
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Entitlement update failed: {exc}") from exc

        if result.rowcount != 1:  # type: ignore[attr-defined]
            logger.warning(
                "entitlement_revision_conflict",
                subscriber_id=record.subscriber_id,
                expected_revision=expected_revision,
            )
            raise ConcurrencyError(f"entitlement:{record.subscriber_id}")

        self.session.add(_revision_row(record, source))
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ConcurrencyError(f"entitlement:{record.subscriber_id}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Entitlement audit write failed: {exc}") from exc

        await self._verify_revision(record)

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Commit failed: {exc}") from exc

    async def _verify_revision(self, record: EntitlementRecord) -> None:
        """Read back the stored revision after a write."""
        stmt = select(Entitlement.revision).where(
            Entitlement.subscriber_id == record.subscriber_id
        )
        try:
            stored = (await self.session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Write verification failed: {exc}") from exc

        if stored is None:
            raise PersistenceError(f"Entitlement {record.subscriber_id} not found after write")
        if stored != record.revision:
            raise PersistenceError(
                f"Revision mismatch: expected {record.revision}, got {stored}"
            )


def sql_repository_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> RepositoryFactory:
    """Build a repository factory; each unit of work gets its own session."""

    @asynccontextmanager
    async def open_repository() -> AsyncIterator[EntitlementRepository]:
        try:
            session = session_factory()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Could not open database session: {exc}") from exc
        # Closing without commit rolls back and releases row locks
        async with session:
            yield SqlEntitlementRepository(session)

    return open_repository


def _columns(record: EntitlementRecord) -> dict[str, object]:
    """Column values for an entitlement row (SQLAlchemy values() boundary)."""
    return {
        "plan_id": record.plan_id,
        "premium_active": record.premium_active,
        "payment_state": record.payment_state.value,
        "expires_at": record.expires_at,
        "auto_renew": record.auto_renew,
        "purchase_token": record.purchase_token,
        "purchase_token_hash": hash_token(record.purchase_token),
        "pending_purchase_token": record.pending_purchase_token,
        "pending_purchase_token_hash": (
            hash_token(record.pending_purchase_token) if record.pending_purchase_token else None
        ),
        "pending_product_id": record.pending_product_id,
        "last_event_time": record.last_event_time,
        "last_checksum": record.last_checksum,
        "revision": record.revision,
        "updated_at": record.updated_at,
    }


def _revision_row(record: EntitlementRecord, source: ReconcileSource) -> EntitlementRevision:
    return EntitlementRevision(
        subscriber_id=record.subscriber_id,
        revision=record.revision,
        plan_id=record.plan_id,
        payment_state=record.payment_state.value,
        premium_active=record.premium_active,
        expires_at=record.expires_at,
        event_time=record.last_event_time,
        checksum=record.last_checksum,
        source=source.value,
    )


def _to_domain(row: Entitlement) -> EntitlementRecord:
    """Convert ORM entitlement to domain model."""
    return EntitlementRecord(
        subscriber_id=row.subscriber_id,
        plan_id=row.plan_id,
        premium_active=row.premium_active,
        payment_state=PaymentState(row.payment_state),
        expires_at=row.expires_at,
        purchase_token=row.purchase_token,
        auto_renew=row.auto_renew,
        last_event_time=row.last_event_time,
        last_checksum=row.last_checksum,
        revision=row.revision,
        updated_at=row.updated_at,
        pending_purchase_token=row.pending_purchase_token,
        pending_product_id=row.pending_product_id,
    )
