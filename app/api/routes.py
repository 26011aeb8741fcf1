"""
API Routes - FastAPI endpoints for purchase verification and entitlements.

NO DICTIONARIES - All requests/responses use Pydantic models.

Domain errors propagate to the exception handlers registered in app.main,
which render them as {error, message} bodies.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    get_ingestor,
    get_provider,
    get_read_repository_factory,
    get_reconciler,
    get_translator,
    get_verifier,
    require_api_key,
    require_pubsub_push_auth,
)
from app.db.session import get_read_db
from app.exceptions import EntitlementNotFoundError
from app.models.api import (
    EntitlementResponse,
    ErrorResponse,
    HealthResponse,
    NotificationAck,
    VerifyPurchaseRequest,
    VerifyPurchaseResponse,
)
from app.models.domain import ReconcileSource
from app.services.entitlement_repository import RepositoryFactory
from app.services.google_play_provider import GooglePlayProvider
from app.services.ingestor import EventIngestor
from app.services.notifications import GooglePlayNotificationTranslator
from app.services.reconciler import EntitlementReconciler
from app.services.verifier import ReceiptVerifier

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/v1/purchases/verify",
    response_model=VerifyPurchaseResponse,
    dependencies=[Depends(require_api_key)],
    responses={
        400: {"model": ErrorResponse, "description": "Purchase is invalid"},
        401: {"model": ErrorResponse, "description": "Missing or invalid API key"},
        503: {"model": ErrorResponse, "description": "Could not be confirmed yet, retry"},
    },
)
async def verify_purchase(
    request: VerifyPurchaseRequest,
    verifier: ReceiptVerifier = Depends(get_verifier),
    reconciler: EntitlementReconciler = Depends(get_reconciler),
) -> VerifyPurchaseResponse:
    """
    Verify a subscription purchase and reconcile the subscriber's entitlement.

    Safe to retry with the same body: a repeated storefront answer is a
    duplicate and leaves the record unchanged.

    Auth: X-API-Key
    """
    result = await verifier.verify(
        subscriber_id=request.subscriber_id,
        product_id=request.product_id,
        purchase_token=request.purchase_token,
    )
    record = await reconciler.reconcile(result, source=ReconcileSource.VERIFICATION)

    return VerifyPurchaseResponse(
        entitlement=EntitlementResponse.from_record(record, datetime.now(UTC)),
    )


@router.get(
    "/v1/entitlements/{subscriber_id}",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_api_key)],
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid API key"},
        404: {"model": ErrorResponse, "description": "No entitlement for subscriber"},
    },
)
async def get_entitlement(
    subscriber_id: str,
    repository_factory: RepositoryFactory = Depends(get_read_repository_factory),
) -> EntitlementResponse:
    """
    Look up a subscriber's entitlement.

    Premium status is recomputed from expiry and payment state at query
    time. Read operation - uses the replica.

    Auth: X-API-Key
    """
    async with repository_factory() as repository:
        record = await repository.get(subscriber_id)

    if record is None:
        raise EntitlementNotFoundError(subscriber_id)

    return EntitlementResponse.from_record(record, datetime.now(UTC))


@router.post(
    "/v1/notifications/google-play",
    response_model=NotificationAck,
    dependencies=[Depends(require_pubsub_push_auth)],
    responses={
        400: {"model": ErrorResponse, "description": "Malformed notification"},
        401: {"model": ErrorResponse, "description": "Push token rejected"},
        503: {"model": ErrorResponse, "description": "Not stored; Pub/Sub will redeliver"},
    },
)
async def google_play_notification(
    request: Request,
    provider: GooglePlayProvider = Depends(get_provider),
    translator: GooglePlayNotificationTranslator = Depends(get_translator),
    ingestor: EventIngestor = Depends(get_ingestor),
) -> NotificationAck:
    """
    Handle Google Play Real-Time Developer Notifications (Pub/Sub push).

    A 2xx response acknowledges the delivery, so it is only returned once
    the event is durably stored (or there is nothing to store). Transient
    failures return 503 and Pub/Sub redelivers.
    """
    payload = await request.body()
    notification = provider.parse_notification(payload)

    # Redeliveries of a stored event are acknowledged without another storefront call
    if await ingestor.is_duplicate(notification.delivery_id):
        return NotificationAck(
            status="duplicate",
            delivery_id=notification.delivery_id,
            event_type=notification.event_type,
        )

    event = await translator.to_renewal_event(notification)
    if event is None:
        return NotificationAck(
            status="ignored",
            delivery_id=notification.delivery_id,
            event_type=notification.event_type,
        )

    accepted = await ingestor.ingest(event)
    return NotificationAck(
        status="accepted" if accepted else "duplicate",
        delivery_id=notification.delivery_id,
        event_type=notification.event_type,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": ErrorResponse, "description": "Database unreachable"}},
)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse | JSONResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        # Test database connection
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        logger.warning("health_check_failed", error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=ErrorResponse(
                error="database_unavailable",
                message="Database connection failed",
            ).model_dump(),
        )
