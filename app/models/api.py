"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.domain import EntitlementRecord, PaymentState

# ============================================================================
# Purchase Verification Models
# ============================================================================


class VerifyPurchaseRequest(BaseModel):
    """
    POST /v1/purchases/verify request body.

    Accepts camelCase (as sent by the client app) or snake_case.
    """

    model_config = ConfigDict(populate_by_name=True)

    subscriber_id: str = Field(..., alias="subscriberId", min_length=1, max_length=255)
    product_id: str = Field(..., alias="productId", min_length=1, max_length=255)
    purchase_token: str = Field(..., alias="purchaseToken", min_length=1, max_length=4096)

    @field_validator("subscriber_id", "product_id", "purchase_token")
    @classmethod
    def strip_and_require(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class EntitlementResponse(BaseModel):
    """Entitlement view. premium_active is recomputed at read time."""

    subscriber_id: str
    plan_id: str
    premium_active: bool
    payment_state: PaymentState
    expires_at: datetime | None
    auto_renew: bool
    pending_product_id: str | None = None
    revision: int
    updated_at: datetime

    @classmethod
    def from_record(cls, record: EntitlementRecord, now: datetime) -> "EntitlementResponse":
        return cls(
            subscriber_id=record.subscriber_id,
            plan_id=record.plan_id,
            premium_active=record.is_premium(now),
            payment_state=record.payment_state,
            expires_at=record.expires_at,
            auto_renew=record.auto_renew,
            pending_product_id=record.pending_product_id,
            revision=record.revision,
            updated_at=record.updated_at,
        )


class VerifyPurchaseResponse(BaseModel):
    """POST /v1/purchases/verify response."""

    success: bool = True
    entitlement: EntitlementResponse


# ============================================================================
# Notification Models
# ============================================================================


class NotificationAck(BaseModel):
    """Response to a Pub/Sub push. Any 2xx acknowledges the delivery."""

    status: Literal["accepted", "duplicate", "ignored"]
    delivery_id: str
    event_type: str


# ============================================================================
# Common Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Error body for every non-2xx response."""

    error: str
    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
