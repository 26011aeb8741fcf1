"""
Google Play Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.

Wraps the Android Publisher API v3 (purchases.subscriptions) and the
Real-Time Developer Notification envelope delivered by Cloud Pub/Sub.
"""

import asyncio
import base64
import binascii
import hashlib
import json
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import google.auth
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from httplib2 import HttpLib2Error
from structlog import get_logger

from app.exceptions import (
    InvalidPurchaseError,
    StorefrontTimeoutError,
    StorefrontUnavailableError,
    UnverifiableResponseError,
    WebhookVerificationError,
)
from app.models.google_play import (
    VOIDED_PRODUCT_TYPE_SUBSCRIPTION,
    GooglePlayNotification,
    GooglePlaySubscriptionStatus,
    GooglePlaySubscriptionToken,
    NotificationKind,
    SubscriptionCancelReason,
    SubscriptionPaymentState,
)

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPES = ["https://www.googleapis.com/auth/androidpublisher"]

# Rate limiting and server-side failures; every other 4xx is permanent
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

SUBSCRIPTION_PURCHASE_KIND = "androidpublisher#subscriptionPurchase"


def hash_token(token: str) -> str:
    """SHA-256 of a purchase token. Raw tokens are never logged."""
    return hashlib.sha256(token.encode()).hexdigest()


def response_checksum(payload: Mapping[str, Any]) -> str:
    """Checksum of a storefront payload in canonical JSON form."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def millis_to_datetime(value: object) -> datetime:
    """Convert a Play millisecond timestamp (string or int) to an aware datetime."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    millis = int(value)  # type: ignore[call-overload]
    if millis < 0:
        raise ValueError(f"negative timestamp: {millis}")
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


def load_credentials(service_account_json: str) -> Credentials:
    """
    Load the Android Publisher credential.

    Args:
        service_account_json: Path to a service account file, the raw JSON,
            or empty to use application default credentials
    """
    if not service_account_json:
        credentials, _ = google.auth.default(scopes=ANDROID_PUBLISHER_SCOPES)  # type: ignore[no-untyped-call]
        return credentials  # type: ignore[no-any-return]

    if service_account_json.lstrip().startswith("{"):
        return service_account.Credentials.from_service_account_info(  # type: ignore[no-untyped-call,no-any-return]
            json.loads(service_account_json),
            scopes=ANDROID_PUBLISHER_SCOPES,
        )

    return service_account.Credentials.from_service_account_file(  # type: ignore[no-untyped-call,no-any-return]
        service_account_json,
        scopes=ANDROID_PUBLISHER_SCOPES,
    )


def _optional_int(result: Mapping[str, Any], field: str) -> int | None:
    value = result.get(field)
    if value is None:
        return None
    if isinstance(value, bool):
        raise UnverifiableResponseError(f"{field} is not numeric")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise UnverifiableResponseError(f"{field} is not numeric") from exc


def _notification_int(body: Mapping[str, Any], field: str) -> int:
    try:
        return int(body.get(field, 0))
    except (TypeError, ValueError) as exc:
        raise WebhookVerificationError(f"{field} is not numeric") from exc


def parse_subscription(
    result: Mapping[str, Any],
    token: GooglePlaySubscriptionToken,
    fetched_at: datetime,
) -> GooglePlaySubscriptionStatus:
    """
    Parse a purchases.subscriptions.get response.

    Raises:
        UnverifiableResponseError: If the response is missing required data
            or carries values this service does not understand
    """
    if not isinstance(result, Mapping):
        raise UnverifiableResponseError("response is not an object")

    kind = result.get("kind")
    if kind is not None and kind != SUBSCRIPTION_PURCHASE_KIND:
        raise UnverifiableResponseError(f"unexpected resource kind: {kind}")

    if "expiryTimeMillis" not in result:
        raise UnverifiableResponseError("expiryTimeMillis missing")
    try:
        expiry_time = millis_to_datetime(result["expiryTimeMillis"])
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise UnverifiableResponseError("expiryTimeMillis is not a timestamp") from exc

    start_time = None
    if result.get("startTimeMillis") is not None:
        try:
            start_time = millis_to_datetime(result["startTimeMillis"])
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise UnverifiableResponseError("startTimeMillis is not a timestamp") from exc

    raw_payment_state = _optional_int(result, "paymentState")
    raw_cancel_reason = _optional_int(result, "cancelReason")
    try:
        payment_state = (
            SubscriptionPaymentState(raw_payment_state) if raw_payment_state is not None else None
        )
        cancel_reason = (
            SubscriptionCancelReason(raw_cancel_reason) if raw_cancel_reason is not None else None
        )
    except ValueError as exc:
        raise UnverifiableResponseError(str(exc)) from exc

    auto_renewing = result.get("autoRenewing", False)
    if not isinstance(auto_renewing, bool):
        raise UnverifiableResponseError("autoRenewing is not a boolean")

    return GooglePlaySubscriptionStatus(
        purchase_token=token.token,
        product_id=token.product_id,
        order_id=result.get("orderId"),
        start_time=start_time,
        expiry_time=expiry_time,
        auto_renewing=auto_renewing,
        payment_state=payment_state,
        cancel_reason=cancel_reason,
        linked_purchase_token=result.get("linkedPurchaseToken") or None,
        obfuscated_account_id=result.get("obfuscatedExternalAccountId") or None,
        fetched_at=fetched_at,
        checksum=response_checksum(result),
    )


class GooglePlayProvider:
    """
    Google Play subscriptions provider.

    Handles subscription status lookups and notification parsing. The
    credential is injected; its lifecycle belongs to the caller.
    """

    def __init__(
        self,
        credentials: Credentials | None,
        package_name: str,
        timeout_seconds: float = 10.0,
        service: Any | None = None,
    ) -> None:
        """
        Initialize Google Play provider.

        Args:
            credentials: Android Publisher credential (opaque to this class)
            package_name: Android package name (e.g., 'com.example.reader')
            timeout_seconds: Per-call timeout for storefront requests
            service: Prebuilt API client (tests inject a mock here)
        """
        self.package_name = package_name
        self.timeout_seconds = timeout_seconds

        # Build API client
        self.service = service or build(
            "androidpublisher", "v3", credentials=credentials, cache_discovery=False
        )

        logger.info("google_play_provider_initialized", package_name=package_name)

    async def get_subscription(
        self,
        token: GooglePlaySubscriptionToken,
    ) -> GooglePlaySubscriptionStatus:
        """
        Fetch the current status of a subscription purchase.

        Raises:
            StorefrontTimeoutError: If the call exceeds the timeout
            StorefrontUnavailableError: Network failure, rate limit or 5xx
            InvalidPurchaseError: Any other 4xx (bad token, unknown product)
            UnverifiableResponseError: If the response cannot be parsed
        """
        request = (
            self.service.purchases()
            .subscriptions()
            .get(
                packageName=token.package_name,
                subscriptionId=token.product_id,
                token=token.token,
            )
        )

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(request.execute),
                timeout=self.timeout_seconds,
            )

        except TimeoutError as exc:
            logger.warning(
                "google_play_subscription_timeout",
                product_id=token.product_id,
                timeout_seconds=self.timeout_seconds,
            )
            raise StorefrontTimeoutError(self.timeout_seconds) from exc

        except HttpError as exc:
            raise self._classify_http_error(exc, token) from exc

        except (HttpLib2Error, GoogleAuthError, OSError) as exc:
            logger.warning(
                "google_play_subscription_transport_error",
                product_id=token.product_id,
                error=str(exc),
            )
            raise StorefrontUnavailableError(str(exc) or type(exc).__name__) from exc

        status = parse_subscription(result, token, datetime.now(UTC))

        logger.info(
            "google_play_subscription_fetched",
            product_id=token.product_id,
            token_hash=hash_token(token.token)[:16],
            order_id=status.order_id,
            payment_state=status.payment_state,
            cancel_reason=status.cancel_reason,
            expiry_time=status.expiry_time.isoformat(),
        )
        return status

    def _classify_http_error(
        self, exc: HttpError, token: GooglePlaySubscriptionToken
    ) -> StorefrontUnavailableError | InvalidPurchaseError:
        """Map an Android Publisher HTTP error to a retryable or permanent error."""
        status = int(exc.resp.status)
        error_content = exc.content.decode("utf-8", "replace") if exc.content else str(exc)

        if status in RETRYABLE_STATUSES:
            logger.warning(
                "google_play_subscription_retryable_error",
                status=status,
                product_id=token.product_id,
            )
            return StorefrontUnavailableError(f"Google Play API returned {status}", status)

        if status in (401, 403):
            # Our credential, not the user's purchase; still a permanent 4xx
            logger.error(
                "google_play_credentials_rejected",
                status=status,
                error=error_content,
            )
        else:
            logger.info(
                "google_play_subscription_rejected",
                status=status,
                product_id=token.product_id,
                token_hash=hash_token(token.token)[:16],
            )

        if status == 404:
            return InvalidPurchaseError("Purchase not found or invalid token")
        if status == 410:
            return InvalidPurchaseError("Purchase token no longer valid")
        return InvalidPurchaseError(f"Google Play rejected the purchase ({status})")

    def parse_notification(self, payload: bytes) -> GooglePlayNotification:
        """
        Parse a Real-Time Developer Notification from a Pub/Sub push body.

        Authenticity of the push itself is checked by the HTTP layer before
        this is called.

        Raises:
            WebhookVerificationError: If the envelope or notification is malformed
                or addressed to a different package
        """
        try:
            envelope = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.error("google_play_webhook_invalid_json", error=str(exc))
            raise WebhookVerificationError("Invalid JSON payload") from exc

        message = envelope.get("message") if isinstance(envelope, dict) else None
        if not isinstance(message, dict):
            raise WebhookVerificationError("No message in push envelope")

        delivery_id = message.get("messageId") or message.get("message_id")
        if not delivery_id:
            raise WebhookVerificationError("No messageId in push envelope")

        message_data = message.get("data")
        if not message_data:
            raise WebhookVerificationError("No message data in webhook")

        try:
            notification = json.loads(base64.b64decode(message_data).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise WebhookVerificationError("Message data is not base64 JSON") from exc

        if not isinstance(notification, dict):
            raise WebhookVerificationError("Notification is not an object")

        package_name = notification.get("packageName", "")
        if package_name != self.package_name:
            logger.warning(
                "google_play_webhook_package_mismatch",
                package_name=package_name,
                expected=self.package_name,
            )
            raise WebhookVerificationError(f"Unexpected package: {package_name}")

        try:
            event_time = millis_to_datetime(notification.get("eventTimeMillis"))
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise WebhookVerificationError("eventTimeMillis missing or invalid") from exc

        kind = NotificationKind.OTHER
        purchase_token = ""
        product_id = ""
        notification_type = 0

        if "subscriptionNotification" in notification:
            body = notification["subscriptionNotification"] or {}
            kind = NotificationKind.SUBSCRIPTION
            purchase_token = body.get("purchaseToken", "")
            product_id = body.get("subscriptionId", "")
            notification_type = _notification_int(body, "notificationType")
            if not purchase_token:
                raise WebhookVerificationError("Subscription notification without purchaseToken")
        elif "voidedPurchaseNotification" in notification:
            body = notification["voidedPurchaseNotification"] or {}
            purchase_token = body.get("purchaseToken", "")
            if _notification_int(body, "productType") == VOIDED_PRODUCT_TYPE_SUBSCRIPTION:
                kind = NotificationKind.VOIDED_PURCHASE
                if not purchase_token:
                    raise WebhookVerificationError("Voided notification without purchaseToken")
        elif "testNotification" in notification:
            kind = NotificationKind.TEST

        parsed = GooglePlayNotification(
            delivery_id=str(delivery_id),
            kind=kind,
            package_name=package_name,
            event_time=event_time,
            purchase_token=purchase_token,
            product_id=product_id,
            notification_type=notification_type,
            checksum=response_checksum(notification),
        )

        logger.info(
            "google_play_webhook_parsed",
            delivery_id=parsed.delivery_id,
            event_type=parsed.event_type,
            product_id=product_id or None,
        )
        return parsed
