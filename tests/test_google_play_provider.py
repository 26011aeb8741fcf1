"""
Tests for the Google Play provider: status lookups, error classification
and Real-Time Developer Notification parsing.
"""

import base64
import json
import time
from datetime import UTC, datetime
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from app.exceptions import (
    InvalidPurchaseError,
    StorefrontTimeoutError,
    StorefrontUnavailableError,
    UnverifiableResponseError,
    WebhookVerificationError,
)
from app.models.google_play import (
    GooglePlaySubscriptionToken,
    NotificationKind,
    SubscriptionCancelReason,
    SubscriptionPaymentState,
)
from app.services.google_play_provider import (
    GooglePlayProvider,
    hash_token,
    millis_to_datetime,
    parse_subscription,
    response_checksum,
)

PACKAGE_NAME = "com.example.reader"
FETCHED_AT = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)

SUBSCRIPTION_RESPONSE = {
    "kind": "androidpublisher#subscriptionPurchase",
    "startTimeMillis": "1790000000000",
    "expiryTimeMillis": "1792592000000",
    "autoRenewing": True,
    "paymentState": 1,
    "orderId": "GPA.1234-5678-9012",
    "obfuscatedExternalAccountId": "u1",
}


@pytest.fixture
def token() -> GooglePlaySubscriptionToken:
    return GooglePlaySubscriptionToken(
        token="token-a", product_id="premium_monthly", package_name=PACKAGE_NAME
    )


def make_provider(execute=None, timeout_seconds=1.0) -> tuple[GooglePlayProvider, MagicMock]:
    service = MagicMock()
    request = service.purchases.return_value.subscriptions.return_value.get.return_value
    if execute is not None:
        request.execute.side_effect = execute
    provider = GooglePlayProvider(
        credentials=None,
        package_name=PACKAGE_NAME,
        timeout_seconds=timeout_seconds,
        service=service,
    )
    return provider, service


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b'{"error": "x"}')


def push_body(notification: dict, message_id: str = "msg-1") -> bytes:
    data = base64.b64encode(json.dumps(notification).encode()).decode()
    return json.dumps(
        {"message": {"data": data, "messageId": message_id}, "subscription": "projects/p/subscriptions/s"}
    ).encode()


class TestHelpers:
    """Tests for module-level helpers."""

    def test_hash_token_is_sha256_hex(self):
        assert len(hash_token("token-a")) == 64
        assert hash_token("token-a") != hash_token("token-b")

    def test_checksum_ignores_key_order(self):
        assert response_checksum({"a": 1, "b": 2}) == response_checksum({"b": 2, "a": 1})

    def test_millis_to_datetime(self):
        assert millis_to_datetime("1790000000000") == datetime(2026, 9, 21, 14, 13, 20, tzinfo=UTC)

    @pytest.mark.parametrize("value", [True, "abc", None, -1])
    def test_millis_to_datetime_rejects_garbage(self, value):
        with pytest.raises((TypeError, ValueError)):
            millis_to_datetime(value)


class TestParseSubscription:
    """Tests for parse_subscription()."""

    def test_parses_full_response(self, token):
        status = parse_subscription(SUBSCRIPTION_RESPONSE, token, FETCHED_AT)

        assert status.purchase_token == "token-a"
        assert status.product_id == "premium_monthly"
        assert status.payment_state == SubscriptionPaymentState.RECEIVED
        assert status.cancel_reason is None
        assert status.auto_renewing is True
        assert status.obfuscated_account_id == "u1"
        assert status.fetched_at == FETCHED_AT
        assert status.checksum == response_checksum(SUBSCRIPTION_RESPONSE)

    def test_developer_revoke(self, token):
        status = parse_subscription({**SUBSCRIPTION_RESPONSE, "cancelReason": 3}, token, FETCHED_AT)

        assert status.cancel_reason == SubscriptionCancelReason.DEVELOPER
        assert status.is_revoked()

    def test_missing_payment_state_allowed(self, token):
        response = {k: v for k, v in SUBSCRIPTION_RESPONSE.items() if k != "paymentState"}

        assert parse_subscription(response, token, FETCHED_AT).payment_state is None

    @pytest.mark.parametrize(
        "response",
        [
            {k: v for k, v in SUBSCRIPTION_RESPONSE.items() if k != "expiryTimeMillis"},
            {**SUBSCRIPTION_RESPONSE, "expiryTimeMillis": "soon"},
            {**SUBSCRIPTION_RESPONSE, "paymentState": 9},
            {**SUBSCRIPTION_RESPONSE, "paymentState": "x"},
            {**SUBSCRIPTION_RESPONSE, "autoRenewing": "yes"},
            {**SUBSCRIPTION_RESPONSE, "kind": "androidpublisher#productPurchase"},
        ],
    )
    def test_unusable_responses_are_unverifiable(self, token, response):
        with pytest.raises(UnverifiableResponseError):
            parse_subscription(response, token, FETCHED_AT)

    def test_non_object_is_unverifiable(self, token):
        with pytest.raises(UnverifiableResponseError):
            parse_subscription([], token, FETCHED_AT)  # type: ignore[arg-type]


class TestGetSubscription:
    """Tests for GooglePlayProvider.get_subscription()."""

    @pytest.mark.asyncio
    async def test_success(self, token):
        provider, service = make_provider(execute=lambda: SUBSCRIPTION_RESPONSE)

        status = await provider.get_subscription(token)

        assert status.order_id == "GPA.1234-5678-9012"
        service.purchases.return_value.subscriptions.return_value.get.assert_called_once_with(
            packageName=PACKAGE_NAME, subscriptionId="premium_monthly", token="token-a"
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    async def test_retryable_statuses(self, token, status):
        provider, _ = make_provider(execute=http_error(status))

        with pytest.raises(StorefrontUnavailableError) as exc_info:
            await provider.get_subscription(token)

        assert exc_info.value.status == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 404, 410])
    async def test_permanent_statuses(self, token, status):
        provider, _ = make_provider(execute=http_error(status))

        with pytest.raises(InvalidPurchaseError):
            await provider.get_subscription(token)

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, token):
        provider, _ = make_provider(execute=httplib2.HttpLib2Error("connection reset"))

        with pytest.raises(StorefrontUnavailableError):
            await provider.get_subscription(token)

    @pytest.mark.asyncio
    async def test_timeout(self, token):
        provider, _ = make_provider(execute=lambda: time.sleep(0.5), timeout_seconds=0.05)

        with pytest.raises(StorefrontTimeoutError) as exc_info:
            await provider.get_subscription(token)

        assert exc_info.value.timeout_seconds == 0.05

    @pytest.mark.asyncio
    async def test_garbage_response_is_unverifiable(self, token):
        provider, _ = make_provider(execute=lambda: {"kind": "androidpublisher#subscriptionPurchase"})

        with pytest.raises(UnverifiableResponseError):
            await provider.get_subscription(token)


class TestParseNotification:
    """Tests for GooglePlayProvider.parse_notification()."""

    @pytest.fixture
    def provider(self) -> GooglePlayProvider:
        return make_provider()[0]

    def test_subscription_notification(self, provider):
        body = push_body(
            {
                "version": "1.0",
                "packageName": PACKAGE_NAME,
                "eventTimeMillis": "1790000000000",
                "subscriptionNotification": {
                    "version": "1.0",
                    "notificationType": 2,
                    "purchaseToken": "token-a",
                    "subscriptionId": "premium_monthly",
                },
            }
        )

        notification = provider.parse_notification(body)

        assert notification.delivery_id == "msg-1"
        assert notification.kind == NotificationKind.SUBSCRIPTION
        assert notification.purchase_token == "token-a"
        assert notification.product_id == "premium_monthly"
        assert notification.event_type == "renewed"
        assert notification.event_time == millis_to_datetime("1790000000000")

    def test_revoked_notification(self, provider):
        body = push_body(
            {
                "packageName": PACKAGE_NAME,
                "eventTimeMillis": "1790000000000",
                "subscriptionNotification": {
                    "notificationType": 12,
                    "purchaseToken": "token-a",
                    "subscriptionId": "premium_monthly",
                },
            }
        )

        assert provider.parse_notification(body).is_revocation()

    def test_voided_subscription_purchase(self, provider):
        body = push_body(
            {
                "packageName": PACKAGE_NAME,
                "eventTimeMillis": "1790000000000",
                "voidedPurchaseNotification": {
                    "purchaseToken": "token-a",
                    "orderId": "GPA.1",
                    "productType": 1,
                    "refundType": 1,
                },
            }
        )

        notification = provider.parse_notification(body)

        assert notification.kind == NotificationKind.VOIDED_PURCHASE
        assert notification.is_refund()

    def test_voided_one_time_product_is_other(self, provider):
        body = push_body(
            {
                "packageName": PACKAGE_NAME,
                "eventTimeMillis": "1790000000000",
                "voidedPurchaseNotification": {"purchaseToken": "token-a", "productType": 2},
            }
        )

        assert provider.parse_notification(body).kind == NotificationKind.OTHER

    def test_test_notification(self, provider):
        body = push_body(
            {
                "packageName": PACKAGE_NAME,
                "eventTimeMillis": "1790000000000",
                "testNotification": {"version": "1.0"},
            }
        )

        assert provider.parse_notification(body).kind == NotificationKind.TEST

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"{}",
            json.dumps({"message": {"messageId": "m"}}).encode(),
            json.dumps({"message": {"data": "!!!", "messageId": "m"}}).encode(),
            json.dumps({"message": {"data": "e30="}}).encode(),
        ],
    )
    def test_malformed_envelopes_rejected(self, provider, body):
        with pytest.raises(WebhookVerificationError):
            provider.parse_notification(body)

    def test_foreign_package_rejected(self, provider):
        body = push_body(
            {
                "packageName": "com.attacker.app",
                "eventTimeMillis": "1790000000000",
                "testNotification": {},
            }
        )

        with pytest.raises(WebhookVerificationError, match="Unexpected package"):
            provider.parse_notification(body)

    def test_missing_event_time_rejected(self, provider):
        body = push_body({"packageName": PACKAGE_NAME, "testNotification": {}})

        with pytest.raises(WebhookVerificationError, match="eventTimeMillis"):
            provider.parse_notification(body)

    def test_non_numeric_notification_type_rejected(self, provider):
        body = push_body(
            {
                "packageName": PACKAGE_NAME,
                "eventTimeMillis": "1790000000000",
                "subscriptionNotification": {"notificationType": "x", "purchaseToken": "t"},
            }
        )

        with pytest.raises(WebhookVerificationError):
            provider.parse_notification(body)
