"""
Tests for domain models.
"""

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from app.models.domain import (
    EntitlementRecord,
    PaymentState,
    ReconcileOutcome,
    RenewalEvent,
    VerificationResult,
    compute_premium,
)

BASE_TIME = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


def make_result(**overrides) -> VerificationResult:
    values = {
        "subscriber_id": "u1",
        "product_id": "premium_monthly",
        "purchase_token": "token-a",
        "payment_state": PaymentState.RECEIVED,
        "expires_at": BASE_TIME + timedelta(days=30),
        "auto_renew": True,
        "event_time": BASE_TIME,
        "checksum": "checksum-1",
    }
    values.update(overrides)
    return VerificationResult(**values)


def make_record(**overrides) -> EntitlementRecord:
    values = {
        "subscriber_id": "u1",
        "plan_id": "premium_monthly",
        "premium_active": True,
        "payment_state": PaymentState.RECEIVED,
        "expires_at": BASE_TIME + timedelta(days=30),
        "purchase_token": "token-a",
        "auto_renew": True,
        "last_event_time": BASE_TIME,
        "last_checksum": "checksum-1",
        "revision": 1,
        "updated_at": BASE_TIME,
    }
    values.update(overrides)
    return EntitlementRecord(**values)


class TestPaymentState:
    """Tests for PaymentState."""

    def test_terminal_states(self):
        """Only refunded and revoked are terminal."""
        assert {s for s in PaymentState if s.is_terminal} == {
            PaymentState.REFUNDED,
            PaymentState.REVOKED,
        }

    def test_rank_order(self):
        """Refund outranks revocation outranks received outranks pending."""
        ranked = sorted(PaymentState, key=lambda s: s.rank)

        assert ranked == [
            PaymentState.PENDING,
            PaymentState.RECEIVED,
            PaymentState.REVOKED,
            PaymentState.REFUNDED,
        ]

    def test_values_are_stored_strings(self):
        assert PaymentState("refunded") is PaymentState.REFUNDED


class TestReconcileOutcome:
    """Tests for ReconcileOutcome."""

    @pytest.mark.parametrize(
        ("outcome", "changed"),
        [
            (ReconcileOutcome.CREATED, True),
            (ReconcileOutcome.APPLIED, True),
            (ReconcileOutcome.STALE, False),
            (ReconcileOutcome.DUPLICATE, False),
            (ReconcileOutcome.SUPERSEDED, False),
        ],
    )
    def test_changed(self, outcome, changed):
        assert outcome.changed is changed


class TestComputePremium:
    """Tests for compute_premium()."""

    def test_active_before_expiry(self):
        assert compute_premium(PaymentState.RECEIVED, BASE_TIME + timedelta(seconds=1), BASE_TIME)

    def test_inactive_at_expiry(self):
        """Expiry is exclusive: the instant it passes, access ends."""
        assert not compute_premium(PaymentState.RECEIVED, BASE_TIME, BASE_TIME)

    def test_pending_keeps_unexpired_access(self):
        assert compute_premium(PaymentState.PENDING, BASE_TIME + timedelta(days=1), BASE_TIME)

    def test_no_expiry_means_no_access(self):
        assert not compute_premium(PaymentState.PENDING, None, BASE_TIME)

    @pytest.mark.parametrize("state", [PaymentState.REFUNDED, PaymentState.REVOKED])
    def test_terminal_states_never_premium(self, state):
        assert not compute_premium(state, BASE_TIME + timedelta(days=365), BASE_TIME)


class TestVerificationResult:
    """Tests for VerificationResult validation."""

    @pytest.mark.parametrize("field", ["subscriber_id", "product_id", "purchase_token", "checksum"])
    def test_required_fields(self, field):
        with pytest.raises(ValueError, match=f"{field} cannot be empty"):
            make_result(**{field: ""})

    def test_naive_event_time_rejected(self):
        with pytest.raises(ValueError, match="timezone-aware"):
            make_result(event_time=datetime(2026, 10, 1, 12, 0))

    def test_naive_expiry_rejected(self):
        with pytest.raises(ValueError, match="timezone-aware"):
            make_result(expires_at=datetime(2026, 11, 1))

    def test_missing_expiry_allowed(self):
        assert make_result(expires_at=None).expires_at is None

    def test_ordering_key_tie_breaks_on_state(self):
        """At equal event times a refund sorts after a renewal."""
        renewal = make_result(checksum="ffff")
        refund = make_result(payment_state=PaymentState.REFUNDED, checksum="0000")

        assert refund.ordering_key() > renewal.ordering_key()

    def test_ordering_key_tie_breaks_on_checksum(self):
        assert make_result(checksum="b").ordering_key() > make_result(checksum="a").ordering_key()

    def test_event_time_dominates(self):
        later_renewal = make_result(event_time=BASE_TIME + timedelta(seconds=1))
        refund = make_result(payment_state=PaymentState.REFUNDED)

        assert later_renewal.ordering_key() > refund.ordering_key()


class TestRenewalEvent:
    """Tests for RenewalEvent."""

    def test_requires_delivery_id(self):
        with pytest.raises(ValueError, match="delivery_id"):
            RenewalEvent(**vars(make_result()))

    def test_as_verification_result(self):
        """The event coerces into the common shape without its delivery id."""
        result = make_result()
        event = RenewalEvent(**vars(result), delivery_id="msg-1")

        coerced = event.as_verification_result()

        assert type(coerced) is VerificationResult
        assert coerced == result


class TestEntitlementRecord:
    """Tests for EntitlementRecord."""

    def test_revision_must_be_positive(self):
        with pytest.raises(ValueError, match="Revision must be positive"):
            make_record(revision=0)

    def test_subscriber_required(self):
        with pytest.raises(ValueError, match="subscriber_id"):
            make_record(subscriber_id="")

    def test_is_premium_ignores_stored_flag(self):
        """A stored flag that has gone stale is recomputed at read time."""
        record = make_record(premium_active=True)

        assert record.is_premium(BASE_TIME + timedelta(days=31)) is False

    def test_owns_current_and_pending_tokens(self):
        record = make_record(pending_purchase_token="token-b", pending_product_id="premium_yearly")

        assert record.owns_token("token-a")
        assert record.owns_token("token-b")
        assert not record.owns_token("token-c")

    def test_ordering_key_matches_last_applied_result(self):
        result = make_result()
        record = replace(make_record(), last_checksum=result.checksum)

        assert record.ordering_key() == result.ordering_key()
