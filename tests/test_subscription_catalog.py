"""
Tests for the subscription plan catalog.
"""

import pytest

from app.services.subscription_catalog import (
    SUBSCRIPTION_PLANS,
    SubscriptionPlan,
    get_plan,
    is_known_product,
)


class TestSubscriptionPlan:
    """Tests for SubscriptionPlan validation."""

    def test_valid_plan(self):
        plan = SubscriptionPlan(product_id="premium_weekly", name="Weekly", billing_period="P1W")

        assert plan.product_id == "premium_weekly"
        assert plan.billing_period == "P1W"

    def test_missing_product_id(self):
        with pytest.raises(ValueError, match="Product ID required"):
            SubscriptionPlan(product_id="", name="Weekly", billing_period="P1W")

    def test_missing_name(self):
        with pytest.raises(ValueError, match="Name required"):
            SubscriptionPlan(product_id="premium_weekly", name="", billing_period="P1W")


class TestCatalog:
    """Tests for catalog lookups."""

    def test_keys_match_product_ids(self):
        for product_id, plan in SUBSCRIPTION_PLANS.items():
            assert plan.product_id == product_id

    @pytest.mark.parametrize("product_id", ["premium_monthly", "premium_yearly"])
    def test_known_products(self, product_id):
        assert is_known_product(product_id)
        assert get_plan(product_id).product_id == product_id

    def test_unknown_product(self):
        assert not is_known_product("credits_100")
        with pytest.raises(ValueError, match="Unknown product ID"):
            get_plan("credits_100")
