"""
Google Play subscription catalog configuration.

Maps Google Play subscription product IDs to entitlement plans.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class SubscriptionPlan:
    """Google Play subscription plan configuration."""

    product_id: str
    name: str
    billing_period: str  # ISO 8601 duration, informational

    def __post_init__(self) -> None:
        """Validate plan configuration."""
        if not self.product_id:
            raise ValueError("Product ID required")
        if not self.name:
            raise ValueError("Name required")


# Plan catalog (must match Google Play Console configuration)
SUBSCRIPTION_PLANS: dict[str, SubscriptionPlan] = {
    "premium_monthly": SubscriptionPlan(
        product_id="premium_monthly",
        name="Premium (monthly)",
        billing_period="P1M",
    ),
    "premium_yearly": SubscriptionPlan(
        product_id="premium_yearly",
        name="Premium (yearly)",
        billing_period="P1Y",
    ),
}


def is_known_product(product_id: str) -> bool:
    """Check whether a product ID is a catalog subscription."""
    return product_id in SUBSCRIPTION_PLANS


def get_plan(product_id: str) -> SubscriptionPlan:
    """
    Get plan configuration by product ID.

    Args:
        product_id: Google Play subscription product ID

    Returns:
        Plan configuration

    Raises:
        ValueError: If product ID not found
    """
    plan = SUBSCRIPTION_PLANS.get(product_id)
    if not plan:
        raise ValueError(f"Unknown product ID: {product_id}")
    return plan
