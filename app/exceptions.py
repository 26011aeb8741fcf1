"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Stale results and duplicate deliveries are not errors: the reconciler and
ingestor report them as outcomes.
"""


class EntitlementError(Exception):
    """Base exception for all entitlement errors."""

    pass


class InvalidPurchaseError(EntitlementError):
    """Raised when a purchase is permanently invalid (user-caused, never retried)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid purchase: {message}")


class StorefrontUnavailableError(EntitlementError):
    """Raised when the storefront cannot answer right now (network, rate limit, 5xx)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.message = message
        self.status = status
        super().__init__(f"Storefront unavailable: {message}")


class StorefrontTimeoutError(StorefrontUnavailableError):
    """Raised when a storefront call exceeds its timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"timed out after {timeout_seconds}s")


class UnverifiableResponseError(EntitlementError):
    """Raised when the storefront response cannot be interpreted safely."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Unverifiable storefront response: {message}")


class PersistenceError(EntitlementError):
    """Raised when the entitlement store fails. Retry with the same input."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Persistence error: {message}")


class ConcurrencyError(EntitlementError):
    """Raised when a concurrent modification of a record is detected."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class WebhookVerificationError(EntitlementError):
    """Raised when a storefront notification fails authenticity or parsing checks."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class AuthenticationError(EntitlementError):
    """Raised when authentication fails (invalid API key, invalid push token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class EntitlementNotFoundError(EntitlementError):
    """Raised when a subscriber has no entitlement record."""

    def __init__(self, subscriber_id: str) -> None:
        self.subscriber_id = subscriber_id
        self.message = f"No entitlement for subscriber {subscriber_id}"
        super().__init__(self.message)
