"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import asyncio
import secrets
import time

from fastapi import Header
from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from structlog import get_logger

from app.config import settings
from app.db.session import get_read_session_factory, get_write_session_factory
from app.exceptions import AuthenticationError
from app.services.entitlement_repository import RepositoryFactory, sql_repository_factory
from app.services.google_play_provider import GooglePlayProvider, hash_token, load_credentials
from app.services.ingestor import EventIngestor, SqlRenewalEventInbox
from app.services.notifications import GooglePlayNotificationTranslator
from app.services.reconciler import EntitlementReconciler
from app.services.verifier import ReceiptVerifier

logger = get_logger(__name__)

PUBSUB_ISSUERS = ("accounts.google.com", "https://accounts.google.com")

# ============================================================================
# API Key Authentication (backend callers)
# ============================================================================


async def require_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")) -> None:
    """
    FastAPI dependency requiring the shared API key.

    Raises:
        AuthenticationError: Missing or wrong key
    """
    if not x_api_key:
        raise AuthenticationError("X-API-Key header required")
    if not secrets.compare_digest(x_api_key.encode(), settings.api_key.encode()):
        logger.warning("api_key_rejected", key_prefix=x_api_key[:4])
        raise AuthenticationError("Invalid API key")


# ============================================================================
# Pub/Sub Push Authentication (Google-signed OIDC token)
# ============================================================================

# Cache for verified push tokens: token hash -> expiry_timestamp
_push_token_cache: dict[str, float] = {}
_MAX_CACHE_SIZE = 10000


def _cleanup_push_token_cache() -> None:
    """Remove expired entries from the cache."""
    if len(_push_token_cache) < _MAX_CACHE_SIZE:
        return

    now = time.time()
    expired = [k for k, exp in _push_token_cache.items() if exp < now]
    for k in expired:
        del _push_token_cache[k]


async def require_pubsub_push_auth(authorization: str | None = Header(None)) -> None:
    """
    FastAPI dependency verifying a Pub/Sub push request.

    Accepts: Authorization: Bearer {google_oidc_token}
    Verifies: Google signature, expiry, audience, issuer and, when
    configured, the push service account email.

    Raises:
        AuthenticationError: Missing, invalid or foreign token
    """
    if not settings.PUBSUB_AUDIENCE:
        logger.error("pubsub_audience_not_configured")
        raise AuthenticationError("Push authentication is not configured")

    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Bearer token required")
    token = authorization[7:].strip()

    cache_key = hash_token(token)
    cached_expiry = _push_token_cache.get(cache_key)
    if cached_expiry is not None:
        if time.time() < cached_expiry:
            return
        del _push_token_cache[cache_key]

    try:
        # Fetches Google's public keys; keep it off the event loop
        claims = await asyncio.to_thread(
            id_token.verify_oauth2_token,
            token,
            google_requests.Request(),
            settings.PUBSUB_AUDIENCE,
        )
    except (ValueError, GoogleAuthError) as exc:
        logger.warning("pubsub_token_rejected", error=str(exc))
        raise AuthenticationError("Invalid push token") from exc

    if claims.get("iss") not in PUBSUB_ISSUERS:
        raise AuthenticationError("Unexpected push token issuer")

    expected_email = settings.PUBSUB_SERVICE_ACCOUNT_EMAIL
    if expected_email:
        if claims.get("email") != expected_email or not claims.get("email_verified"):
            logger.warning("pubsub_token_wrong_identity", email=claims.get("email"))
            raise AuthenticationError("Push token issued to an unexpected identity")

    # Cache until the token expires (with 60s buffer)
    _cleanup_push_token_cache()
    _push_token_cache[cache_key] = float(claims.get("exp", time.time() + 300)) - 60


# ============================================================================
# Service Wiring (lazily built, process-wide)
# ============================================================================

_provider: GooglePlayProvider | None = None
_verifier: ReceiptVerifier | None = None
_reconciler: EntitlementReconciler | None = None
_ingestor: EventIngestor | None = None
_translator: GooglePlayNotificationTranslator | None = None


def get_provider() -> GooglePlayProvider:
    """Get or create the Google Play provider."""
    global _provider
    if _provider is None:
        _provider = GooglePlayProvider(
            credentials=load_credentials(settings.GOOGLE_PLAY_SERVICE_ACCOUNT),
            package_name=settings.GOOGLE_PLAY_PACKAGE_NAME,
            timeout_seconds=settings.storefront_timeout_seconds,
        )
    return _provider


def get_verifier() -> ReceiptVerifier:
    """Get or create the receipt verifier."""
    global _verifier
    if _verifier is None:
        _verifier = ReceiptVerifier(
            storefront=get_provider(),
            package_name=settings.GOOGLE_PLAY_PACKAGE_NAME,
            max_attempts=settings.storefront_max_attempts,
            backoff_initial_seconds=settings.storefront_backoff_initial_seconds,
            backoff_max_seconds=settings.storefront_backoff_max_seconds,
            dedup_window_seconds=settings.verification_dedup_window_seconds,
        )
    return _verifier


def get_repository_factory() -> RepositoryFactory:
    """Repository factory on the primary database (reads inside writes need the primary)."""
    return sql_repository_factory(get_write_session_factory())


def get_read_repository_factory() -> RepositoryFactory:
    """Repository factory on the read replica, for plain lookups."""
    return sql_repository_factory(get_read_session_factory())


def get_reconciler() -> EntitlementReconciler:
    """Get or create the entitlement reconciler."""
    global _reconciler
    if _reconciler is None:
        _reconciler = EntitlementReconciler(
            repository_factory=get_repository_factory(),
            max_conflict_retries=settings.reconcile_conflict_retries,
        )
    return _reconciler


def get_ingestor() -> EventIngestor:
    """Get or create the event ingestor."""
    global _ingestor
    if _ingestor is None:
        _ingestor = EventIngestor(
            inbox=SqlRenewalEventInbox(get_write_session_factory()),
            reconciler=get_reconciler(),
            batch_size=settings.inbox_batch_size,
            poll_interval_seconds=settings.inbox_poll_interval_seconds,
            max_attempts=settings.inbox_max_attempts,
        )
    return _ingestor


def get_translator() -> GooglePlayNotificationTranslator:
    """Get or create the notification translator."""
    global _translator
    if _translator is None:
        _translator = GooglePlayNotificationTranslator(
            verifier=get_verifier(),
            repository_factory=get_repository_factory(),
        )
    return _translator
