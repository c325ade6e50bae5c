"""
RevenueCat Service
==================

Integration with RevenueCat.

Handles:
- Subscriber info fetching via REST API
- Webhook authorization checks
- Classification of transient API failures
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import httpx

from app.config import settings
from app.core.errors import RevenueCatError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "

TRANSIENT_ERROR_CODES = frozenset({
    "ECONNABORTED",
    "ECONNRESET",
    "ENETUNREACH",
    "ENOTFOUND",
    "ETIMEDOUT",
    "EAI_AGAIN",
})

TRANSIENT_MESSAGE_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "rate limit",
)


@dataclass(frozen=True)
class SubscriberLookup:
    """Result of ``GET /subscribers/{id}``; ``subscriber`` is set only on 2xx."""

    status_code: int
    subscriber: Optional[dict[str, Any]] = None

    @property
    def found(self) -> bool:
        return 200 <= self.status_code < 300 and self.subscriber is not None


# -------------------------------------------------------------------------
# Webhook Authentication
# -------------------------------------------------------------------------

def resolve_webhook_auth_token(authorization_header: Optional[str]) -> str:
    """
    Extract the token from an ``Authorization`` header.

    RevenueCat sends the value exactly as configured in the dashboard, which
    may or may not carry a ``Bearer`` prefix.
    """
    value = (authorization_header or "").strip()
    if value.lower().startswith(BEARER_PREFIX):
        return value[len(BEARER_PREFIX):].strip()
    return value


def verify_webhook_authorization(
    authorization_header: Optional[str],
    secret: Optional[str] = None,
) -> bool:
    """
    Verify a RevenueCat webhook authorization header.

    Args:
        authorization_header: Value of the Authorization header.
        secret: Expected secret; defaults to ``REVENUECAT_WEBHOOK_SECRET``.

    Returns:
        True if the header matches the secret, raw or bearer-prefixed.
    """
    expected = (secret if secret is not None else settings.REVENUECAT_WEBHOOK_SECRET).strip()
    if not expected:
        logger.warning("REVENUECAT_WEBHOOK_SECRET not configured")
        return False

    raw = (authorization_header or "").strip()
    if not raw:
        return False

    token = resolve_webhook_auth_token(raw)
    return hmac.compare_digest(raw.encode(), expected.encode()) or hmac.compare_digest(
        token.encode(), expected.encode()
    )


# -------------------------------------------------------------------------
# Error Classification
# -------------------------------------------------------------------------

def is_transient_revenuecat_error(
    error: Optional[BaseException] = None,
    status_code: Optional[int] = None,
) -> bool:
    """True when a RevenueCat failure is worth retrying later."""
    if status_code is not None and (status_code == 429 or status_code >= 500):
        return True

    if error is None:
        return False

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True

    error_status = getattr(error, "status_code", None)
    if isinstance(error_status, int) and (error_status == 429 or error_status >= 500):
        return True

    code = str(getattr(error, "code", "") or "").upper()
    if code in TRANSIENT_ERROR_CODES:
        return True

    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


# -------------------------------------------------------------------------
# RevenueCat REST API
# -------------------------------------------------------------------------

class RevenueCatClient:
    """Thin async client for the RevenueCat v1 REST API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.REVENUECAT_API_KEY
        self.base_url = (base_url or settings.REVENUECAT_API_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        """Common headers for RevenueCat API calls."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def get_subscriber(self, app_user_id: str) -> SubscriberLookup:
        """
        Fetch subscriber information from RevenueCat.

        Args:
            app_user_id: RevenueCat app user id.

        Returns:
            ``SubscriberLookup``; non-2xx statuses come back without a subscriber.

        Raises:
            RevenueCatError: On transport failure or an unparseable body.
        """
        if not self.api_key:
            raise RevenueCatError("RevenueCat API key not configured")

        url = f"{self.base_url}/subscribers/{quote(app_user_id, safe='')}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.get(url, headers=self._get_headers())
            except httpx.HTTPError as e:
                logger.error("RevenueCat API error for subscriber %s: %s", app_user_id, e)
                raise RevenueCatError(
                    f"RevenueCat request failed: {e}",
                    code=type(e).__name__,
                ) from e

        if not 200 <= response.status_code < 300:
            logger.warning(
                "RevenueCat API returned status %d for subscriber %s",
                response.status_code,
                app_user_id,
            )
            return SubscriberLookup(status_code=response.status_code)

        if not response.content.strip():
            return SubscriberLookup(status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise RevenueCatError(
                "RevenueCat returned an invalid JSON body",
                status_code=response.status_code,
            ) from e

        subscriber = data.get("subscriber") if isinstance(data, dict) else None
        return SubscriberLookup(
            status_code=response.status_code,
            subscriber=subscriber if isinstance(subscriber, dict) else None,
        )
