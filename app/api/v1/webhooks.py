"""
Webhooks API Endpoints
======================

Handles webhooks from RevenueCat.

Authentication:
    RevenueCat sends the configured authorization token in the
    ``Authorization`` header, raw or as ``Bearer <token>``. It is compared
    against REVENUECAT_WEBHOOK_SECRET before anything else happens.

Idempotency:
    Each RevenueCat event has a unique ``id``. Processed ids live in the
    ``webhook_events`` table and are checked and written in the same
    transaction as the entitlement snapshot, so redeliveries are no-ops.
"""

import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import AuthenticationError, ErrorCodes, MalformedEventError
from app.dependencies import Reconciler
from app.schemas.billing import WebhookPayload, WebhookResponse
from app.services.revenuecat import verify_webhook_authorization

logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_payload(body: bytes) -> WebhookPayload:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedEventError("Invalid JSON payload") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("event"), dict):
        raise MalformedEventError("Missing event object", field="event")

    try:
        return WebhookPayload.model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(loc) for loc in first.get("loc", ()))
        raise MalformedEventError(first.get("msg", "Malformed event payload"), field=field) from e


async def require_webhook_authorization(
    authorization: str = Header(default="", alias="Authorization"),
) -> None:
    """Reject the request before any other dependency is built."""
    if not verify_webhook_authorization(authorization):
        logger.warning("Unauthorized RevenueCat webhook attempt")
        raise AuthenticationError(message="Invalid webhook authorization")


@router.post(
    "/revenuecat",
    response_model=WebhookResponse,
    dependencies=[Depends(require_webhook_authorization)],
)
async def revenuecat_webhook(
    request: Request,
    reconciler: Reconciler,
):
    """
    Handle a RevenueCat webhook event.

    Responses:
    - 401 when the authorization header does not match
    - 400 when the body is not a valid event
    - 200 ``{"ok": true, "status": "processed" | "stale" | "duplicate"}``
    - 500 on storage failure; RevenueCat retries and the retry is safe
    """
    # ── Parse payload ─────────────────────────────────────────────────────
    body = await request.body()
    try:
        payload = _parse_payload(body)
    except MalformedEventError as e:
        logger.error("Invalid webhook payload: %s", e.detail.get("message"))
        raise

    event = payload.event
    logger.info(
        "Webhook received: type=%s user=%s event_id=%s",
        event.normalized_type or None,
        event.app_user_id,
        event.id,
    )

    # ── Reconcile ─────────────────────────────────────────────────────────
    try:
        result = await reconciler.reconcile(event)
    except Exception:
        logger.exception(
            "Webhook processing error: type=%s user=%s event_id=%s",
            event.normalized_type or None,
            event.app_user_id,
            event.id,
        )
        # 500 so RevenueCat will retry
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": ErrorCodes.WEBHOOK_PROCESSING_FAILED,
                "message": "Error processing webhook",
            },
        )

    return WebhookResponse(ok=True, status=result.status.value)
