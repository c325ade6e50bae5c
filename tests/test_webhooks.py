"""
RevenueCat Webhook Tests
========================

Tests for ``POST /api/v1/webhooks/revenuecat``.
"""

from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient

from app.core.errors import TransactionConflictError
from app.services.reconciler import EntitlementReconciler
from app.utils.helpers import now_ms

from conftest import DAY_MS, WEBHOOK_SECRET, make_event

URL = "/api/v1/webhooks/revenuecat"


def _body(**overrides) -> dict:
    now = now_ms()
    defaults = {
        "event_timestamp_ms": now,
        "purchased_at_ms": now,
        "expiration_at_ms": now + 30 * DAY_MS,
    }
    defaults.update(overrides)
    return {"api_version": "1.0", "event": make_event(**defaults)}


@pytest.mark.asyncio
@pytest.mark.parametrize("header", [WEBHOOK_SECRET, f"Bearer {WEBHOOK_SECRET}"])
async def test_accepts_raw_and_bearer_secret(client: AsyncClient, header):
    response = await client.post(URL, json=_body(), headers={"Authorization": header})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "status": "processed"}


@pytest.mark.asyncio
@pytest.mark.parametrize("header", [None, "", "wrong", "Bearer wrong"])
async def test_rejects_bad_credentials_without_touching_store(client: AsyncClient, header):
    headers = {"Authorization": header} if header is not None else {}

    with patch.object(EntitlementReconciler, "reconcile", AsyncMock()) as reconcile:
        response = await client.post(URL, json=_body(), headers=headers)

    assert response.status_code == 401
    assert response.json()["success"] is False
    reconcile.assert_not_awaited()


@pytest.mark.asyncio
async def test_redelivery_reports_duplicate(client: AsyncClient, store):
    headers = {"Authorization": WEBHOOK_SECRET}
    body = _body()

    first = await client.post(URL, json=body, headers=headers)
    second = await client.post(URL, json=body, headers=headers)

    assert first.json()["status"] == "processed"
    assert second.json()["status"] == "duplicate"
    assert (await store.get_snapshot("user-1")).is_premium is True


@pytest.mark.asyncio
async def test_older_event_reports_stale(client: AsyncClient):
    headers = {"Authorization": WEBHOOK_SECRET}
    await client.post(URL, json=_body(id="evt-new", event_timestamp_ms=2000), headers=headers)

    response = await client.post(
        URL,
        json=_body(id="evt-old", type="EXPIRATION", event_timestamp_ms=1000),
        headers=headers,
    )

    assert response.json() == {"ok": True, "status": "stale"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content",
    [
        b"not json",
        b'{"api_version": "1.0"}',
        b'{"event": "INITIAL_PURCHASE"}',
        b'{"event": {"type": "RENEWAL", "app_user_id": "user-1"}}',
        b'{"event": {"id": "evt-1", "type": "RENEWAL"}}',
    ],
)
async def test_malformed_body_is_rejected(client: AsyncClient, content):
    with patch.object(EntitlementReconciler, "reconcile", AsyncMock()) as reconcile:
        response = await client.post(
            URL,
            content=content,
            headers={"Authorization": WEBHOOK_SECRET, "Content-Type": "application/json"},
        )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WEBHOOK_002"
    reconcile.assert_not_awaited()


@pytest.mark.asyncio
async def test_boolean_timestamp_falls_back_to_purchase_time(client: AsyncClient, store):
    headers = {"Authorization": WEBHOOK_SECRET}
    await client.post(URL, json=_body(id="evt-old", event_timestamp_ms=2000), headers=headers)

    response = await client.post(
        URL,
        json=_body(id="evt-renewal", type="RENEWAL", event_timestamp_ms=True),
        headers=headers,
    )

    assert response.json() == {"ok": True, "status": "processed"}
    snapshot = await store.get_snapshot("user-1")
    assert snapshot.last_event_id == "evt-renewal"
    assert snapshot.last_event_timestamp_ms > 2000


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [{"value": 1}, [1, 2]])
async def test_structured_timestamp_is_ignored(client: AsyncClient, value):
    response = await client.post(
        URL,
        json=_body(event_timestamp_ms=value),
        headers={"Authorization": WEBHOOK_SECRET},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"


@pytest.mark.asyncio
async def test_unknown_event_type_is_acknowledged(client: AsyncClient):
    response = await client.post(
        URL,
        json=_body(type="BRAND_NEW_EVENT"),
        headers={"Authorization": WEBHOOK_SECRET},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"


@pytest.mark.asyncio
async def test_storage_failure_returns_generic_500(client: AsyncClient):
    with patch.object(
        EntitlementReconciler,
        "reconcile",
        AsyncMock(side_effect=TransactionConflictError("serialization failure on user_premium")),
    ):
        response = await client.post(URL, json=_body(), headers={"Authorization": WEBHOOK_SECRET})

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert "user_premium" not in response.text
    assert body["error"]["code"] == "WEBHOOK_003"
