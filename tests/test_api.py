"""Tests for the control-plane HTTP API."""

import pytest
from httpx import AsyncClient

from conftest import APP_ID, TENANT, drain
from eventrelay.services.codec import decode

BASE = "/api/v1/subscriptions/"
HOOK = "https://hooks.example.com/in"


async def _create(client, auth_headers, **body) -> dict:
    resp = await client.post(BASE, json={"url": HOOK, **body}, headers=auth_headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ── Basics ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_event_types(client: AsyncClient):
    resp = await client.get("/api/v1/events/types")
    assert resp.status_code == 200
    types = resp.json()
    assert "order.created" in types
    assert "subscription.auto_disabled" not in types


@pytest.mark.asyncio
async def test_requires_token(client: AsyncClient):
    resp = await client.get(BASE)
    assert resp.status_code in (401, 403)
    resp = await client.get(BASE, headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


# ── CRUD ─────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_create_returns_secret_once(client, auth_headers):
    data = await _create(client, auth_headers, events=["order.created"])
    assert data["secret"].startswith("whsec_")
    assert data["tenant"] == TENANT
    assert data["app_id"] == APP_ID
    assert data["state"] == "active"
    assert data["events"] == ["order.created"]

    resp = await client.get(f"{BASE}{data['id']}", headers=auth_headers)
    assert resp.status_code == 200
    assert "secret" not in resp.json()
    assert "secret_ciphertext" not in resp.json()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"url": "http://insecure.example.com"},
        {"url": HOOK, "events": ["nope.created"]},
        {"url": HOOK, "events": ["*", "order.created"]},
    ],
)
async def test_create_validation(client, auth_headers, body):
    resp = await client.post(BASE, json=body, headers=auth_headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_short_secret_rejected(client, auth_headers):
    resp = await client.post(BASE, json={"url": HOOK, "secret": "short"}, headers=auth_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_list_and_update(client, auth_headers):
    data = await _create(client, auth_headers)
    resp = await client.get(BASE, headers=auth_headers)
    assert [s["id"] for s in resp.json()] == [data["id"]]

    resp = await client.patch(
        f"{BASE}{data['id']}",
        json={"url": "https://new.example.com/h", "events": ["job.created"]},
        headers=auth_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["url"] == "https://new.example.com/h"
    assert resp.json()["events"] == ["job.created"]


@pytest.mark.asyncio
async def test_other_tenant_cannot_see(client, auth_headers, settings):
    from eventrelay.services.auth import token_for

    data = await _create(client, auth_headers)
    other = {"Authorization": f"Bearer {token_for('tenant-b', settings=settings)}"}
    assert (await client.get(f"{BASE}{data['id']}", headers=other)).status_code == 404
    assert (await client.post(f"{BASE}{data['id']}/disable", headers=other)).status_code == 404
    assert (await client.get(BASE, headers=other)).json() == []


@pytest.mark.asyncio
async def test_disable_enable_delete(client, auth_headers):
    data = await _create(client, auth_headers)
    sub = f"{BASE}{data['id']}"

    resp = await client.post(f"{sub}/disable", headers=auth_headers)
    assert resp.json()["state"] == "disabled_by_owner"
    resp = await client.post(f"{sub}/enable", headers=auth_headers)
    assert resp.json()["state"] == "active"

    resp = await client.delete(sub, headers=auth_headers)
    assert resp.status_code == 204
    assert (await client.get(sub, headers=auth_headers)).status_code == 404
    assert (await client.delete(sub, headers=auth_headers)).status_code == 404


@pytest.mark.asyncio
async def test_rotate_secret(client, auth_headers):
    data = await _create(client, auth_headers)
    resp = await client.post(f"{BASE}{data['id']}/rotate-secret", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["id"] == data["id"]
    assert resp.json()["secret"] != data["secret"]

    resp = await client.post(
        f"{BASE}{data['id']}/rotate-secret",
        json={"secret": "a-chosen-secret-value"},
        headers=auth_headers,
    )
    assert resp.json()["secret"] == "a-chosen-secret-value"


@pytest.mark.asyncio
async def test_mutations_emit_subscription_events(client, auth_headers, components):
    data = await _create(client, auth_headers)
    await client.post(f"{BASE}{data['id']}/disable", headers=auth_headers)
    await client.delete(f"{BASE}{data['id']}", headers=auth_headers)

    topic = components.settings.topic_primary
    seen = []
    while (received := await components.bus.receive(topic)) is not None:
        message, lease = received
        event = decode(message.data)
        seen.append(event.type)
        assert event.tenant == TENANT
        assert "secret" not in event.payload
        await lease.ack()
    assert seen == ["subscription.created", "subscription.updated", "subscription.deleted"]


# ── Delivery log and ping ────────────────────────────────
@pytest.mark.asyncio
async def test_attempts_and_deliveries(client, auth_headers, components, endpoint):
    data = await _create(client, auth_headers, events=["order.created"])
    for _ in range(3):
        await components.producer.emit("order.created", TENANT, {})
    await drain(components)

    resp = await client.get(f"{BASE}{data['id']}/attempts", headers=auth_headers)
    assert resp.status_code == 200
    assert len(resp.json()) == 3
    assert all(a["outcome"] == "success" for a in resp.json())

    resp = await client.get(f"{BASE}{data['id']}/deliveries?limit=2", headers=auth_headers)
    page = resp.json()
    assert len(page["items"]) == 2
    assert page["next_cursor"]
    resp = await client.get(
        f"{BASE}{data['id']}/deliveries",
        params={"limit": 2, "cursor": page["next_cursor"]},
        headers=auth_headers,
    )
    assert len(resp.json()["items"]) == 1
    assert resp.json()["next_cursor"] is None

    resp = await client.get(f"{BASE}{data['id']}/deliveries?cursor=garbage", headers=auth_headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_ping(client, auth_headers, endpoint):
    data = await _create(client, auth_headers, verify=True)
    assert data["state"] == "pending_verification"
    resp = await client.post(f"{BASE}{data['id']}/ping", headers=auth_headers)
    assert resp.status_code == 200
    result = resp.json()
    assert result["outcome"] == "success"
    assert result["response_status"] == 200
    assert result["state"] == "active"
    assert endpoint.requests[-1].headers["X-Webhook-Event-Type"] == "webhook.ping"


@pytest.mark.asyncio
async def test_ping_unknown_subscription(client, auth_headers):
    resp = await client.post(f"{BASE}does-not-exist/ping", headers=auth_headers)
    assert resp.status_code == 404
