from __future__ import annotations

import uuid

import pytest

from webhook_service.domain.enums import DeliveryStatus

from tests.conftest import TEST_SECRET, make_event


async def _create_webhook(service_client, url: str, **extra) -> dict:
    payload = {"url": url, "eventTypes": ["USER_REGISTERED"], "secret": TEST_SECRET}
    payload.update(extra)
    resp = await service_client.post("/webhooks", json=payload)
    assert resp.status == 201, await resp.text()
    return await resp.json()


@pytest.mark.asyncio
async def test_create_returns_secret_once(service_client, receiver):
    created = await _create_webhook(service_client, receiver.url, name="CRM")
    assert created["secret"] == TEST_SECRET
    assert created["eventTypes"] == ["USER_REGISTERED"]
    assert created["active"] is True
    assert created["consecutiveFailureCount"] == 0

    resp = await service_client.get(f"/webhooks/{created['id']}")
    assert resp.status == 200
    fetched = await resp.json()
    assert "secret" not in fetched
    assert fetched["name"] == "CRM"


@pytest.mark.asyncio
async def test_create_generates_secret_when_omitted(service_client, receiver):
    resp = await service_client.post("/webhooks", json={"url": receiver.url, "eventTypes": ["*"]})
    assert resp.status == 201
    assert len((await resp.json())["secret"]) >= 16


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"url": "https://example.com/hook", "eventTypes": []},
        {"url": "https://example.com/hook", "eventTypes": ["NOPE"]},
        {"url": "https://example.com/hook", "eventTypes": ["*"], "secret": "short"},
        {"url": "ftp://example.com/hook", "eventTypes": ["*"]},
        {"eventTypes": ["*"]},
        {"url": "https://example.com/hook", "eventTypes": ["*"], "unknownField": 1},
    ],
)
async def test_create_validation_errors(service_client, payload):
    resp = await service_client.post("/webhooks", json=payload)
    assert resp.status == 400


@pytest.mark.asyncio
async def test_invalid_json_body(service_client):
    resp = await service_client.post("/webhooks", data="{not json", headers={"Content-Type": "application/json"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_list_paginates(service_client, receiver):
    for _ in range(3):
        await _create_webhook(service_client, receiver.url)
    resp = await service_client.get("/webhooks", params={"limit": 2})
    assert resp.status == 200
    payload = await resp.json()
    assert payload["total"] == 3
    assert payload["pageSize"] == 2
    assert len(payload["webhooks"]) == 2
    assert payload["hasMore"] is True
    assert all("secret" not in item for item in payload["webhooks"])


@pytest.mark.asyncio
async def test_patch_toggles_active_and_filters(service_client, receiver):
    created = await _create_webhook(service_client, receiver.url)
    resp = await service_client.patch(
        f"/webhooks/{created['id']}",
        json={"active": False, "eventTypes": ["SESSION_CREATED", "SESSION_CREATED"]},
    )
    assert resp.status == 200
    updated = await resp.json()
    assert updated["active"] is False
    assert updated["eventTypes"] == ["SESSION_CREATED"]
    assert updated["deactivatedAt"] is not None


@pytest.mark.asyncio
async def test_unknown_or_malformed_ids(service_client):
    missing = uuid.uuid4()
    assert (await service_client.get(f"/webhooks/{missing}")).status == 404
    assert (await service_client.patch(f"/webhooks/{missing}", json={"active": True})).status == 404
    assert (await service_client.delete(f"/webhooks/{missing}")).status == 404
    assert (await service_client.get("/webhooks/not-a-uuid")).status == 400


@pytest.mark.asyncio
async def test_delete_then_get_is_404(service_client, receiver):
    created = await _create_webhook(service_client, receiver.url)
    resp = await service_client.delete(f"/webhooks/{created['id']}")
    assert resp.status == 204
    assert (await service_client.get(f"/webhooks/{created['id']}")).status == 404


@pytest.mark.asyncio
async def test_rotate_secret(service_client, receiver):
    created = await _create_webhook(service_client, receiver.url)
    resp = await service_client.post(f"/webhooks/{created['id']}/rotate-secret")
    assert resp.status == 200
    rotated = await resp.json()
    assert rotated["secret"] != TEST_SECRET


@pytest.mark.asyncio
async def test_deliveries_status_stats_and_redeliver(service_client, container, receiver):
    created = await _create_webhook(service_client, receiver.url)
    event = make_event()
    await container.storage.outbox.append(event)
    await container.outbox_poller.poll_once()
    await container.worker_pool.run_until_idle()

    resp = await service_client.get(f"/webhooks/{created['id']}/deliveries")
    assert resp.status == 200
    page = await resp.json()
    assert page["total"] == 1
    delivery = page["deliveries"][0]
    assert delivery["eventId"] == str(event.event_id)
    assert delivery["status"] == "SUCCESS"
    assert delivery["httpStatusCode"] == 200
    assert "requestBody" not in delivery

    resp = await service_client.get(f"/webhooks/{created['id']}/deliveries", params={"status": "failed"})
    assert (await resp.json())["total"] == 0
    resp = await service_client.get(f"/webhooks/{created['id']}/deliveries", params={"status": "bogus"})
    assert resp.status == 400

    resp = await service_client.get(f"/webhooks/{created['id']}/deliveries/{event.event_id}")
    assert resp.status == 200
    assert (await resp.json())["latest"]["status"] == "SUCCESS"

    resp = await service_client.post(f"/webhooks/{created['id']}/redeliver/{event.event_id}")
    assert resp.status == 202
    redelivery = await resp.json()
    assert redelivery["sequence"] == 2
    assert redelivery["attemptNumber"] == 1
    assert redelivery["status"] == DeliveryStatus.PENDING.value

    await container.worker_pool.run_until_idle()
    assert len(receiver.requests) == 2

    resp = await service_client.get(f"/webhooks/{created['id']}/stats")
    assert resp.status == 200
    stats = await resp.json()
    assert stats["succeeded"] == 2
    assert stats["successRate"] == 1.0


@pytest.mark.asyncio
async def test_redeliver_unknown_event_is_404(service_client, receiver):
    created = await _create_webhook(service_client, receiver.url)
    resp = await service_client.post(f"/webhooks/{created['id']}/redeliver/{uuid.uuid4()}")
    assert resp.status == 404


@pytest.mark.asyncio
async def test_send_test_webhook(service_client, container, receiver):
    created = await _create_webhook(service_client, receiver.url)
    resp = await service_client.post(f"/webhooks/{created['id']}/test", json={"message": "hello"})
    assert resp.status == 202
    attempt = await resp.json()
    assert attempt["eventType"] == "WEBHOOK_TEST"

    await container.worker_pool.run_until_idle()
    assert receiver.requests[0].headers["X-Eventr-Event-Type"] == "WEBHOOK_TEST"


@pytest.mark.asyncio
async def test_send_test_without_body(service_client, receiver):
    created = await _create_webhook(service_client, receiver.url)
    resp = await service_client.post(f"/webhooks/{created['id']}/test")
    assert resp.status == 202


@pytest.mark.asyncio
async def test_list_rejects_bad_pagination(service_client):
    assert (await service_client.get("/webhooks", params={"limit": "abc"})).status == 400
    assert (await service_client.get("/webhooks", params={"limit": 0})).status == 400
    assert (await service_client.get("/webhooks", params={"offset": -1})).status == 400


@pytest.mark.asyncio
async def test_invalid_path_uuid(service_client):
    resp = await service_client.get("/webhooks/not-a-uuid")
    assert resp.status == 400
