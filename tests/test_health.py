import pytest


@pytest.mark.asyncio
async def test_healthcheck(service_client):
    response = await service_client.get("/health")
    assert response.status == 200
    payload = await response.json()
    assert payload["status"] == "ok"
    assert payload["service"] == "webhook-service"
    assert payload["storage"] == "memory"
    assert payload["ready"] is True


@pytest.mark.asyncio
async def test_responses_carry_trace_headers(service_client):
    trace_id = "6f1c2b9e-4a7d-4c1b-9f0e-2d3c4b5a6978"
    response = await service_client.get("/health", headers={"X-Trace-Id": trace_id})
    assert response.headers["X-Trace-Id"] == trace_id
    assert "X-Request-Id" in response.headers
