from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
from aiohttp import web

from webhook_service.domain.dto import SubscriptionCreateDTO, SubscriptionUpdateDTO
from webhook_service.domain.enums import DeliveryStatus, ErrorKind, EventType
from webhook_service.services.dependencies import ServiceContainer
from webhook_service.services.retry import RetryPolicy
from webhook_service.services.signature import SignatureService
from webhook_service.services.worker_pool import DeliveryWorkerPool

from tests.conftest import TEST_SECRET, make_event, unused_port


async def _subscribe(container, url, **extra):
    return await container.registry.create(
        SubscriptionCreateDTO(url=url, event_types=["USER_REGISTERED"], secret=TEST_SECRET, **extra)
    )


async def _run_rounds(container, clock, rounds: int) -> None:
    """Process everything due, then jump past the longest retry delay."""
    for _ in range(rounds):
        await container.worker_pool.run_until_idle()
        clock.advance(timedelta(minutes=2))


async def _pair_history(container, event, subscription):
    return await container.ledger.get_attempts(event.event_id, subscription.id)


@pytest.mark.asyncio
async def test_success_on_first_attempt(container, clock, receiver):
    subscription = await _subscribe(container, receiver.url)
    event = make_event()
    await container.dispatcher.dispatch(event)

    assert await container.worker_pool.run_once() is True
    assert await container.worker_pool.run_once() is False

    attempts = await _pair_history(container, event, subscription)
    assert [(a.attempt_number, a.status) for a in attempts] == [(1, DeliveryStatus.SUCCESS)]
    assert attempts[0].http_status_code == 200
    assert attempts[0].completed_at == clock.now
    assert (await container.registry.get(subscription.id)).consecutive_failure_count == 0

    request = receiver.requests[0]
    assert request.body == event.wire_body().encode("utf-8")
    assert request.headers["X-Eventr-Event-Id"] == str(event.event_id)
    assert request.headers["X-Eventr-Event-Type"] == "USER_REGISTERED"
    assert request.headers["X-Eventr-Delivery-Attempt"] == "1"
    assert request.headers["Content-Type"] == "application/json"
    assert SignatureService().verify(TEST_SECRET, request.body, request.headers["X-Eventr-Signature"])


@pytest.mark.asyncio
async def test_retries_until_success_and_resets_counter(container, clock, receiver):
    receiver.statuses = [500, 500, 500]
    subscription = await _subscribe(container, receiver.url)
    event = make_event()
    await container.dispatcher.dispatch(event)

    await container.worker_pool.run_until_idle()
    # attempt 2 is not due before its backoff elapses
    assert await container.worker_pool.run_once() is False

    await _run_rounds(container, clock, rounds=5)

    attempts = await _pair_history(container, event, subscription)
    assert [(a.attempt_number, a.status) for a in attempts] == [
        (1, DeliveryStatus.FAILED),
        (2, DeliveryStatus.FAILED),
        (3, DeliveryStatus.FAILED),
        (4, DeliveryStatus.SUCCESS),
    ]
    assert all(a.error_kind == ErrorKind.TRANSIENT for a in attempts[:3])
    assert attempts[0].http_status_code == 500
    for previous, current in zip(attempts, attempts[1:]):
        assert current.scheduled_at > previous.completed_at
    assert [r.headers["X-Eventr-Delivery-Attempt"] for r in receiver.requests] == ["1", "2", "3", "4"]
    # the same bytes are signed and sent on every attempt
    assert len({r.body for r in receiver.requests}) == 1
    assert (await container.registry.get(subscription.id)).consecutive_failure_count == 0


@pytest.mark.asyncio
async def test_unreachable_endpoint_exhausts_after_max_attempts(container, clock):
    subscription = await _subscribe(container, f"http://127.0.0.1:{unused_port()}/hook")
    event = make_event()
    await container.dispatcher.dispatch(event)

    await _run_rounds(container, clock, rounds=8)

    attempts = await _pair_history(container, event, subscription)
    assert [a.attempt_number for a in attempts] == [1, 2, 3, 4, 5, 6]
    assert [a.status for a in attempts[:-1]] == [DeliveryStatus.FAILED] * 5
    assert attempts[-1].status == DeliveryStatus.EXHAUSTED
    assert attempts[-1].http_status_code is None
    assert attempts[-1].error_kind == ErrorKind.TRANSIENT
    refreshed = await container.registry.get(subscription.id)
    assert refreshed.consecutive_failure_count == 1
    assert refreshed.active is True


@pytest.mark.asyncio
async def test_redeliver_after_exhaustion_starts_fresh(container, clock, receiver):
    subscription = await _subscribe(container, f"http://127.0.0.1:{unused_port()}/hook")
    event = make_event()
    await container.storage.outbox.append(event)
    await container.dispatcher.dispatch(event)
    await _run_rounds(container, clock, rounds=8)
    assert (await container.ledger.get_status(event.event_id, subscription.id)).status == DeliveryStatus.EXHAUSTED

    await container.registry.update(subscription.id, SubscriptionUpdateDTO(url=receiver.url))
    redelivery = await container.dispatcher.redeliver(subscription.id, event.event_id)
    assert (redelivery.sequence, redelivery.attempt_number, redelivery.status) == (2, 1, DeliveryStatus.PENDING)

    await container.worker_pool.run_until_idle()

    latest = await container.ledger.get_status(event.event_id, subscription.id)
    assert (latest.sequence, latest.attempt_number, latest.status) == (2, 1, DeliveryStatus.SUCCESS)
    attempts = await _pair_history(container, event, subscription)
    assert len(attempts) == 7
    assert receiver.requests[0].headers["X-Eventr-Delivery-Attempt"] == "1"
    assert (await container.registry.get(subscription.id)).consecutive_failure_count == 0


@pytest.mark.asyncio
async def test_repeated_exhaustion_deactivates_subscription(settings, clock, receiver):
    receiver.default_status = 410
    container = ServiceContainer.build_in_memory(
        settings,
        clock=clock,
        retry_policy=RetryPolicy(max_attempts=1, failure_deactivation_threshold=2),
    )
    try:
        subscription = await _subscribe(container, receiver.url)
        for _ in range(2):
            await container.dispatcher.dispatch(make_event())
            await container.worker_pool.run_until_idle()

        refreshed = await container.registry.get(subscription.id)
        assert refreshed.active is False
        assert refreshed.deactivated_at is not None
        assert refreshed.consecutive_failure_count == 2

        history, _ = await container.ledger.get_history(subscription.id)
        assert {a.status for a in history} == {DeliveryStatus.EXHAUSTED}
        assert {a.error_kind for a in history} == {ErrorKind.PERMANENT}

        alerts = [
            e
            for e in await container.storage.outbox.fetch_unprocessed()
            if e.type == EventType.WEBHOOK_SUBSCRIPTION_DEACTIVATED
        ]
        assert len(alerts) == 1
        assert alerts[0].aggregate_id == subscription.id

        # deactivated subscriptions get no new tasks
        assert await container.dispatcher.dispatch(make_event()) == []
    finally:
        await container.sender.close()


@pytest.mark.asyncio
async def test_tasks_of_deactivated_subscription_are_skipped_until_reactivated(container, receiver):
    subscription = await _subscribe(container, receiver.url)
    event = make_event()
    await container.dispatcher.dispatch(event)
    await container.registry.update(subscription.id, SubscriptionUpdateDTO(active=False))

    assert await container.worker_pool.run_once() is False
    assert receiver.requests == []
    assert (await container.ledger.get_status(event.event_id, subscription.id)).status == DeliveryStatus.PENDING

    await container.registry.update(subscription.id, SubscriptionUpdateDTO(active=True))
    assert await container.worker_pool.run_once() is True
    assert len(receiver.requests) == 1


@pytest.mark.asyncio
async def test_url_and_secret_are_read_when_sending(container, receiver):
    subscription = await _subscribe(container, f"http://127.0.0.1:{unused_port()}/hook")
    event = make_event()
    await container.dispatcher.dispatch(event)
    await container.registry.update(
        subscription.id,
        SubscriptionUpdateDTO(url=receiver.url, secret="rotated-secret-value-1"),
    )

    await container.worker_pool.run_once()

    request = receiver.requests[0]
    assert SignatureService().verify("rotated-secret-value-1", request.body, request.headers["X-Eventr-Signature"])


class _BlockingSender:
    def __init__(self):
        self.release = asyncio.Event()
        self.sent = 0

    async def start(self):
        return None

    async def close(self):
        return None

    async def send(self, task):
        self.sent += 1
        await self.release.wait()
        return 200, "ok"


@pytest.mark.asyncio
async def test_per_subscription_in_flight_cap(container, clock, retry_policy):
    subscription = await _subscribe(container, "http://127.0.0.1:9/hook")
    await container.dispatcher.dispatch(make_event())
    await container.dispatcher.dispatch(make_event())
    sender = _BlockingSender()
    pool = DeliveryWorkerPool(
        container.storage.attempts,
        sender,
        retry_policy,
        per_subscription_limit=1,
        clock=clock,
    )

    first = asyncio.create_task(pool.run_once())
    while sender.sent == 0:
        await asyncio.sleep(0)
    assert pool.in_flight == {subscription.id: 1}

    # the second task is due but its subscription is saturated
    assert await pool.run_once() is False

    sender.release.set()
    assert await first is True
    assert pool.in_flight == {}
    assert await pool.run_once() is True


@pytest.mark.asyncio
async def test_started_pool_delivers_in_background(container, receiver):
    await _subscribe(container, receiver.url)
    await container.dispatcher.dispatch(make_event())

    await container.worker_pool.start()
    try:
        for _ in range(200):
            if receiver.requests:
                break
            await asyncio.sleep(0.01)
    finally:
        await container.worker_pool.stop()

    assert len(receiver.requests) == 1
    assert json.loads(receiver.requests[0].body)["eventType"] == "USER_REGISTERED"


@pytest.mark.asyncio
async def test_slow_subscriber_does_not_starve_others_on_same_host(aiohttp_server, settings, clock, retry_policy):
    gate = asyncio.Event()
    slow_requests = []

    async def slow(request: web.Request) -> web.Response:
        slow_requests.append(request.path)
        await gate.wait()
        return web.Response(text="late")

    async def fast(_request: web.Request) -> web.Response:
        return web.Response(text="ok")

    app = web.Application()
    app.router.add_post("/slow", slow)
    app.router.add_post("/fast", fast)
    server = await aiohttp_server(app)

    tuned = settings.model_copy(update={"webhook_worker_count": 6, "webhook_http_timeout_ms": 1_000})
    container = ServiceContainer.build_in_memory(tuned, clock=clock, retry_policy=retry_policy)
    try:
        await _subscribe(container, str(server.make_url("/slow")))
        for _ in range(5):
            await container.dispatcher.dispatch(make_event())
        fast_subscription = await _subscribe(container, str(server.make_url("/fast")))
        fast_event = make_event()
        await container.dispatcher.dispatch(fast_event)

        runs = asyncio.gather(*(container.worker_pool.run_once() for _ in range(6)))
        attempts = []
        for _ in range(300):
            attempts = await _pair_history(container, fast_event, fast_subscription)
            if attempts and attempts[0].status != DeliveryStatus.PENDING:
                break
            await asyncio.sleep(0.01)

        assert len(slow_requests) == 5
        assert [(a.attempt_number, a.status) for a in attempts] == [(1, DeliveryStatus.SUCCESS)]

        gate.set()
        assert await runs == [True] * 6
    finally:
        gate.set()
        await container.sender.close()


def test_per_host_connection_limit_never_below_worker_count(settings):
    assert settings.model_copy(update={"webhook_worker_count": 8}).http_per_host_limit == 8
    tuned = settings.model_copy(update={"webhook_worker_count": 8, "webhook_http_per_host_limit": 3})
    assert tuned.http_per_host_limit == 8
    tuned = settings.model_copy(update={"webhook_worker_count": 2, "webhook_http_per_host_limit": 20})
    assert tuned.http_per_host_limit == 20
