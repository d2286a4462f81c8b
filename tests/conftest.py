from __future__ import annotations

import os
import random
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from aiohttp import web

from webhook_service.domain.enums import EventType
from webhook_service.domain.events import DomainEvent, UserRegisteredPayload
from webhook_service.main import create_app
from webhook_service.services.dependencies import ServiceContainer
from webhook_service.services.retry import RetryPolicy
from webhook_service.settings import Settings

TEST_SECRET = "s3cr3t-s3cr3t-s3cr3t"


class FakeClock:
    """Manually advanced UTC clock injected into dispatcher and worker pool."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@dataclass
class ReceivedRequest:
    headers: dict[str, str]
    body: bytes


@dataclass
class Receiver:
    """Local subscriber endpoint with scripted response codes."""

    statuses: list[int] = field(default_factory=list)
    default_status: int = 200
    requests: list[ReceivedRequest] = field(default_factory=list)
    url: str = ""

    async def handle(self, request: web.Request) -> web.Response:
        raw = await request.read()
        self.requests.append(ReceivedRequest(headers=dict(request.headers), body=raw))
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return web.Response(status=status, text=f"status {status}")


def make_event(event_type: EventType = EventType.USER_REGISTERED, **overrides) -> DomainEvent:
    payload = overrides.pop(
        "payload",
        UserRegisteredPayload(
            event_id=uuid4(),
            user_email="ada@example.com",
            user_name="Ada Lovelace",
            registration_status="CONFIRMED",
        ),
    )
    return DomainEvent(type=event_type, payload=payload, aggregate_id=overrides.pop("aggregate_id", uuid4()), **overrides)


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        env="development",
        storage_backend="memory",
        cors_allowed_origins=["http://localhost:3000"],
        webhook_worker_count=1,
        webhook_max_attempts=6,
        webhook_base_delay_ms=1_000,
        webhook_max_delay_ms=60_000,
        webhook_http_timeout_ms=2_000,
        webhook_failure_deactivation_threshold=3,
        webhook_per_subscription_concurrency=5,
        webhook_poll_interval_ms=10,
        outbox_poll_interval_ms=10,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def retry_policy(settings) -> RetryPolicy:
    return RetryPolicy(
        base_delay=settings.base_delay,
        max_delay=settings.max_delay,
        max_attempts=settings.webhook_max_attempts,
        failure_deactivation_threshold=settings.webhook_failure_deactivation_threshold,
        rng=random.Random(7),
    )


@pytest.fixture
async def container(settings, clock, retry_policy):
    built = ServiceContainer.build_in_memory(settings, clock=clock, retry_policy=retry_policy)
    yield built
    await built.sender.close()


@pytest.fixture
async def receiver(aiohttp_server) -> Receiver:
    endpoint = Receiver()
    app = web.Application()
    app.router.add_post("/hook", endpoint.handle)
    server = await aiohttp_server(app)
    endpoint.url = str(server.make_url("/hook"))
    return endpoint


@pytest.fixture
async def service_client(aiohttp_client, settings, container):
    """Admin API client over the in-memory container; workers are driven by the test."""
    app = create_app(settings, container=container, start_workers=False)
    return await aiohttp_client(app)


@pytest.fixture
def database_url() -> str:
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL is not set")
    return url
