"""Component wiring and dependency providers for aiohttp handlers.

Every component is built once from :class:`Settings` and kept on a
:class:`ServiceContainer` stored in the application; handlers fetch what
they need through the ``get_*`` providers below.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from aiohttp import web

from webhook_service.db.migrations import apply_pending_migrations
from webhook_service.db.pool import close_pool, create_pool
from webhook_service.repositories.storage import Storage, create_memory_storage, create_postgres_storage
from webhook_service.services.delivery import WebhookSender
from webhook_service.services.dispatcher import Clock, DeliveryDispatcher, utcnow
from webhook_service.services.ledger import DeliveryLedger
from webhook_service.services.outbox import OutboxPoller
from webhook_service.services.registry import SubscriptionRegistry
from webhook_service.services.retry import RetryPolicy
from webhook_service.services.signature import SignatureService
from webhook_service.services.worker_pool import DeliveryWorkerPool
from webhook_service.settings import Settings
from webhook_service.worker import BackgroundWorker
from webhook_service.workers import create_background_worker

logger = structlog.get_logger(__name__)

@dataclass
class ServiceContainer:
    settings: Settings
    storage: Storage
    signatures: SignatureService
    retry_policy: RetryPolicy
    registry: SubscriptionRegistry
    dispatcher: DeliveryDispatcher
    ledger: DeliveryLedger
    sender: WebhookSender
    worker_pool: DeliveryWorkerPool
    outbox_poller: OutboxPoller
    background_worker: BackgroundWorker
    pool: Any = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        storage: Storage,
        *,
        clock: Clock = utcnow,
        retry_policy: RetryPolicy | None = None,
        pool: Any = None,
    ) -> "ServiceContainer":
        signatures = SignatureService()
        retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        registry = SubscriptionRegistry(
            storage.subscriptions,
            signatures,
            allow_insecure_urls=settings.is_development,
            min_secret_length=settings.webhook_min_secret_length,
        )
        dispatcher = DeliveryDispatcher(registry, storage.attempts, storage.outbox, clock=clock)
        sender = WebhookSender(
            signatures,
            timeout_seconds=settings.webhook_http_timeout_ms / 1000,
            limit_per_host=settings.http_per_host_limit,
            snippet_length=settings.webhook_response_snippet_length,
        )
        return cls(
            settings=settings,
            storage=storage,
            signatures=signatures,
            retry_policy=retry_policy,
            registry=registry,
            dispatcher=dispatcher,
            ledger=DeliveryLedger(registry, storage.attempts),
            sender=sender,
            worker_pool=DeliveryWorkerPool(
                storage.attempts,
                sender,
                retry_policy,
                worker_count=settings.webhook_worker_count,
                per_subscription_limit=settings.webhook_per_subscription_concurrency,
                poll_interval_seconds=settings.webhook_poll_interval_ms / 1000,
                clock=clock,
            ),
            outbox_poller=OutboxPoller(
                storage.outbox,
                dispatcher,
                batch_size=settings.outbox_batch_size,
                poll_interval_seconds=settings.outbox_poll_interval_ms / 1000,
            ),
            background_worker=create_background_worker(storage, settings),
            pool=pool,
        )

    @classmethod
    def build_in_memory(cls, settings: Settings, **kwargs: Any) -> "ServiceContainer":
        return cls.build(settings, create_memory_storage(), **kwargs)

    @classmethod
    async def build_postgres(cls, settings: Settings, **kwargs: Any) -> "ServiceContainer":
        await apply_pending_migrations(str(settings.database_url))
        pool = await create_pool(settings)
        return cls.build(settings, create_postgres_storage(pool), pool=pool, **kwargs)

    async def start(self) -> None:
        await self.worker_pool.start()
        await self.outbox_poller.start()
        await self.background_worker.start()
        logger.info("webhook_service components started", storage=self.storage.backend)

    async def stop(self) -> None:
        await self.outbox_poller.stop()
        await self.background_worker.stop()
        await self.worker_pool.stop()
        await close_pool(self.pool)
        self.pool = None


@dataclass
class AppState:
    """Mutable holder set on the app at creation; filled in on startup."""

    container: ServiceContainer | None = None


STATE_KEY = web.AppKey("webhook_state", AppState)


def get_container(request: web.Request) -> ServiceContainer:
    container = request.app[STATE_KEY].container
    if container is None:
        raise web.HTTPServiceUnavailable(text="Service is starting")
    return container


def get_registry(request: web.Request) -> SubscriptionRegistry:
    return get_container(request).registry


def get_dispatcher(request: web.Request) -> DeliveryDispatcher:
    return get_container(request).dispatcher


def get_ledger(request: web.Request) -> DeliveryLedger:
    return get_container(request).ledger
