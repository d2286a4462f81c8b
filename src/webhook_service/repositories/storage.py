"""Storage bundle: the three repositories a backend provides."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from webhook_service.repositories.attempts import DeliveryAttemptRepository
from webhook_service.repositories.memory import (
    InMemoryDeliveryAttemptRepository,
    InMemoryOutboxRepository,
    InMemorySubscriptionRepository,
    MemoryDatabase,
)
from webhook_service.repositories.outbox import OutboxRepository
from webhook_service.repositories.subscriptions import SubscriptionRepository


@dataclass(frozen=True)
class Storage:
    outbox: Any
    subscriptions: Any
    attempts: Any
    backend: str


def create_postgres_storage(pool: asyncpg.Pool) -> Storage:
    return Storage(
        outbox=OutboxRepository(pool),
        subscriptions=SubscriptionRepository(pool),
        attempts=DeliveryAttemptRepository(pool),
        backend="postgres",
    )


def create_memory_storage(db: MemoryDatabase | None = None) -> Storage:
    db = db or MemoryDatabase()
    return Storage(
        outbox=InMemoryOutboxRepository(db),
        subscriptions=InMemorySubscriptionRepository(db),
        attempts=InMemoryDeliveryAttemptRepository(db),
        backend="memory",
    )
