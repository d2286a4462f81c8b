"""Repository package exports."""

from webhook_service.repositories.attempts import DeliveryAttemptRepository
from webhook_service.repositories.memory import (
    InMemoryDeliveryAttemptRepository,
    InMemoryOutboxRepository,
    InMemorySubscriptionRepository,
    MemoryDatabase,
)
from webhook_service.repositories.outbox import OutboxRepository
from webhook_service.repositories.storage import (
    Storage,
    create_memory_storage,
    create_postgres_storage,
)
from webhook_service.repositories.subscriptions import SubscriptionRepository

__all__ = [
    "OutboxRepository",
    "SubscriptionRepository",
    "DeliveryAttemptRepository",
    "MemoryDatabase",
    "InMemoryOutboxRepository",
    "InMemorySubscriptionRepository",
    "InMemoryDeliveryAttemptRepository",
    "Storage",
    "create_postgres_storage",
    "create_memory_storage",
]
