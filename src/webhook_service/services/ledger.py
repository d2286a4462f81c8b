"""Read side of the delivery ledger."""
from __future__ import annotations

from typing import Any, List
from uuid import UUID

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.models import DeliveryAttempt, DeliveryStatistics
from webhook_service.services.registry import SubscriptionRegistry


class DeliveryLedger:
    def __init__(self, registry: SubscriptionRegistry, attempt_repository: Any):
        self._registry = registry
        self._attempts = attempt_repository

    async def get_history(
        self,
        subscription_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[DeliveryAttempt], int]:
        await self._registry.get(subscription_id)
        return await self._attempts.list_by_subscription(
            subscription_id, status=status, limit=limit, offset=offset
        )

    async def get_status(self, event_id: UUID, subscription_id: UUID) -> DeliveryAttempt:
        """Latest attempt of the latest sequence for the pair."""
        attempt = await self._attempts.latest_for_pair(event_id, subscription_id)
        if attempt is None:
            raise NotFoundError("No delivery recorded for this event and subscription")
        return attempt

    async def get_attempts(self, event_id: UUID, subscription_id: UUID) -> List[DeliveryAttempt]:
        return await self._attempts.list_for_pair(event_id, subscription_id)

    async def get_statistics(self, subscription_id: UUID) -> DeliveryStatistics:
        await self._registry.get(subscription_id)
        return await self._attempts.statistics(subscription_id)
