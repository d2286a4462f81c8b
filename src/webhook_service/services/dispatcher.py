"""Turns domain events into delivery tasks (attempt 1 per matching subscription)."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, List
from uuid import UUID

import structlog

from webhook_service.core.exceptions import InternalSchedulingError
from webhook_service.domain.dto import WebhookTestDTO
from webhook_service.domain.enums import EventType
from webhook_service.domain.events import DomainEvent, WebhookTestPayload
from webhook_service.domain.models import DeliveryAttempt
from webhook_service.services.registry import SubscriptionRegistry

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryDispatcher:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        attempt_repository: Any,
        outbox_repository: Any,
        *,
        clock: Clock = utcnow,
    ):
        self._registry = registry
        self._attempts = attempt_repository
        self._outbox = outbox_repository
        self._clock = clock

    async def dispatch(self, event: DomainEvent) -> List[DeliveryAttempt]:
        """Enqueue attempt 1 for every active subscription matching ``event.type``.

        Safe to call again for the same event: already enqueued pairs are
        skipped. Returns only the attempts created by this call.
        """
        try:
            subscriptions = await self._registry.subscriptions_for(event.type)
            now = self._clock()
            created: List[DeliveryAttempt] = []
            for subscription in subscriptions:
                attempt = await self._attempts.enqueue_first(
                    event=event, subscription_id=subscription.id, now=now
                )
                if attempt is not None:
                    created.append(attempt)
        except Exception as exc:
            raise InternalSchedulingError(
                f"Failed to schedule deliveries for event {event.event_id}"
            ) from exc

        logger.info(
            "webhook_dispatch completed",
            event_id=str(event.event_id),
            event_type=event.type.value,
            matched=len(subscriptions),
            enqueued=len(created),
        )
        return created

    async def redeliver(self, subscription_id: UUID, event_id: UUID) -> DeliveryAttempt:
        """Start a fresh attempt sequence for a stored event, ignoring earlier history."""
        subscription = await self._registry.get(subscription_id)
        event = await self._outbox.get_event(event_id)
        attempt = await self._attempts.start_sequence(
            event=event, subscription_id=subscription.id, now=self._clock()
        )
        logger.info(
            "webhook_redelivery scheduled",
            subscription_id=str(subscription_id),
            event_id=str(event_id),
            sequence=attempt.sequence,
        )
        return attempt

    async def send_test(self, subscription_id: UUID, data: WebhookTestDTO) -> DeliveryAttempt:
        """Deliver a ``WEBHOOK_TEST`` event to one subscription only."""
        subscription = await self._registry.get(subscription_id)
        payload_kwargs: dict[str, Any] = {"data": data.data}
        if data.message:
            payload_kwargs["message"] = data.message
        event = DomainEvent(
            type=EventType.WEBHOOK_TEST,
            aggregate_id=subscription.id,
            payload=WebhookTestPayload(**payload_kwargs),
            occurred_at=self._clock(),
        )
        # stored already processed: the poller must not fan it out to other subscribers
        await self._outbox.append(event, processed=True)
        attempt = await self._attempts.enqueue_first(
            event=event, subscription_id=subscription.id, now=self._clock()
        )
        if attempt is None:
            raise InternalSchedulingError(f"Test delivery for event {event.event_id} was not enqueued")
        logger.info(
            "webhook_test scheduled",
            subscription_id=str(subscription_id),
            event_id=str(event.event_id),
        )
        return attempt
