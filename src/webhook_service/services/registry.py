"""Subscription registry: validated CRUD over webhook subscriptions."""
from __future__ import annotations

from typing import Any, List
from urllib.parse import urlsplit
from uuid import UUID

import structlog

from webhook_service.core.exceptions import SubscriptionConfigError
from webhook_service.domain.dto import SubscriptionCreateDTO, SubscriptionUpdateDTO
from webhook_service.domain.enums import WILDCARD_EVENT_TYPE, EventType
from webhook_service.domain.models import WebhookSubscription
from webhook_service.services.signature import SignatureService

logger = structlog.get_logger(__name__)

_KNOWN_EVENT_TYPES = frozenset(t.value for t in EventType) | {WILDCARD_EVENT_TYPE}


class SubscriptionRegistry:
    """Owns subscription validation; storage is whatever repository is injected."""

    def __init__(
        self,
        repository: Any,
        signature_service: SignatureService,
        *,
        allow_insecure_urls: bool = False,
        min_secret_length: int = 16,
    ):
        self._repository = repository
        self._signatures = signature_service
        self._allow_insecure_urls = allow_insecure_urls
        self._min_secret_length = min_secret_length

    def _validate_url(self, url: str) -> str:
        url = url.strip()
        parts = urlsplit(url)
        allowed = {"https", "http"} if self._allow_insecure_urls else {"https"}
        if parts.scheme not in allowed:
            if parts.scheme == "http":
                raise SubscriptionConfigError("Webhook URL must use https")
            raise SubscriptionConfigError("Webhook URL must be an absolute http(s) URL")
        if not parts.hostname:
            raise SubscriptionConfigError("Webhook URL must include a host")
        return url

    def _validate_secret(self, secret: str) -> str:
        if len(secret) < self._min_secret_length:
            raise SubscriptionConfigError(
                f"Webhook secret must be at least {self._min_secret_length} characters"
            )
        return secret

    @staticmethod
    def _validate_event_types(event_types: list[str]) -> list[str]:
        if not event_types:
            raise SubscriptionConfigError("At least one event type is required")
        unknown = sorted(set(event_types) - _KNOWN_EVENT_TYPES)
        if unknown:
            raise SubscriptionConfigError(f"Unknown event types: {', '.join(unknown)}")
        return event_types

    async def create(self, data: SubscriptionCreateDTO) -> WebhookSubscription:
        url = self._validate_url(data.url)
        event_types = self._validate_event_types(data.event_types)
        secret = (
            self._validate_secret(data.secret)
            if data.secret is not None
            else self._signatures.generate_secret()
        )
        subscription = await self._repository.create(
            url=url,
            secret=secret,
            event_types=event_types,
            active=data.active,
            name=data.name,
            description=data.description,
        )
        logger.info(
            "webhook_subscription created",
            subscription_id=str(subscription.id),
            event_types=event_types,
        )
        return subscription

    async def update(self, subscription_id: UUID, data: SubscriptionUpdateDTO) -> WebhookSubscription:
        changes = data.model_dump(exclude_unset=True)
        if "url" in changes:
            if changes["url"] is None:
                raise SubscriptionConfigError("Webhook URL cannot be empty")
            changes["url"] = self._validate_url(changes["url"])
        if "secret" in changes:
            if changes["secret"] is None:
                raise SubscriptionConfigError("Webhook secret cannot be empty")
            self._validate_secret(changes["secret"])
        if "event_types" in changes:
            changes["event_types"] = self._validate_event_types(changes["event_types"] or [])
        if "active" in changes and changes["active"] is None:
            changes.pop("active")
        subscription = await self._repository.update(subscription_id, changes)
        logger.info(
            "webhook_subscription updated",
            subscription_id=str(subscription_id),
            fields=sorted(changes),
        )
        return subscription

    async def rotate_secret(self, subscription_id: UUID) -> WebhookSubscription:
        subscription = await self._repository.update(
            subscription_id, {"secret": self._signatures.generate_secret()}
        )
        logger.info("webhook_subscription secret rotated", subscription_id=str(subscription_id))
        return subscription

    async def get(self, subscription_id: UUID) -> WebhookSubscription:
        return await self._repository.get(subscription_id)

    async def list(self, *, limit: int = 50, offset: int = 0) -> tuple[List[WebhookSubscription], int]:
        return await self._repository.list_all(limit=limit, offset=offset)

    async def delete(self, subscription_id: UUID) -> None:
        await self._repository.soft_delete(subscription_id)
        logger.info("webhook_subscription deleted", subscription_id=str(subscription_id))

    async def subscriptions_for(self, event_type: EventType | str) -> List[WebhookSubscription]:
        value = event_type.value if isinstance(event_type, EventType) else event_type
        return await self._repository.list_active_matching(value)
