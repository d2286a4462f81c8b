"""Webhook subscription repository."""
from __future__ import annotations

from typing import Any, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.enums import WILDCARD_EVENT_TYPE
from webhook_service.domain.models import WebhookSubscription
from webhook_service.repositories.base import BaseRepository

_UPDATABLE_COLUMNS = ("name", "description", "url", "secret", "event_types", "active")


class SubscriptionRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookSubscription:
        payload = dict(record)
        payload.pop("total_count", None)
        return WebhookSubscription.model_validate(payload)

    async def create(
        self,
        *,
        url: str,
        secret: str,
        event_types: list[str],
        active: bool = True,
        name: str | None = None,
        description: str | None = None,
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_subscriptions (url, secret, event_types, active, name, description, deactivated_at)
            VALUES ($1, $2, $3::text[], $4, $5, $6, CASE WHEN $4::boolean THEN NULL ELSE now() END)
            RETURNING *
            """,
            url,
            secret,
            event_types,
            active,
            name,
            description,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, subscription_id: UUID) -> WebhookSubscription:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE id = $1 AND deleted_at IS NULL",
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def list_all(self, *, limit: int = 50, offset: int = 0) -> Tuple[List[WebhookSubscription], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_subscriptions
            WHERE deleted_at IS NULL
            ORDER BY created_at DESC
            LIMIT $1 OFFSET $2
            """,
            limit,
            offset,
        )
        items: List[WebhookSubscription] = []
        total: int | None = None
        for rec in records:
            total_value = rec["total_count"]
            if total_value is not None:
                total = int(total_value)
            items.append(self._to_model(rec))
        if total is None:
            total = await self._count()
        return items, total

    async def _count(self) -> int:
        record = await self._fetchrow(
            "SELECT COUNT(*) AS total FROM webhook_subscriptions WHERE deleted_at IS NULL"
        )
        return int(record["total"]) if record else 0

    async def update(self, subscription_id: UUID, changes: dict[str, Any]) -> WebhookSubscription:
        assignments: list[str] = []
        values: list[Any] = [subscription_id]
        for column in _UPDATABLE_COLUMNS:
            if column not in changes:
                continue
            values.append(changes[column])
            cast = {"event_types": "::text[]", "active": "::boolean"}.get(column, "")
            assignments.append(f"{column} = ${len(values)}{cast}")
            if column == "active":
                idx = len(values)
                # re-activation starts the failure streak from scratch
                assignments.append(
                    f"consecutive_failure_count = CASE WHEN ${idx}::boolean AND NOT active THEN 0 "
                    "ELSE consecutive_failure_count END"
                )
                assignments.append(
                    f"deactivated_at = CASE WHEN ${idx}::boolean THEN NULL "
                    "ELSE COALESCE(deactivated_at, now()) END"
                )
        assignments.append("updated_at = now()")
        record = await self._fetchrow(
            f"""
            UPDATE webhook_subscriptions
            SET {", ".join(assignments)}
            WHERE id = $1 AND deleted_at IS NULL
            RETURNING *
            """,
            *values,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def soft_delete(self, subscription_id: UUID) -> None:
        record = await self._fetchrow(
            """
            UPDATE webhook_subscriptions
            SET deleted_at = now(),
                active = false,
                deactivated_at = COALESCE(deactivated_at, now()),
                updated_at = now()
            WHERE id = $1 AND deleted_at IS NULL
            RETURNING id
            """,
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")

    async def list_active_matching(self, event_type: str) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE active = true
              AND deleted_at IS NULL
              AND event_types && ARRAY[$1::text, $2::text]
            ORDER BY created_at ASC
            """,
            event_type,
            WILDCARD_EVENT_TYPE,
        )
        return [self._to_model(r) for r in records]
