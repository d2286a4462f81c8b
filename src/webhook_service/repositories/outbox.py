"""Transactional outbox of domain events."""
from __future__ import annotations

import json
from datetime import datetime
from typing import List
from uuid import UUID

from asyncpg import Connection, Pool, Record  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.events import DomainEvent
from webhook_service.repositories.base import BaseRepository

_INSERT_SQL = """
    INSERT INTO domain_event_outbox (id, type, aggregate_id, payload, occurred_at, processed, processed_at)
    VALUES ($1, $2, $3, $4::jsonb, $5, $6, CASE WHEN $6::boolean THEN now() ELSE NULL END)
    ON CONFLICT (id) DO NOTHING
"""


class OutboxRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_event(record: Record) -> DomainEvent:
        payload = record["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return DomainEvent.model_validate(
            {
                "event_id": record["id"],
                "type": record["type"],
                "aggregate_id": record["aggregate_id"],
                "payload": payload,
                "occurred_at": record["occurred_at"],
            }
        )

    async def append(
        self,
        event: DomainEvent,
        *,
        conn: Connection | None = None,
        processed: bool = False,
    ) -> None:
        """Insert an event row.

        Pass the connection of the business transaction as ``conn`` so the
        event commits (or rolls back) together with the mutation that raised it.
        """
        await self._execute(
            _INSERT_SQL,
            event.event_id,
            event.type.value,
            event.aggregate_id,
            event.payload_json(),
            event.occurred_at,
            processed,
            conn=conn,
        )

    async def fetch_unprocessed(self, *, limit: int = 100) -> List[DomainEvent]:
        records = await self._fetch(
            """
            SELECT id, type, aggregate_id, payload, occurred_at
            FROM domain_event_outbox
            WHERE processed = false
            ORDER BY occurred_at ASC, seq ASC
            LIMIT $1
            """,
            limit,
        )
        return [self._to_event(r) for r in records]

    async def mark_processed(self, event_id: UUID) -> None:
        await self._execute(
            """
            UPDATE domain_event_outbox
            SET processed = true,
                processed_at = now()
            WHERE id = $1 AND processed = false
            """,
            event_id,
        )

    async def get_event(self, event_id: UUID) -> DomainEvent:
        record = await self._fetchrow(
            """
            SELECT id, type, aggregate_id, payload, occurred_at FROM domain_event_outbox WHERE id = $1
            UNION ALL
            SELECT id, type, aggregate_id, payload, occurred_at FROM domain_events_archive WHERE id = $1
            LIMIT 1
            """,
            event_id,
        )
        if record is None:
            raise NotFoundError("Domain event not found")
        return self._to_event(record)

    async def archive_processed(self, processed_before: datetime) -> int:
        """Move processed events older than *processed_before* to the archive. Returns count."""
        async with self._transaction() as conn:
            result = await conn.execute(
                """
                WITH moved AS (
                    DELETE FROM domain_event_outbox
                    WHERE processed = true AND processed_at < $1
                    RETURNING id, type, aggregate_id, payload, occurred_at, processed_at
                )
                INSERT INTO domain_events_archive (id, type, aggregate_id, payload, occurred_at, processed_at)
                SELECT id, type, aggregate_id, payload, occurred_at, processed_at FROM moved
                ON CONFLICT (id) DO NOTHING
                """,
                processed_before,
            )
        return self._affected(result)
