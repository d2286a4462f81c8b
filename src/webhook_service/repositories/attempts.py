"""Delivery attempt repository (task queue + append-only ledger)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Sequence, Tuple
from uuid import UUID

from asyncpg import Connection, Pool, Record  # type: ignore[import-untyped]

from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.events import DomainEvent, build_deactivation_alert
from webhook_service.domain.models import (
    AttemptOutcome,
    DeliveryAttempt,
    DeliveryStatistics,
    DeliveryTask,
    OutcomeResult,
)
from webhook_service.repositories.base import BaseRepository
from webhook_service.repositories.outbox import _INSERT_SQL as _OUTBOX_INSERT_SQL
from webhook_service.services.retry import RetryPolicy


class DeliveryAttemptRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> DeliveryAttempt:
        payload = dict(record)
        payload.pop("total_count", None)
        return DeliveryAttempt.model_validate(payload)

    @staticmethod
    def _to_task(record: Record) -> DeliveryTask:
        return DeliveryTask(
            attempt_id=record["id"],
            subscription_id=record["subscription_id"],
            event_id=record["event_id"],
            event_type=record["event_type"],
            sequence=record["sequence"],
            attempt_number=record["attempt_number"],
            next_attempt_at=record["scheduled_at"],
            request_body=record["request_body"],
            url=record["url"],
            secret=record["secret"],
        )

    async def enqueue_first(
        self,
        *,
        event: DomainEvent,
        subscription_id: UUID,
        now: datetime,
        sequence: int = 1,
    ) -> DeliveryAttempt | None:
        """Insert attempt 1 of *sequence*. Returns None if it already exists."""
        record = await self._fetchrow(
            """
            INSERT INTO webhook_delivery_attempts (
                event_id,
                subscription_id,
                event_type,
                sequence,
                attempt_number,
                status,
                request_body,
                scheduled_at
            )
            VALUES ($1, $2, $3, $4, 1, 'PENDING', $5, $6)
            ON CONFLICT ON CONSTRAINT webhook_delivery_attempts_sequence_uniq DO NOTHING
            RETURNING *
            """,
            event.event_id,
            subscription_id,
            event.type.value,
            sequence,
            event.wire_body(),
            now,
        )
        return self._to_model(record) if record is not None else None

    async def start_sequence(
        self,
        *,
        event: DomainEvent,
        subscription_id: UUID,
        now: datetime,
    ) -> DeliveryAttempt:
        """Open a fresh sequence (manual redelivery) independent of earlier history."""
        while True:
            record = await self._fetchrow(
                """
                SELECT COALESCE(MAX(sequence), 0) + 1 AS next_sequence
                FROM webhook_delivery_attempts
                WHERE event_id = $1 AND subscription_id = $2
                """,
                event.event_id,
                subscription_id,
            )
            sequence = int(record["next_sequence"]) if record else 1
            attempt = await self.enqueue_first(
                event=event, subscription_id=subscription_id, now=now, sequence=sequence
            )
            # a concurrent redelivery took this sequence number; take the next one
            if attempt is not None:
                return attempt

    async def claim_due(
        self,
        *,
        now: datetime,
        exclude_subscription_ids: Sequence[UUID] = (),
        limit: int = 1,
    ) -> List[DeliveryTask]:
        """
        Atomically claim due PENDING attempts of active subscriptions.

        Uses row-level locking (FOR UPDATE SKIP LOCKED) so concurrent workers
        never claim the same attempt; the claim is recorded in ``locked_at``.
        """
        async with self._transaction() as conn:
            records = await conn.fetch(
                """
                WITH cte AS (
                    SELECT a.id
                    FROM webhook_delivery_attempts a
                    JOIN webhook_subscriptions s ON s.id = a.subscription_id
                    WHERE a.status = 'PENDING'
                      AND a.locked_at IS NULL
                      AND a.scheduled_at <= $1
                      AND s.active = true
                      AND s.deleted_at IS NULL
                      AND NOT (a.subscription_id = ANY($2::uuid[]))
                    ORDER BY a.scheduled_at ASC, a.created_at ASC
                    FOR UPDATE OF a SKIP LOCKED
                    LIMIT $3
                )
                UPDATE webhook_delivery_attempts a
                SET locked_at = $1
                FROM cte, webhook_subscriptions s
                WHERE a.id = cte.id
                  AND s.id = a.subscription_id
                RETURNING a.*, s.url, s.secret
                """,
                now,
                list(exclude_subscription_ids),
                limit,
            )
        return [self._to_task(r) for r in records]

    async def record_outcome(
        self,
        task: DeliveryTask,
        outcome: AttemptOutcome,
        *,
        retry_policy: RetryPolicy,
    ) -> OutcomeResult:
        """Persist an attempt outcome and its consequences in one transaction.

        - FAILED inserts the next PENDING attempt of the same sequence.
        - SUCCESS resets the subscription failure streak.
        - EXHAUSTED extends the streak; once *retry_policy* says so it
          deactivates the subscription and appends an alert to the outbox.
        """
        async with self._transaction() as conn:
            await conn.execute(
                """
                UPDATE webhook_delivery_attempts
                SET status = $2,
                    http_status_code = $3,
                    response_snippet = $4,
                    error_message = $5,
                    error_kind = $6,
                    completed_at = $7,
                    locked_at = NULL
                WHERE id = $1
                """,
                task.attempt_id,
                outcome.status.value,
                outcome.http_status_code,
                outcome.response_snippet,
                outcome.error_message,
                outcome.error_kind.value if outcome.error_kind else None,
                outcome.completed_at,
            )

            next_attempt: DeliveryAttempt | None = None
            if outcome.status == DeliveryStatus.FAILED and outcome.next_attempt_at is not None:
                next_attempt = await self._insert_next_attempt(conn, task, outcome.next_attempt_at)

            if outcome.status == DeliveryStatus.SUCCESS:
                record = await conn.fetchrow(
                    """
                    UPDATE webhook_subscriptions
                    SET consecutive_failure_count = 0
                    WHERE id = $1
                    RETURNING consecutive_failure_count
                    """,
                    task.subscription_id,
                )
                return OutcomeResult(consecutive_failure_count=record["consecutive_failure_count"] if record else 0)

            if outcome.status == DeliveryStatus.EXHAUSTED:
                return await self._register_exhaustion(conn, task.subscription_id, retry_policy)

            record = await conn.fetchrow(
                "SELECT consecutive_failure_count FROM webhook_subscriptions WHERE id = $1",
                task.subscription_id,
            )
            return OutcomeResult(
                consecutive_failure_count=record["consecutive_failure_count"] if record else 0,
                next_attempt=next_attempt,
            )

    async def _insert_next_attempt(
        self, conn: Connection, task: DeliveryTask, scheduled_at: datetime
    ) -> DeliveryAttempt | None:
        record = await conn.fetchrow(
            """
            INSERT INTO webhook_delivery_attempts (
                event_id,
                subscription_id,
                event_type,
                sequence,
                attempt_number,
                status,
                request_body,
                scheduled_at
            )
            VALUES ($1, $2, $3, $4, $5, 'PENDING', $6, $7)
            ON CONFLICT ON CONSTRAINT webhook_delivery_attempts_sequence_uniq DO NOTHING
            RETURNING *
            """,
            task.event_id,
            task.subscription_id,
            task.event_type.value,
            task.sequence,
            task.attempt_number + 1,
            task.request_body,
            scheduled_at,
        )
        return self._to_model(record) if record is not None else None

    async def _register_exhaustion(
        self, conn: Connection, subscription_id: UUID, retry_policy: RetryPolicy
    ) -> OutcomeResult:
        record = await conn.fetchrow(
            """
            UPDATE webhook_subscriptions
            SET consecutive_failure_count = consecutive_failure_count + 1
            WHERE id = $1
            RETURNING consecutive_failure_count, active, url
            """,
            subscription_id,
        )
        if record is None:
            return OutcomeResult(consecutive_failure_count=0)
        count = int(record["consecutive_failure_count"])
        if not retry_policy.should_deactivate(count) or not record["active"]:
            return OutcomeResult(consecutive_failure_count=count)

        await conn.execute(
            """
            UPDATE webhook_subscriptions
            SET active = false,
                deactivated_at = now(),
                updated_at = now()
            WHERE id = $1
            """,
            subscription_id,
        )
        alert = build_deactivation_alert(
            subscription_id=subscription_id,
            url=record["url"],
            consecutive_failure_count=count,
            threshold=retry_policy.failure_deactivation_threshold,
        )
        await conn.execute(
            _OUTBOX_INSERT_SQL,
            alert.event_id,
            alert.type.value,
            alert.aggregate_id,
            alert.payload_json(),
            alert.occurred_at,
            False,
        )
        return OutcomeResult(consecutive_failure_count=count, deactivated=True)

    async def list_by_subscription(
        self,
        subscription_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[DeliveryAttempt], int]:
        where = ["subscription_id = $1"]
        values: list[Any] = [subscription_id]
        idx = 2
        if status is not None:
            where.append(f"status = ${idx}")
            values.append(status.value)
            idx += 1
        where_sql = " AND ".join(where)
        query = f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_delivery_attempts
            WHERE {where_sql}
            ORDER BY created_at DESC, attempt_number DESC
            LIMIT ${idx} OFFSET ${idx + 1}
        """
        values.extend([limit, offset])
        records = await self._fetch(query, *values)
        items: List[DeliveryAttempt] = []
        total: int | None = None
        for rec in records:
            total_value = rec["total_count"]
            if total_value is not None:
                total = int(total_value)
            items.append(self._to_model(rec))
        if total is None:
            record = await self._fetchrow(
                f"SELECT COUNT(*) AS total FROM webhook_delivery_attempts WHERE {where_sql}",
                *values[: idx - 1],
            )
            total = int(record["total"]) if record else 0
        return items, total

    async def list_for_pair(self, event_id: UUID, subscription_id: UUID) -> List[DeliveryAttempt]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_delivery_attempts
            WHERE event_id = $1 AND subscription_id = $2
            ORDER BY sequence ASC, attempt_number ASC
            """,
            event_id,
            subscription_id,
        )
        return [self._to_model(r) for r in records]

    async def latest_for_pair(self, event_id: UUID, subscription_id: UUID) -> DeliveryAttempt | None:
        record = await self._fetchrow(
            """
            SELECT *
            FROM webhook_delivery_attempts
            WHERE event_id = $1 AND subscription_id = $2
            ORDER BY sequence DESC, attempt_number DESC
            LIMIT 1
            """,
            event_id,
            subscription_id,
        )
        return self._to_model(record) if record is not None else None

    async def statistics(self, subscription_id: UUID) -> DeliveryStatistics:
        record = await self._fetchrow(
            """
            SELECT COUNT(*) AS total_attempts,
                   COUNT(*) FILTER (WHERE status = 'PENDING') AS pending,
                   COUNT(*) FILTER (WHERE status = 'SUCCESS') AS succeeded,
                   COUNT(*) FILTER (WHERE status = 'FAILED') AS failed,
                   COUNT(*) FILTER (WHERE status = 'EXHAUSTED') AS exhausted,
                   MAX(completed_at) AS last_attempt_at,
                   MAX(completed_at) FILTER (WHERE status = 'SUCCESS') AS last_success_at
            FROM webhook_delivery_attempts
            WHERE subscription_id = $1
            """,
            subscription_id,
        )
        assert record is not None
        return build_statistics(subscription_id, dict(record))

    async def reclaim_stuck(self, locked_before: datetime) -> int:
        """Release claims older than *locked_before* (worker died mid-flight).

        Returns the number of released attempts.
        """
        result = await self._execute(
            """
            UPDATE webhook_delivery_attempts
            SET locked_at = NULL
            WHERE status = 'PENDING'
              AND locked_at IS NOT NULL
              AND locked_at < $1
            """,
            locked_before,
        )
        return self._affected(result)


def build_statistics(subscription_id: UUID, counts: dict[str, Any]) -> DeliveryStatistics:
    succeeded = int(counts.get("succeeded") or 0)
    failed = int(counts.get("failed") or 0)
    exhausted = int(counts.get("exhausted") or 0)
    completed = succeeded + failed + exhausted
    return DeliveryStatistics(
        subscription_id=subscription_id,
        total_attempts=int(counts.get("total_attempts") or 0),
        pending=int(counts.get("pending") or 0),
        succeeded=succeeded,
        failed=failed,
        exhausted=exhausted,
        success_rate=(succeeded / completed) if completed else 0.0,
        last_attempt_at=counts.get("last_attempt_at"),
        last_success_at=counts.get("last_success_at"),
    )
