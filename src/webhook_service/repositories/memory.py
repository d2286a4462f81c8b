"""In-memory repositories for development and tests (STORAGE_BACKEND=memory).

They mirror the asyncpg repositories method for method. A single
``asyncio.Lock`` on :class:`MemoryDatabase` stands in for row locking, so
claims and outcome writes are exclusive exactly as in PostgreSQL. Nothing is
persisted across restarts.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence, Tuple
from uuid import UUID, uuid4

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.events import DomainEvent, build_deactivation_alert
from webhook_service.domain.models import (
    AttemptOutcome,
    DeliveryAttempt,
    DeliveryStatistics,
    DeliveryTask,
    OutcomeResult,
    WebhookSubscription,
)
from webhook_service.repositories.attempts import build_statistics
from webhook_service.services.retry import RetryPolicy


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _OutboxRow:
    seq: int
    event: DomainEvent
    processed: bool = False
    processed_at: datetime | None = None


@dataclass
class MemoryDatabase:
    outbox: Dict[UUID, _OutboxRow] = field(default_factory=dict)
    archive: Dict[UUID, _OutboxRow] = field(default_factory=dict)
    subscriptions: Dict[UUID, WebhookSubscription] = field(default_factory=dict)
    attempts: Dict[UUID, DeliveryAttempt] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _seq: int = 0

    def next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def insert_outbox(self, event: DomainEvent, *, processed: bool = False) -> None:
        if event.event_id in self.outbox or event.event_id in self.archive:
            return
        self.outbox[event.event_id] = _OutboxRow(
            seq=self.next_seq(),
            event=event,
            processed=processed,
            processed_at=_utcnow() if processed else None,
        )


class InMemoryOutboxRepository:
    def __init__(self, db: MemoryDatabase):
        self._db = db

    async def append(self, event: DomainEvent, *, conn: Any = None, processed: bool = False) -> None:
        async with self._db.lock:
            self._db.insert_outbox(event, processed=processed)

    async def fetch_unprocessed(self, *, limit: int = 100) -> List[DomainEvent]:
        async with self._db.lock:
            rows = [row for row in self._db.outbox.values() if not row.processed]
        rows.sort(key=lambda row: (row.event.occurred_at, row.seq))
        return [row.event for row in rows[:limit]]

    async def mark_processed(self, event_id: UUID) -> None:
        async with self._db.lock:
            row = self._db.outbox.get(event_id)
            if row is not None and not row.processed:
                row.processed = True
                row.processed_at = _utcnow()

    async def get_event(self, event_id: UUID) -> DomainEvent:
        async with self._db.lock:
            row = self._db.outbox.get(event_id) or self._db.archive.get(event_id)
        if row is None:
            raise NotFoundError("Domain event not found")
        return row.event

    async def archive_processed(self, processed_before: datetime) -> int:
        async with self._db.lock:
            expired = [
                event_id
                for event_id, row in self._db.outbox.items()
                if row.processed and row.processed_at is not None and row.processed_at < processed_before
            ]
            for event_id in expired:
                self._db.archive[event_id] = self._db.outbox.pop(event_id)
        return len(expired)


class InMemorySubscriptionRepository:
    def __init__(self, db: MemoryDatabase):
        self._db = db

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
        now = _utcnow()
        subscription = WebhookSubscription(
            id=uuid4(),
            name=name,
            description=description,
            url=url,
            secret=secret,
            event_types=list(event_types),
            active=active,
            created_at=now,
            updated_at=now,
            deactivated_at=None if active else now,
        )
        async with self._db.lock:
            self._db.subscriptions[subscription.id] = subscription
        return subscription

    def _get_locked(self, subscription_id: UUID) -> WebhookSubscription:
        subscription = self._db.subscriptions.get(subscription_id)
        if subscription is None or subscription.deleted_at is not None:
            raise NotFoundError("Webhook subscription not found")
        return subscription

    async def get(self, subscription_id: UUID) -> WebhookSubscription:
        async with self._db.lock:
            return self._get_locked(subscription_id)

    async def list_all(self, *, limit: int = 50, offset: int = 0) -> Tuple[List[WebhookSubscription], int]:
        async with self._db.lock:
            visible = [s for s in self._db.subscriptions.values() if s.deleted_at is None]
        visible.sort(key=lambda s: s.created_at, reverse=True)
        return visible[offset : offset + limit], len(visible)

    async def update(self, subscription_id: UUID, changes: dict[str, Any]) -> WebhookSubscription:
        async with self._db.lock:
            current = self._get_locked(subscription_id)
            now = _utcnow()
            patch: dict[str, Any] = {
                key: value
                for key, value in changes.items()
                if key in ("name", "description", "url", "secret", "event_types", "active")
            }
            if "active" in patch:
                if patch["active"]:
                    if not current.active:
                        patch["consecutive_failure_count"] = 0
                    patch["deactivated_at"] = None
                else:
                    patch["deactivated_at"] = current.deactivated_at or now
            patch["updated_at"] = now
            updated = current.model_copy(update=patch)
            self._db.subscriptions[subscription_id] = updated
            return updated

    async def soft_delete(self, subscription_id: UUID) -> None:
        async with self._db.lock:
            current = self._get_locked(subscription_id)
            now = _utcnow()
            self._db.subscriptions[subscription_id] = current.model_copy(
                update={
                    "deleted_at": now,
                    "active": False,
                    "deactivated_at": current.deactivated_at or now,
                    "updated_at": now,
                }
            )

    async def list_active_matching(self, event_type: str) -> List[WebhookSubscription]:
        async with self._db.lock:
            matching = [
                s
                for s in self._db.subscriptions.values()
                if s.active and s.deleted_at is None and s.matches(event_type)
            ]
        matching.sort(key=lambda s: s.created_at)
        return matching


class InMemoryDeliveryAttemptRepository:
    def __init__(self, db: MemoryDatabase):
        self._db = db

    def _pair(self, event_id: UUID, subscription_id: UUID) -> List[DeliveryAttempt]:
        return [
            a
            for a in self._db.attempts.values()
            if a.event_id == event_id and a.subscription_id == subscription_id
        ]

    def _insert_locked(
        self,
        *,
        event_id: UUID,
        subscription_id: UUID,
        event_type: Any,
        sequence: int,
        attempt_number: int,
        request_body: str,
        scheduled_at: datetime,
    ) -> DeliveryAttempt | None:
        for existing in self._pair(event_id, subscription_id):
            if existing.sequence == sequence and existing.attempt_number == attempt_number:
                return None
        attempt = DeliveryAttempt(
            id=uuid4(),
            event_id=event_id,
            subscription_id=subscription_id,
            event_type=event_type,
            sequence=sequence,
            attempt_number=attempt_number,
            status=DeliveryStatus.PENDING,
            request_body=request_body,
            scheduled_at=scheduled_at,
            created_at=_utcnow(),
        )
        self._db.attempts[attempt.id] = attempt
        return attempt

    async def enqueue_first(
        self,
        *,
        event: DomainEvent,
        subscription_id: UUID,
        now: datetime,
        sequence: int = 1,
    ) -> DeliveryAttempt | None:
        async with self._db.lock:
            return self._insert_locked(
                event_id=event.event_id,
                subscription_id=subscription_id,
                event_type=event.type,
                sequence=sequence,
                attempt_number=1,
                request_body=event.wire_body(),
                scheduled_at=now,
            )

    async def start_sequence(
        self,
        *,
        event: DomainEvent,
        subscription_id: UUID,
        now: datetime,
    ) -> DeliveryAttempt:
        async with self._db.lock:
            sequence = max((a.sequence for a in self._pair(event.event_id, subscription_id)), default=0) + 1
            attempt = self._insert_locked(
                event_id=event.event_id,
                subscription_id=subscription_id,
                event_type=event.type,
                sequence=sequence,
                attempt_number=1,
                request_body=event.wire_body(),
                scheduled_at=now,
            )
        assert attempt is not None
        return attempt

    async def claim_due(
        self,
        *,
        now: datetime,
        exclude_subscription_ids: Sequence[UUID] = (),
        limit: int = 1,
    ) -> List[DeliveryTask]:
        excluded = set(exclude_subscription_ids)
        async with self._db.lock:
            candidates = []
            for attempt in self._db.attempts.values():
                if attempt.status != DeliveryStatus.PENDING or attempt.locked_at is not None:
                    continue
                if attempt.scheduled_at > now or attempt.subscription_id in excluded:
                    continue
                subscription = self._db.subscriptions.get(attempt.subscription_id)
                if subscription is None or not subscription.active or subscription.deleted_at is not None:
                    continue
                candidates.append((attempt, subscription))
            candidates.sort(key=lambda pair: (pair[0].scheduled_at, pair[0].created_at))

            tasks: List[DeliveryTask] = []
            for attempt, subscription in candidates[:limit]:
                self._db.attempts[attempt.id] = attempt.model_copy(update={"locked_at": now})
                tasks.append(
                    DeliveryTask(
                        attempt_id=attempt.id,
                        subscription_id=attempt.subscription_id,
                        event_id=attempt.event_id,
                        event_type=attempt.event_type,
                        sequence=attempt.sequence,
                        attempt_number=attempt.attempt_number,
                        next_attempt_at=attempt.scheduled_at,
                        request_body=attempt.request_body,
                        url=subscription.url,
                        secret=subscription.secret,
                    )
                )
            return tasks

    async def record_outcome(
        self,
        task: DeliveryTask,
        outcome: AttemptOutcome,
        *,
        retry_policy: RetryPolicy,
    ) -> OutcomeResult:
        async with self._db.lock:
            attempt = self._db.attempts[task.attempt_id]
            self._db.attempts[attempt.id] = attempt.model_copy(
                update={
                    "status": outcome.status,
                    "http_status_code": outcome.http_status_code,
                    "response_snippet": outcome.response_snippet,
                    "error_message": outcome.error_message,
                    "error_kind": outcome.error_kind,
                    "completed_at": outcome.completed_at,
                    "locked_at": None,
                }
            )

            next_attempt: DeliveryAttempt | None = None
            if outcome.status == DeliveryStatus.FAILED and outcome.next_attempt_at is not None:
                next_attempt = self._insert_locked(
                    event_id=task.event_id,
                    subscription_id=task.subscription_id,
                    event_type=task.event_type,
                    sequence=task.sequence,
                    attempt_number=task.attempt_number + 1,
                    request_body=task.request_body,
                    scheduled_at=outcome.next_attempt_at,
                )

            subscription = self._db.subscriptions.get(task.subscription_id)
            if subscription is None:
                return OutcomeResult(consecutive_failure_count=0, next_attempt=next_attempt)

            if outcome.status == DeliveryStatus.SUCCESS:
                self._db.subscriptions[subscription.id] = subscription.model_copy(
                    update={"consecutive_failure_count": 0}
                )
                return OutcomeResult(consecutive_failure_count=0)

            if outcome.status != DeliveryStatus.EXHAUSTED:
                return OutcomeResult(
                    consecutive_failure_count=subscription.consecutive_failure_count,
                    next_attempt=next_attempt,
                )

            count = subscription.consecutive_failure_count + 1
            if not retry_policy.should_deactivate(count) or not subscription.active:
                self._db.subscriptions[subscription.id] = subscription.model_copy(
                    update={"consecutive_failure_count": count}
                )
                return OutcomeResult(consecutive_failure_count=count)

            now = _utcnow()
            self._db.subscriptions[subscription.id] = subscription.model_copy(
                update={
                    "consecutive_failure_count": count,
                    "active": False,
                    "deactivated_at": now,
                    "updated_at": now,
                }
            )
            self._db.insert_outbox(
                build_deactivation_alert(
                    subscription_id=subscription.id,
                    url=subscription.url,
                    consecutive_failure_count=count,
                    threshold=retry_policy.failure_deactivation_threshold,
                )
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
        async with self._db.lock:
            rows = [
                a
                for a in self._db.attempts.values()
                if a.subscription_id == subscription_id and (status is None or a.status == status)
            ]
        rows.sort(key=lambda a: (a.created_at, a.attempt_number), reverse=True)
        return rows[offset : offset + limit], len(rows)

    async def list_for_pair(self, event_id: UUID, subscription_id: UUID) -> List[DeliveryAttempt]:
        async with self._db.lock:
            rows = self._pair(event_id, subscription_id)
        return sorted(rows, key=lambda a: (a.sequence, a.attempt_number))

    async def latest_for_pair(self, event_id: UUID, subscription_id: UUID) -> DeliveryAttempt | None:
        rows = await self.list_for_pair(event_id, subscription_id)
        return rows[-1] if rows else None

    async def statistics(self, subscription_id: UUID) -> DeliveryStatistics:
        async with self._db.lock:
            rows = [a for a in self._db.attempts.values() if a.subscription_id == subscription_id]
        completed = [a.completed_at for a in rows if a.completed_at is not None]
        successes = [
            a.completed_at for a in rows if a.status == DeliveryStatus.SUCCESS and a.completed_at is not None
        ]
        return build_statistics(
            subscription_id,
            {
                "total_attempts": len(rows),
                "pending": sum(1 for a in rows if a.status == DeliveryStatus.PENDING),
                "succeeded": sum(1 for a in rows if a.status == DeliveryStatus.SUCCESS),
                "failed": sum(1 for a in rows if a.status == DeliveryStatus.FAILED),
                "exhausted": sum(1 for a in rows if a.status == DeliveryStatus.EXHAUSTED),
                "last_attempt_at": max(completed, default=None),
                "last_success_at": max(successes, default=None),
            },
        )

    async def reclaim_stuck(self, locked_before: datetime) -> int:
        released = 0
        async with self._db.lock:
            for attempt in list(self._db.attempts.values()):
                if (
                    attempt.status == DeliveryStatus.PENDING
                    and attempt.locked_at is not None
                    and attempt.locked_at < locked_before
                ):
                    self._db.attempts[attempt.id] = attempt.model_copy(update={"locked_at": None})
                    released += 1
        return released
