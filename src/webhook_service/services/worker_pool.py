"""Delivery worker pool: claims due tasks, sends them, persists the outcome."""
from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, List
from uuid import UUID

import structlog
from aiohttp import web

from webhook_service.core.exceptions import DeliveryError
from webhook_service.domain.enums import DeliveryStatus, ErrorKind
from webhook_service.domain.models import AttemptOutcome, DeliveryTask, OutcomeResult
from webhook_service.services.delivery import WebhookSender
from webhook_service.services.dispatcher import Clock, utcnow
from webhook_service.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)


class DeliveryWorkerPool:
    """Fixed set of asyncio workers polling the attempt queue.

    Each worker loops over :meth:`run_once`; when nothing is due it sleeps
    for ``poll_interval_seconds``. A subscription with
    ``per_subscription_limit`` tasks in flight is left out of claims until
    one of them finishes.

    Lifecycle is managed through :meth:`start` / :meth:`stop` which are
    compatible with ``app.on_startup`` / ``app.on_cleanup``.
    """

    def __init__(
        self,
        attempt_repository: Any,
        sender: WebhookSender,
        retry_policy: RetryPolicy,
        *,
        worker_count: int = 1,
        per_subscription_limit: int = 5,
        poll_interval_seconds: float = 1.0,
        shutdown_grace_seconds: float = 5.0,
        clock: Clock = utcnow,
    ):
        self._attempts = attempt_repository
        self._sender = sender
        self._retry = retry_policy
        self._worker_count = worker_count
        self._per_subscription_limit = per_subscription_limit
        self._poll_interval = poll_interval_seconds
        self._shutdown_grace = shutdown_grace_seconds
        self._clock = clock
        self._in_flight: Counter[UUID] = Counter()
        self._claim_lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task[None]] = []

    @property
    def in_flight(self) -> dict[UUID, int]:
        return {key: value for key, value in self._in_flight.items() if value > 0}

    async def start(self, _app: web.Application | None = None) -> None:
        """Spawn the workers. Register with ``app.on_startup``."""
        await self._sender.start()
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"webhook-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info(
            "webhook_worker_pool started",
            workers=self._worker_count,
            per_subscription_limit=self._per_subscription_limit,
            poll_interval_seconds=self._poll_interval,
        )

    async def stop(self, _app: web.Application | None = None) -> None:
        """Let workers finish their current task, then cancel. Register with ``app.on_cleanup``."""
        self._stopping.set()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self._shutdown_grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks = []
        await self._sender.close()
        logger.info("webhook_worker_pool stopped")

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("webhook_worker iteration failed", worker=index)
                processed = False
            if processed:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _claim(self) -> DeliveryTask | None:
        async with self._claim_lock:
            saturated = [
                subscription_id
                for subscription_id, count in self._in_flight.items()
                if count >= self._per_subscription_limit
            ]
            tasks = await self._attempts.claim_due(
                now=self._clock(), exclude_subscription_ids=saturated, limit=1
            )
            if not tasks:
                return None
            task = tasks[0]
            self._in_flight[task.subscription_id] += 1
            return task

    async def run_once(self) -> bool:
        """Claim and process at most one due task. Returns False when nothing was due."""
        task = await self._claim()
        if task is None:
            return False
        try:
            await self.process(task)
        finally:
            self._in_flight[task.subscription_id] -= 1
            if self._in_flight[task.subscription_id] <= 0:
                del self._in_flight[task.subscription_id]
        return True

    async def run_until_idle(self, *, max_tasks: int = 1000) -> int:
        """Process due tasks until none is left. Returns how many were processed."""
        processed = 0
        while processed < max_tasks and await self.run_once():
            processed += 1
        return processed

    def _outcome_for(self, task: DeliveryTask, error: DeliveryError) -> AttemptOutcome:
        completed_at = self._clock()
        next_attempt_at = self._retry.next_attempt_at(task.attempt_number, completed_at)
        return AttemptOutcome(
            status=DeliveryStatus.FAILED if next_attempt_at is not None else DeliveryStatus.EXHAUSTED,
            completed_at=completed_at,
            http_status_code=error.status_code,
            response_snippet=error.body,
            error_message=str(error),
            error_kind=ErrorKind(error.kind),
            next_attempt_at=next_attempt_at,
        )

    async def process(self, task: DeliveryTask) -> OutcomeResult:
        log = logger.bind(
            subscription_id=str(task.subscription_id),
            event_id=str(task.event_id),
            event_type=task.event_type.value,
            sequence=task.sequence,
            attempt=task.attempt_number,
        )
        try:
            status_code, snippet = await self._sender.send(task)
        except DeliveryError as exc:
            outcome = self._outcome_for(task, exc)
        else:
            outcome = AttemptOutcome(
                status=DeliveryStatus.SUCCESS,
                completed_at=self._clock(),
                http_status_code=status_code,
                response_snippet=snippet,
            )

        result = await self._attempts.record_outcome(
            task, outcome, retry_policy=self._retry
        )

        if outcome.status == DeliveryStatus.SUCCESS:
            log.info("webhook_delivery succeeded", status=outcome.status.value, http_status=outcome.http_status_code)
        elif outcome.status == DeliveryStatus.FAILED:
            log.info(
                "webhook_delivery failed",
                status=outcome.status.value,
                http_status=outcome.http_status_code,
                error=outcome.error_message,
                error_kind=outcome.error_kind.value if outcome.error_kind else None,
                next_attempt_at=outcome.next_attempt_at.isoformat() if outcome.next_attempt_at else None,
            )
        else:
            log.warning(
                "webhook_delivery exhausted",
                status=outcome.status.value,
                http_status=outcome.http_status_code,
                error=outcome.error_message,
                consecutive_failures=result.consecutive_failure_count,
            )
        if result.deactivated:
            log.warning(
                "webhook_subscription deactivated",
                consecutive_failures=result.consecutive_failure_count,
                threshold=self._retry.failure_deactivation_threshold,
            )
        return result
