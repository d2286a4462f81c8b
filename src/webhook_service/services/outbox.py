"""Outbox poller: forwards unprocessed domain events to the dispatcher."""
from __future__ import annotations

import asyncio
from typing import Any

import structlog
from aiohttp import web

from webhook_service.core.exceptions import InternalSchedulingError
from webhook_service.domain.events import DomainEvent
from webhook_service.services.dispatcher import DeliveryDispatcher

logger = structlog.get_logger(__name__)


async def record_event(outbox_repository: Any, event: DomainEvent, *, conn: Any = None) -> None:
    """Write-side entry point for producers.

    Pass the connection of the business transaction so the event is
    committed together with the mutation that caused it.
    """
    await outbox_repository.append(event, conn=conn)


class OutboxPoller:
    """Reads unprocessed events in ``occurred_at`` order, dispatches, marks processed.

    An event is marked processed only after its delivery tasks are stored,
    so a crash between the two re-dispatches it and the enqueue dedup absorbs
    the repeat.
    """

    def __init__(
        self,
        outbox_repository: Any,
        dispatcher: DeliveryDispatcher,
        *,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        self._outbox = outbox_repository
        self._dispatcher = dispatcher
        self._batch_size = batch_size
        self._poll_interval = poll_interval_seconds
        self._task: asyncio.Task[None] | None = None

    async def poll_once(self) -> int:
        """Run one cycle. Returns the number of events marked processed.

        Stops at the first event that cannot be scheduled; that event and
        everything after it stay unprocessed for the next cycle.
        """
        events = await self._outbox.fetch_unprocessed(limit=self._batch_size)
        processed = 0
        for event in events:
            try:
                await self._dispatcher.dispatch(event)
            except InternalSchedulingError:
                logger.exception(
                    "outbox_poller dispatch failed",
                    event_id=str(event.event_id),
                    event_type=event.type.value,
                )
                break
            await self._outbox.mark_processed(event.event_id)
            processed += 1
        return processed

    async def start(self, _app: web.Application | None = None) -> None:
        """Create the polling task. Register with ``app.on_startup``."""
        self._task = asyncio.create_task(self._loop(), name="outbox-poller")

    async def stop(self, _app: web.Application | None = None) -> None:
        """Cancel the polling task. Register with ``app.on_cleanup``."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        logger.info(
            "outbox_poller started",
            batch_size=self._batch_size,
            poll_interval_seconds=self._poll_interval,
        )
        while True:
            try:
                processed = await self.poll_once()
                if processed:
                    logger.info("outbox_poller cycle completed", processed=processed)
                # drain a full batch without waiting
                if processed >= self._batch_size:
                    continue
                await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                logger.info("outbox_poller stopped")
                raise
            except Exception:
                logger.exception("outbox_poller cycle failed")
                await asyncio.sleep(self._poll_interval)
