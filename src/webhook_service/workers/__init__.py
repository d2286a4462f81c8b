"""Maintenance tasks run by :class:`webhook_service.worker.BackgroundWorker`.

Each worker module exports a single async task function; repositories and
thresholds are bound here with :func:`functools.partial`.
"""
from __future__ import annotations

from functools import partial

from webhook_service.repositories.storage import Storage
from webhook_service.settings import Settings
from webhook_service.worker import BackgroundWorker, WorkerTask
from webhook_service.workers.outbox_archive import outbox_archive
from webhook_service.workers.webhook_reclaim import webhook_reclaim_stuck


def create_background_worker(storage: Storage, settings: Settings) -> BackgroundWorker:
    return BackgroundWorker(
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(
                name="webhook_reclaim_stuck",
                fn=partial(
                    webhook_reclaim_stuck,
                    attempts=storage.attempts,
                    stuck_minutes=settings.webhook_stuck_minutes,
                ),
            ),
            WorkerTask(
                name="outbox_archive",
                fn=partial(
                    outbox_archive,
                    outbox=storage.outbox,
                    retention_days=settings.outbox_retention_days,
                ),
            ),
        ],
    )


__all__ = [
    "create_background_worker",
    "outbox_archive",
    "webhook_reclaim_stuck",
]
