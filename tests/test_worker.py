"""Unit tests for webhook_service.worker.BackgroundWorker.

These are pure async tests: no database or aiohttp test server required.
"""
from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from aiohttp import web

from webhook_service.worker import BackgroundWorker, WorkerTask


@pytest.mark.asyncio
async def test_worker_runs_tasks():
    """Worker should call each task function with a UTC datetime."""
    called_with: list[datetime] = []

    async def task_fn(now: datetime) -> str | None:
        called_with.append(now)
        return "ok"

    worker = BackgroundWorker(interval_seconds=0.05, tasks=[WorkerTask(name="test_task", fn=task_fn)])

    app = web.Application()
    await worker.start(app)
    await asyncio.sleep(0.2)
    await worker.stop(app)

    assert len(called_with) >= 2
    for dt in called_with:
        assert dt.tzinfo is not None


@pytest.mark.asyncio
async def test_worker_task_failure_does_not_stop_others():
    good_count = 0

    async def bad_task(now: datetime) -> str | None:
        raise RuntimeError("boom")

    async def good_task(now: datetime) -> str | None:
        nonlocal good_count
        good_count += 1
        return None

    worker = BackgroundWorker(
        interval_seconds=0.05,
        tasks=[WorkerTask(name="bad", fn=bad_task), WorkerTask(name="good", fn=good_task)],
    )

    await worker.start()
    await asyncio.sleep(0.2)
    await worker.stop()

    assert good_count >= 2, "good_task should keep running despite bad_task failures"


@pytest.mark.asyncio
async def test_run_once_reports_successful_summaries():
    async def noisy(now: datetime) -> str | None:
        return "done=1"

    async def broken(now: datetime) -> str | None:
        raise ValueError("nope")

    worker = BackgroundWorker(tasks=[WorkerTask(name="noisy", fn=noisy), WorkerTask(name="broken", fn=broken)])
    assert await worker.run_once() == {"noisy": "done=1"}


@pytest.mark.asyncio
async def test_worker_stop_without_start_is_noop():
    worker = BackgroundWorker(interval_seconds=0.05)
    await worker.stop()
