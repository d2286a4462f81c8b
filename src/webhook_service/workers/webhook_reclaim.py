"""Worker: release delivery tasks whose claim outlived the worker holding it."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any


async def webhook_reclaim_stuck(now: datetime, *, attempts: Any, stuck_minutes: int) -> str | None:
    """Release PENDING attempts claimed more than ``stuck_minutes`` ago."""
    cutoff = now - timedelta(minutes=stuck_minutes)
    reclaimed = await attempts.reclaim_stuck(cutoff)
    return f"reclaimed={reclaimed}" if reclaimed else None
