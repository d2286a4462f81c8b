"""Worker: move processed outbox rows past retention into the archive."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any


async def outbox_archive(now: datetime, *, outbox: Any, retention_days: int) -> str | None:
    cutoff = now - timedelta(days=retention_days)
    archived = await outbox.archive_processed(cutoff)
    return f"archived={archived}" if archived else None
