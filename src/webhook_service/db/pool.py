"""Asyncpg connection pool helpers."""
from __future__ import annotations

from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
import structlog

logger = structlog.get_logger(__name__)


class SettingsProtocol(Protocol):
    database_url: Any
    db_pool_size: int


async def create_pool(settings: SettingsProtocol) -> asyncpg.Pool:
    """Open the service pool. The caller owns it and closes it on shutdown."""
    pool = await asyncpg.create_pool(dsn=str(settings.database_url), max_size=settings.db_pool_size)
    logger.info("db_pool created", max_size=settings.db_pool_size)
    return pool


async def close_pool(pool: asyncpg.Pool | None) -> None:
    if pool is not None:
        await pool.close()
        logger.info("db_pool closed")
