"""Checksum-tracked SQL migrations (``schema_migrations`` table)."""
from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List

import asyncpg  # type: ignore[import-untyped]
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_MIGRATIONS_PATHS = (
    Path(__file__).resolve().parents[3] / "migrations",  # repository checkout
    Path("/app/migrations"),  # container image
)


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    sql: str
    checksum: str


def find_migrations_dir(possible_paths: Iterable[Path] = DEFAULT_MIGRATIONS_PATHS) -> Path | None:
    for path in possible_paths:
        if path.exists():
            return path
    return None


def load_migrations(directory: Path) -> List[Migration]:
    if not directory.exists():
        raise FileNotFoundError(f"Migrations directory does not exist: {directory}")
    seen: Dict[str, Migration] = {}
    for path in sorted(directory.glob("*.sql")):
        version = path.stem
        if version in seen:
            raise ValueError(f"Duplicate migration version detected: {version}")
        sql = path.read_text(encoding="utf-8")
        seen[version] = Migration(
            version=version,
            path=path,
            sql=sql,
            checksum=hashlib.sha256(sql.encode("utf-8")).hexdigest(),
        )
    return list(seen.values())


async def ensure_schema_table(conn: asyncpg.Connection) -> None:
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version text PRIMARY KEY,
            checksum text NOT NULL,
            applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )


async def pending_migrations(conn: asyncpg.Connection, migrations: List[Migration]) -> List[Migration]:
    """Migrations not yet applied. Raises if an applied file was edited afterwards."""
    await ensure_schema_table(conn)
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}
    pending: List[Migration] = []
    for migration in migrations:
        if migration.version in applied:
            if applied[migration.version] != migration.checksum:
                raise RuntimeError(
                    f"Checksum mismatch for {migration.version}: "
                    f"{applied[migration.version]} (db) != {migration.checksum} (file)"
                )
            continue
        pending.append(migration)
    return pending


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    async with conn.transaction():
        await conn.execute(migration.sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
            migration.version,
            migration.checksum,
        )


async def _connect_with_retry(database_url: str, *, retries: int, retry_delay: float) -> asyncpg.Connection:
    for attempt in range(1, retries + 1):
        try:
            return await asyncpg.connect(database_url)
        except (OSError, asyncpg.PostgresError) as exc:
            if attempt == retries:
                raise
            logger.warning(
                "migrations database not reachable",
                attempt=attempt,
                retries=retries,
                error=str(exc),
            )
            await asyncio.sleep(retry_delay)
    raise RuntimeError("unreachable")


async def apply_pending_migrations(
    database_url: str,
    migrations_dir: Path | None = None,
    *,
    retries: int = 5,
    retry_delay: float = 2.0,
) -> int:
    """Apply pending migrations on startup. Returns how many were applied."""
    directory = migrations_dir or find_migrations_dir()
    if directory is None:
        logger.warning("migrations directory not found, skipping", tried=[str(p) for p in DEFAULT_MIGRATIONS_PATHS])
        return 0
    migrations = load_migrations(directory)
    if not migrations:
        logger.warning("no migrations found, skipping", directory=str(directory))
        return 0

    conn = await _connect_with_retry(database_url, retries=retries, retry_delay=retry_delay)
    try:
        pending = await pending_migrations(conn, migrations)
        for migration in pending:
            logger.info("applying migration", version=migration.version)
            await apply_migration(conn, migration)
        logger.info("migrations up to date", applied=len(pending))
        return len(pending)
    finally:
        await conn.close()
