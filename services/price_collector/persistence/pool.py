"""
Database Connection Pool

asyncpg pool shared by the snapshot, priority, run and gap-queue
repositories. Sessions run in UTC so bucket timestamps round-trip unchanged.
"""

import logging
import re
from pathlib import Path
from typing import Optional

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).parent / "schema_postgres.sql"

# Tables that must exist after schema initialization
REQUIRED_TABLES = (
    "price_snapshots_minute",
    "price_snapshots_hour",
    "price_snapshots_day",
    "price_snapshots_week",
    "price_snapshots_month",
    "asset_priorities",
    "collection_runs",
    "gap_queue",
)


def split_statements(schema_sql: str) -> list[str]:
    """Strip SQL comments and split a schema script into statements."""
    schema_sql = re.sub(r"--[^\n]*", "", schema_sql)
    schema_sql = re.sub(r"/\*.*?\*/", "", schema_sql, flags=re.DOTALL)
    return [s.strip() for s in schema_sql.split(";") if s.strip()]


class DatabasePool:
    """
    Thin wrapper over asyncpg.Pool.

    Every query helper raises RuntimeError until connect() has run, so a
    misconfigured service fails on first use instead of hanging.

    Usage:
        pool = DatabasePool()
        await pool.connect(database_url)
        runs = await pool.fetch("SELECT run_id FROM collection_runs LIMIT 10")
        await pool.close()
    """

    def __init__(self):
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(
        self,
        database_url: str,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30.0,
    ) -> None:
        """
        Open the pool.

        Args:
            database_url: PostgreSQL connection string
            min_size: Connections kept open
            max_size: Upper bound on concurrent connections
            command_timeout: Per-statement timeout in seconds
        """
        if self._pool is not None:
            logger.warning("Pool already connected")
            return

        self._pool = await asyncpg.create_pool(
            database_url,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
            server_settings={"timezone": "UTC"},
        )
        logger.info(f"Database pool created (min={min_size}, max={max_size}, timeout={command_timeout}s)")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")

    def _require(self) -> asyncpg.Pool:
        if not self._pool:
            raise RuntimeError("Database pool not connected")
        return self._pool

    def acquire(self):
        """Connection context manager, for transactions spanning several statements."""
        return self._require().acquire()

    async def execute(self, query: str, *args) -> str:
        """Run a statement; returns the status string (e.g. "DELETE 12")."""
        return await self._require().execute(query, *args)

    async def fetch(self, query: str, *args) -> list:
        return await self._require().fetch(query, *args)

    async def fetchrow(self, query: str, *args):
        return await self._require().fetchrow(query, *args)

    async def fetchval(self, query: str, *args):
        return await self._require().fetchval(query, *args)

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def check_health(self) -> bool:
        """True if the pool is open and answers a trivial query."""
        if not self._pool:
            return False
        try:
            await self._pool.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def initialize_schema(self) -> bool:
        """
        Apply schema_postgres.sql in one transaction and verify the tables.

        Idempotent: every statement is CREATE ... IF NOT EXISTS.

        Returns:
            True if every required table exists afterwards, False otherwise
        """
        pool = self._require()

        if not SCHEMA_FILE.exists():
            logger.error(f"Schema file not found: {SCHEMA_FILE}")
            return False

        try:
            statements = split_statements(SCHEMA_FILE.read_text())
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for statement in statements:
                        logger.debug(f"Executing: {statement[:80]}...")
                        await conn.execute(statement)

            rows = await pool.fetch(
                "SELECT table_name FROM information_schema.tables WHERE table_name = ANY($1::text[])",
                list(REQUIRED_TABLES),
            )
        except Exception as e:
            logger.error(f"Failed to initialize schema: {e}")
            return False

        missing = set(REQUIRED_TABLES) - {row["table_name"] for row in rows}
        if missing:
            logger.error(f"Schema applied but tables not found: {sorted(missing)}")
            return False

        logger.info(f"Database schema verified ({len(statements)} statements)")
        return True
