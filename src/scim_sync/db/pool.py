"""
Sync Database Connection Pool

Manages the asyncpg connection pool for the sync engine's database.
Runs the idempotent schema bootstrap (schema.sql) on initialization.

Schema Evolution:
-----------------
When adding/removing/renaming tables in schema.sql:
1. Update the schema.sql file with new DDL (keep every statement idempotent)
2. Update SyncDBPool.EXPECTED_TABLES with the new table names
"""

from pathlib import Path
from typing import Optional

import asyncpg
from loguru import logger


class SyncDBPool:
    """Sync engine database connection pool manager."""

    EXPECTED_TABLES = {
        "sync_states",
        "transformation_rules",
        "audit_trail",
    }

    def __init__(self, connection_string: str):
        """
        Initialize sync DB pool.

        Args:
            connection_string: PostgreSQL connection string for the sync database
        """
        self.connection_string = connection_string
        self.pool: Optional[asyncpg.Pool] = None
        self._pool_initialized = False

    async def initialize(self) -> None:
        """
        Initialize connection pool and run migrations.

        Creates the pool, validates it with a trivial query, then bootstraps the schema.
        """
        if self._pool_initialized and self.pool is not None:
            logger.debug("Sync DB pool already initialized")
            return

        try:
            logger.info("Initializing sync database pool")

            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=2,
                max_size=10,
                command_timeout=60,
                timeout=15,
            )

            async with self.pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    raise RuntimeError("Pool validation query failed")

            logger.info("Sync DB pool validated")

            await self._run_migrations()

            self._pool_initialized = True
            logger.success("Sync database initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize sync DB pool: {e}", exc_info=True)
            if self.pool:
                await self.pool.close()
                self.pool = None
            raise

    async def _run_migrations(self) -> None:
        """Execute schema.sql and verify all expected tables exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        if not schema_path.exists():
            raise FileNotFoundError(f"schema.sql not found at {schema_path}")

        schema_sql = schema_path.read_text(encoding="utf-8")

        async with self.pool.acquire() as conn:
            await conn.execute(schema_sql)

            rows = await conn.fetch(
                """
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'scimsync'
                """
            )
            existing_tables = {row["table_name"] for row in rows}

        missing_tables = self.EXPECTED_TABLES - existing_tables
        if missing_tables:
            logger.error(f"Schema bootstrap incomplete, missing tables: {missing_tables}")
            raise RuntimeError(f"Incomplete database schema: missing tables {missing_tables}")

        logger.success(f"All {len(self.EXPECTED_TABLES)} sync tables verified")

    async def close(self) -> None:
        """Close the connection pool gracefully."""
        if self.pool:
            logger.info("Closing sync database pool")
            await self.pool.close()
            self.pool = None
            self._pool_initialized = False

    def acquire(self):
        """
        Acquire a database connection from the pool.

        Usage:
            async with pool.acquire() as conn:
                result = await conn.fetchrow("SELECT * FROM ...")
        """
        if not self.pool:
            raise RuntimeError("Sync DB pool not initialized - call initialize() first")
        return self.pool.acquire()

    async def health_check(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            if not self.pool:
                return False

            async with self.pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                return result == 1
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Sync DB health check failed: {e}")
            return False
