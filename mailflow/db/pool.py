# mailflow/db/pool.py
"""
Async Postgres pool shared by the API process and the scheduler worker.

Connections come back as ``dict_row`` cursors in autocommit mode; callers that
need several statements to land together use ``transaction()``.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from mailflow.config import settings
from mailflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 30.0
STATEMENT_TIMEOUT = "60s"
# Above this share of busy connections the pool reports unhealthy
SATURATION_PERCENT = 90
WARN_PERCENT = 80


class DatabasePoolManager:
    """Owns the process-wide AsyncConnectionPool from startup to shutdown."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def is_ready(self) -> bool:
        return self._initialized and not self._closed and self.pool is not None

    async def initialize(self) -> None:
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        config = settings.get_db_pool_config()
        logger.info(
            "Opening database pool",
            environment=settings.environment,
            min_size=config["min_size"],
            max_size=config["max_size"],
        )

        pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **config,
        )

        try:
            await pool.open()
            await pool.wait()
            self.pool = pool
            self._initialized = True
            await self._probe()
        except Exception as e:
            logger.error("Database pool failed to open", error=str(e))
            self._initialized = False
            self.pool = None
            try:
                await pool.close()
            except Exception as close_error:
                logger.debug("Ignoring pool close error", error=str(close_error))
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool ready")

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"mailflow-{settings.environment}")
            )
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(sql.Literal(STATEMENT_TIMEOUT))
        )

    async def _probe(self) -> float:
        """Round-trip ``SELECT 1``; returns latency in milliseconds."""
        started = time.time()
        async with self.connection() as conn:
            cur = await conn.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError(f"Unexpected probe result: {row!r}")
        return (time.time() - started) * 1000

    async def close(self) -> None:
        if not self._initialized or self._closed:
            return

        logger.info("Closing database pool")
        try:
            await asyncio.wait_for(self.pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out, abandoning connections")
        finally:
            self._initialized = False
            self._closed = True

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        if not self.is_ready:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        try:
            async with self.pool.connection() as conn:
                yield conn
        except psycopg.Error as e:
            logger.error("Database connection error", error=str(e), error_type=type(e).__name__)
            raise

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Probe latency plus pool saturation, in the shape /readyz reports."""
        if not self.is_ready:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        try:
            latency_ms = await self._probe()
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        waiting = stats.get("requests_waiting", 0)
        busy_percent = (size - available) / size * 100 if size else 0.0

        report: dict[str, Any] = {
            "healthy": busy_percent < SATURATION_PERCENT,
            "service": "database_pool",
            "connection_time_ms": round(latency_ms, 2),
            "pool_stats": {
                "pool_size": size,
                "pool_available": available,
                "pool_utilization_percent": round(busy_percent, 2),
                "requests_waiting": waiting,
            },
        }

        warnings = []
        if busy_percent > WARN_PERCENT:
            warnings.append(f"High pool utilization: {busy_percent:.1f}%")
        if waiting:
            warnings.append(f"Requests waiting for connections: {waiting}")
        if warnings:
            report["warnings"] = warnings

        return report


db_pool = DatabasePoolManager()


async def get_db_connection():
    """Connection context manager from the shared pool."""
    return db_pool.connection()


async def get_db_transaction():
    """Connection context manager wrapped in a transaction."""
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
