# mailflow/db/helpers.py
"""
Query helpers for the repository layer.

Every helper accepts an optional ``connection`` so callers already inside a
transaction can reuse it; otherwise a pooled connection is borrowed for the
single statement. psycopg errors surface as ``DatabaseError``.
"""

import asyncio
import functools
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from mailflow.db.pool import get_db_connection, get_db_transaction
from mailflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """A statement failed; ``recoverable`` marks connection-level failures."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.recoverable = recoverable


def _wrap_error(e: psycopg.Error, operation: str, query: str) -> DatabaseError:
    logger.error(
        "Database query failed",
        operation=operation,
        query=query[:100],
        error=str(e),
        error_type=type(e).__name__,
    )
    # Constraint and data errors will fail the same way again
    return DatabaseError(
        f"Query failed: {e}",
        operation=operation,
        recoverable=isinstance(e, psycopg.OperationalError),
    )


@asynccontextmanager
async def _cursor(
    connection: psycopg.AsyncConnection | None,
) -> AsyncGenerator[psycopg.AsyncCursor, None]:
    if connection is not None:
        async with connection.cursor() as cur:
            yield cur
        return

    async with await get_db_connection() as conn:
        async with conn.cursor() as cur:
            yield cur


async def fetch_one(
    query: str, params: Sequence = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """First row as a dict, or None."""
    try:
        async with _cursor(connection) as cur:
            await cur.execute(query, params)
            return await cur.fetchone() or None
    except psycopg.Error as e:
        raise _wrap_error(e, "fetch_one", query) from e


async def fetch_all(
    query: str, params: Sequence = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    try:
        async with _cursor(connection) as cur:
            await cur.execute(query, params)
            return await cur.fetchall()
    except psycopg.Error as e:
        raise _wrap_error(e, "fetch_all", query) from e


async def fetch_val(
    query: str, params: Sequence = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    """First column of the first row."""
    row = await fetch_one(query, params, connection=connection)
    return next(iter(row.values())) if row else None


async def execute_query(
    query: str, params: Sequence = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Run one statement; returns the affected row count."""
    try:
        async with _cursor(connection) as cur:
            await cur.execute(query, params)
            return cur.rowcount
    except psycopg.Error as e:
        raise _wrap_error(e, "execute", query) from e


async def execute_many(query: str, params_seq: Sequence[Sequence]) -> int:
    """Same statement for every parameter tuple; returns how many were submitted."""
    if not params_seq:
        return 0

    try:
        async with _cursor(None) as cur:
            await cur.executemany(query, params_seq)
        return len(params_seq)
    except psycopg.Error as e:
        raise _wrap_error(e, "execute_many", query) from e


async def execute_transaction(statements: Sequence[tuple[str, Sequence]]) -> None:
    """
    Run ``(query, params)`` pairs atomically.

    Example:
        await execute_transaction([
            ("DELETE FROM tasks WHERE contact_id = %s", (contact_id,)),
            ("DELETE FROM contacts WHERE id = %s", (contact_id,)),
        ])
    """
    query = ""
    try:
        async with await get_db_transaction() as conn:
            for query, params in statements:
                await conn.execute(query, params)
    except psycopg.Error as e:
        raise _wrap_error(e, "transaction", query) from e

    logger.debug("Transaction committed", statement_count=len(statements))


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """Retry a coroutine on recoverable DatabaseError with exponential backoff."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except DatabaseError as e:
                    if not e.recoverable or attempt >= max_retries:
                        raise
                    delay = base_delay * (2**attempt)
                    attempt += 1
                    logger.warning(
                        "Retrying database operation",
                        operation=func.__name__,
                        attempt=attempt,
                        max_retries=max_retries,
                        delay=delay,
                        error=e.message,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
