from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from aiosqlitepool import SQLiteConnectionPool


async def run_in_transaction(conn, func, *args, **kwargs):
    """Execute the given coroutine within a transaction."""
    try:
        result = await func(*args, **kwargs)
        await conn.commit()
        return result
    except Exception:
        if conn.in_transaction:
            await conn.rollback()
        raise


@asynccontextmanager
async def savepoint(conn, name: str) -> AsyncIterator[None]:
    """Scope a unit of work that can be rolled back without ending the transaction."""

    await conn.execute(f"SAVEPOINT {name}")
    try:
        yield
    except Exception:
        await conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        await conn.execute(f"RELEASE SAVEPOINT {name}")
        raise
    await conn.execute(f"RELEASE SAVEPOINT {name}")


def placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class BaseRepository:
    """Common functionality shared by repository classes."""

    def __init__(self, pool: SQLiteConnectionPool):
        self.pool = pool

    async def _run_in_transaction(self, conn, func, *args, **kwargs):
        return await run_in_transaction(conn, func, *args, **kwargs)
