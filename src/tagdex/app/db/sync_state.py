from __future__ import annotations

from typing import Any

import orjson

from .base import BaseRepository

LATEST_TAG_UPDATE = "tags.latest_update"
LATEST_ALIAS_UPDATE = "aliases.latest_update"
LATEST_IMPLICATION_UPDATE = "implications.latest_update"
LAST_PASS_COMPLETED = "sync.last_pass"
FULL_RECONCILIATION_PENDING = "reconciliation.pending"


class SyncStateRepository(BaseRepository):
    """Key/value checkpoints that let sync stages resume where they stopped."""

    async def get(self, key: str, default: Any = None) -> Any:
        async with self.pool.connection() as conn:
            cursor = await conn.execute(
                "SELECT value FROM sync_state WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
        if row is None or row["value"] is None:
            return default
        return orjson.loads(row["value"])

    async def set(self, key: str, value: Any) -> None:
        async with self.pool.connection() as conn:

            async def _tx():
                await conn.execute(
                    """
                    INSERT INTO sync_state (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    (key, orjson.dumps(value).decode()),
                )

            await self._run_in_transaction(conn, _tx)

    async def delete(self, key: str) -> None:
        async with self.pool.connection() as conn:

            async def _tx():
                await conn.execute("DELETE FROM sync_state WHERE key = ?", (key,))

            await self._run_in_transaction(conn, _tx)


__all__ = [
    "FULL_RECONCILIATION_PENDING",
    "LAST_PASS_COMPLETED",
    "LATEST_ALIAS_UPDATE",
    "LATEST_IMPLICATION_UPDATE",
    "LATEST_TAG_UPDATE",
    "SyncStateRepository",
]
