from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

import orjson
from ulid import ULID

from .base import BaseRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FailedBatch:
    id: str
    stage: str
    created_at: int
    documents: list[Any]
    errors: list[Any]


class FailedBatchesRepository(BaseRepository):
    """Durable capture of documents the index refused to write."""

    async def record(
        self, stage: str, documents: Sequence[Any], errors: Sequence[Any]
    ) -> str:
        batch_id = str(ULID())
        async with self.pool.connection() as conn:

            async def _tx():
                await conn.execute(
                    """
                    INSERT INTO failed_batches (id, stage, created_at, documents, errors)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        batch_id,
                        stage,
                        int(time.time()),
                        orjson.dumps(list(documents), default=str).decode(),
                        orjson.dumps(list(errors), default=str).decode(),
                    ),
                )

            await self._run_in_transaction(conn, _tx)
        logger.warning(
            "Captured %d failed documents from stage %s as batch %s",
            len(documents),
            stage,
            batch_id,
        )
        return batch_id

    async def list_recent(self, limit: int = 20) -> list[FailedBatch]:
        async with self.pool.connection() as conn:
            cursor = await conn.execute(
                """
                SELECT id, stage, created_at, documents, errors
                FROM failed_batches ORDER BY id DESC LIMIT ?
                """,
                (int(limit),),
            )
            rows = await cursor.fetchall()
        return [
            FailedBatch(
                id=row["id"],
                stage=row["stage"],
                created_at=int(row["created_at"]),
                documents=orjson.loads(row["documents"]),
                errors=orjson.loads(row["errors"]),
            )
            for row in rows
        ]


__all__ = ["FailedBatch", "FailedBatchesRepository"]
