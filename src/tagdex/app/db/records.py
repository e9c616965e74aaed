from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import orjson
from aiosqlitepool import SQLiteConnectionPool

from tagdex.app.models import (
    CATEGORY_COUNT,
    HangingRelationship,
    Record,
    RecordFlags,
    TagCategory,
    empty_buckets,
)
from tagdex.util import chunked, from_epoch, to_epoch

from .base import BaseRepository, placeholders, savepoint

logger = logging.getLogger(__name__)

_PARAM_CHUNK = 500

RECORD_COLUMNS = (
    "id",
    "tags",
    "uploader_id",
    "approver_id",
    "created_at",
    "updated_at",
    "content_hash",
    "sources",
    "rating",
    "width",
    "height",
    "ratio",
    "megapixels",
    "duration",
    "favorite_count",
    "score",
    "parent_id",
    "children",
    "file_type",
    "file_size",
    "comment_count",
    "tag_count",
    "is_deleted",
    "is_pending",
    "is_flagged",
    "is_rating_locked",
    "is_status_locked",
    "is_note_locked",
)

_UPSERT_SQL = f"""
INSERT INTO records ({", ".join(RECORD_COLUMNS)})
VALUES ({placeholders(len(RECORD_COLUMNS))})
ON CONFLICT(id) DO UPDATE SET
{", ".join(f"{column} = excluded.{column}" for column in RECORD_COLUMNS[1:])}
"""


@dataclass(slots=True)
class DocumentFailure:
    document_id: int
    error: str


@dataclass(slots=True)
class BulkWriteResult:
    """Outcome of a bulk write; one document failing never aborts the rest."""

    written: list[int] = field(default_factory=list)
    failures: list[DocumentFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def merge(self, other: "BulkWriteResult") -> None:
        self.written.extend(other.written)
        self.failures.extend(other.failures)


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode()


def _loads_ids(raw: str | bytes | None) -> set[int]:
    if not raw:
        return set()
    return {int(item) for item in orjson.loads(raw)}


def _load_buckets(raw: str | bytes | None) -> list[list[int]]:
    buckets = empty_buckets()
    if not raw:
        return buckets
    for index, bucket in enumerate(orjson.loads(raw)[:CATEGORY_COUNT]):
        buckets[index] = [int(tag_id) for tag_id in bucket]
    return buckets


def record_to_row(record: Record) -> tuple[Any, ...]:
    flags = record.flags
    return (
        record.id,
        _dumps(record.tags),
        record.uploader_id,
        record.approver_id,
        to_epoch(record.created_at),
        to_epoch(record.updated_at),
        record.content_hash,
        _dumps(record.sources),
        record.rating,
        record.width,
        record.height,
        record.ratio,
        record.megapixels,
        record.duration,
        record.favorite_count,
        record.score,
        record.parent_id,
        _dumps(sorted(record.children)),
        record.file_type,
        record.file_size,
        record.comment_count,
        len(record.flattened_tags),
        int(flags.deleted),
        int(flags.pending),
        int(flags.flagged),
        int(flags.rating_locked),
        int(flags.status_locked),
        int(flags.note_locked),
    )


def row_to_record(row) -> Record:
    return Record(
        id=int(row["id"]),
        tags=_load_buckets(row["tags"]),
        uploader_id=row["uploader_id"],
        approver_id=row["approver_id"],
        created_at=from_epoch(row["created_at"]),
        updated_at=from_epoch(row["updated_at"]),
        content_hash=row["content_hash"],
        sources=list(orjson.loads(row["sources"] or "[]")),
        rating=row["rating"],
        width=int(row["width"] or 0),
        height=int(row["height"] or 0),
        duration=float(row["duration"] or 0),
        favorite_count=int(row["favorite_count"] or 0),
        score=int(row["score"] or 0),
        parent_id=row["parent_id"],
        children=_loads_ids(row["children"]),
        file_type=row["file_type"],
        file_size=int(row["file_size"] or 0),
        comment_count=int(row["comment_count"] or 0),
        flags=RecordFlags(
            deleted=bool(row["is_deleted"]),
            pending=bool(row["is_pending"]),
            flagged=bool(row["is_flagged"]),
            rating_locked=bool(row["is_rating_locked"]),
            status_locked=bool(row["is_status_locked"]),
            note_locked=bool(row["is_note_locked"]),
        ),
    )


class RecordsRepository(BaseRepository):
    """Indexed records plus their tag cross-reference and relationship state."""

    def __init__(self, pool: SQLiteConnectionPool) -> None:
        super().__init__(pool)

    async def max_id(self) -> int:
        async with self.pool.connection() as conn:
            cursor = await conn.execute("SELECT MAX(id) AS max_id FROM records")
            row = await cursor.fetchone()
        return int(row["max_id"] or 0)

    async def count(self) -> int:
        async with self.pool.connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) AS total FROM records")
            row = await cursor.fetchone()
        return int(row["total"])

    async def get(self, record_id: int) -> Record | None:
        records = await self.get_many([record_id])
        return records.get(int(record_id))

    async def get_many(self, record_ids: Iterable[int]) -> dict[int, Record]:
        ids = sorted({int(record_id) for record_id in record_ids})
        found: dict[int, Record] = {}
        async with self.pool.connection() as conn:
            for chunk in chunked(ids, _PARAM_CHUNK):
                cursor = await conn.execute(
                    f"SELECT * FROM records WHERE id IN ({placeholders(len(chunk))})",
                    chunk,
                )
                for row in await cursor.fetchall():
                    found[int(row["id"])] = row_to_record(row)
        return found

    async def updated_at_for(self, record_ids: Iterable[int]) -> dict[int, int | None]:
        """Return the stored update epoch of each known record."""

        ids = sorted({int(record_id) for record_id in record_ids})
        stamps: dict[int, int | None] = {}
        async with self.pool.connection() as conn:
            for chunk in chunked(ids, _PARAM_CHUNK):
                cursor = await conn.execute(
                    f"SELECT id, updated_at FROM records WHERE id IN ({placeholders(len(chunk))})",
                    chunk,
                )
                for row in await cursor.fetchall():
                    stamps[int(row["id"])] = row["updated_at"]
        return stamps

    async def select(self, sql: str, params: Sequence[Any]) -> list[Any]:
        """Run a read-only statement built by the query translator."""

        async with self.pool.connection() as conn:
            cursor = await conn.execute(sql, list(params))
            return list(await cursor.fetchall())

    # ----------------------------------------------------------------- writes

    async def bulk_upsert(self, records: Sequence[Record]) -> BulkWriteResult:
        """Write ``records`` in one transaction with a savepoint per document.

        Each write repairs parent/child links, maintains the tag cross-reference
        and adjusts tag usage counters by the difference between the old and
        new tag sets.
        """

        result = BulkWriteResult()
        if not records:
            return result
        async with self.pool.connection() as conn:

            async def _tx():
                if not conn.in_transaction:
                    await conn.execute("BEGIN")
                for record in records:
                    try:
                        async with savepoint(conn, "record_write"):
                            await self._write_one(conn, record)
                    except Exception as exc:
                        logger.warning(
                            "Failed to write record %s: %s", record.id, exc
                        )
                        result.failures.append(DocumentFailure(record.id, repr(exc)))
                        continue
                    result.written.append(record.id)

            await self._run_in_transaction(conn, _tx)
        return result

    async def _write_one(self, conn, record: Record) -> None:
        cursor = await conn.execute(
            "SELECT parent_id, children FROM records WHERE id = ?", (record.id,)
        )
        existing = await cursor.fetchone()

        children = set(record.children)
        if existing is not None:
            children |= _loads_ids(existing["children"])
        children |= await self._consume_hanging(conn, record.id)
        record.children = children

        cursor = await conn.execute(
            "SELECT tag_id FROM record_tags WHERE record_id = ?", (record.id,)
        )
        old_tags = {int(row["tag_id"]) for row in await cursor.fetchall()}
        new_tags = record.flattened_tags

        await conn.execute(_UPSERT_SQL, record_to_row(record))
        await self._apply_tag_diff(conn, record.id, old_tags, new_tags)

        old_parent = existing["parent_id"] if existing is not None else None
        if old_parent is not None and old_parent != record.parent_id:
            await self._detach_child(conn, int(old_parent), record.id)
        if record.parent_id is not None:
            await self._attach_child(conn, int(record.parent_id), record.id)

    async def _apply_tag_diff(
        self, conn, record_id: int, old_tags: set[int], new_tags: set[int]
    ) -> None:
        removed = sorted(old_tags - new_tags)
        added = sorted(new_tags - old_tags)
        if removed:
            await conn.executemany(
                "DELETE FROM record_tags WHERE record_id = ? AND tag_id = ?",
                [(record_id, tag_id) for tag_id in removed],
            )
        if added:
            await conn.executemany(
                "INSERT OR IGNORE INTO record_tags (record_id, tag_id) VALUES (?, ?)",
                [(record_id, tag_id) for tag_id in added],
            )
        deltas = Counter({tag_id: 1 for tag_id in added})
        deltas.subtract({tag_id: 1 for tag_id in removed})
        await self._adjust_counters(conn, deltas)

    @staticmethod
    async def _adjust_counters(conn, deltas: Counter) -> None:
        rows = [(delta, tag_id) for tag_id, delta in deltas.items() if delta]
        if rows:
            await conn.executemany(
                "UPDATE tags SET post_count = MAX(post_count + ?, 0) WHERE id = ?",
                rows,
            )

    async def _consume_hanging(self, conn, parent_id: int) -> set[int]:
        cursor = await conn.execute(
            "SELECT children FROM hanging_relationships WHERE parent_id = ?",
            (parent_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return set()
        await conn.execute(
            "DELETE FROM hanging_relationships WHERE parent_id = ?", (parent_id,)
        )
        logger.debug("Resolved hanging relationship for parent %s", parent_id)
        return _loads_ids(row["children"])

    async def _attach_child(self, conn, parent_id: int, child_id: int) -> None:
        cursor = await conn.execute(
            "SELECT children FROM records WHERE id = ?", (parent_id,)
        )
        row = await cursor.fetchone()
        if row is not None:
            children = _loads_ids(row["children"])
            if child_id not in children:
                children.add(child_id)
                await conn.execute(
                    "UPDATE records SET children = ? WHERE id = ?",
                    (_dumps(sorted(children)), parent_id),
                )
            return

        cursor = await conn.execute(
            "SELECT children FROM hanging_relationships WHERE parent_id = ?",
            (parent_id,),
        )
        hanging = await cursor.fetchone()
        children = _loads_ids(hanging["children"]) if hanging else set()
        children.add(child_id)
        await conn.execute(
            """
            INSERT INTO hanging_relationships (parent_id, children) VALUES (?, ?)
            ON CONFLICT(parent_id) DO UPDATE SET children = excluded.children
            """,
            (parent_id, _dumps(sorted(children))),
        )

    async def _detach_child(self, conn, parent_id: int, child_id: int) -> None:
        for table, key in (
            ("records", "id"),
            ("hanging_relationships", "parent_id"),
        ):
            cursor = await conn.execute(
                f"SELECT children FROM {table} WHERE {key} = ?", (parent_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                continue
            children = _loads_ids(row["children"])
            if child_id not in children:
                return
            children.discard(child_id)
            if table == "hanging_relationships" and not children:
                await conn.execute(
                    "DELETE FROM hanging_relationships WHERE parent_id = ?",
                    (parent_id,),
                )
            else:
                await conn.execute(
                    f"UPDATE {table} SET children = ? WHERE {key} = ?",
                    (_dumps(sorted(children)), parent_id),
                )
            return

    # ------------------------------------------------------ hanging relations

    async def hanging_relationships(self, limit: int = 100) -> list[HangingRelationship]:
        async with self.pool.connection() as conn:
            cursor = await conn.execute(
                """
                SELECT parent_id, children FROM hanging_relationships
                ORDER BY parent_id LIMIT ?
                """,
                (int(limit),),
            )
            rows = await cursor.fetchall()
        return [
            HangingRelationship(int(row["parent_id"]), _loads_ids(row["children"]))
            for row in rows
        ]

    async def drop_hanging(self, parent_ids: Iterable[int]) -> None:
        """Forget hanging parents that the upstream no longer knows about."""

        ids = sorted({int(parent_id) for parent_id in parent_ids})
        if not ids:
            return
        async with self.pool.connection() as conn:

            async def _tx():
                for chunk in chunked(ids, _PARAM_CHUNK):
                    await conn.execute(
                        f"DELETE FROM hanging_relationships WHERE parent_id IN ({placeholders(len(chunk))})",
                        chunk,
                    )

            await self._run_in_transaction(conn, _tx)

    # ----------------------------------------------------- category migration

    async def migrate_tag_category(
        self,
        tag_id: int,
        old: TagCategory,
        new: TagCategory,
        *,
        batch_size: int = 500,
    ) -> int:
        """Move ``tag_id`` between buckets on every record carrying it.

        Records are scanned in id order and patched in batches, each batch in
        its own transaction. Returns the number of records patched.
        """

        patched = 0
        last_id = 0
        while True:
            async with self.pool.connection() as conn:
                cursor = await conn.execute(
                    """
                    SELECT r.id, r.tags FROM record_tags rt
                    JOIN records r ON r.id = rt.record_id
                    WHERE rt.tag_id = ? AND rt.record_id > ?
                    ORDER BY rt.record_id
                    LIMIT ?
                    """,
                    (int(tag_id), last_id, int(batch_size)),
                )
                rows = await cursor.fetchall()
                if not rows:
                    break
                updates: list[tuple[str, int]] = []
                for row in rows:
                    buckets = _load_buckets(row["tags"])
                    for bucket in buckets:
                        while tag_id in bucket:
                            bucket.remove(tag_id)
                    buckets[int(new)].append(int(tag_id))
                    updates.append((_dumps(buckets), int(row["id"])))
                last_id = int(rows[-1]["id"])

                async def _tx():
                    await conn.executemany(
                        "UPDATE records SET tags = ? WHERE id = ?", updates
                    )

                await self._run_in_transaction(conn, _tx)
            patched += len(updates)

        if patched:
            logger.info(
                "Migrated tag %s from %s to %s on %d records",
                tag_id,
                TagCategory.coerce(old).label,
                TagCategory.coerce(new).label,
                patched,
            )
        return patched


__all__ = [
    "BulkWriteResult",
    "DocumentFailure",
    "RECORD_COLUMNS",
    "RecordsRepository",
    "record_to_row",
    "row_to_record",
]
