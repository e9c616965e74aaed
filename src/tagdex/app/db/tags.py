from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Sequence

from aiosqlitepool import SQLiteConnectionPool

from tagdex.app.models import Tag, TagAlias, TagCategory, TagImplication
from tagdex.util import chunked, from_epoch, to_epoch

from .base import BaseRepository, placeholders
from .events import (
    ALIASES_CHANGED_EVENT,
    IMPLICATIONS_CHANGED_EVENT,
    TAGS_CHANGED_EVENT,
    RepositoryEventBus,
)

logger = logging.getLogger(__name__)

# SQLite caps host parameters per statement; stay well below it.
_PARAM_CHUNK = 500


def glob_to_like(pattern: str) -> str:
    """Translate a ``*``/``?`` glob into a LIKE pattern escaped with ``\\``."""

    escaped = (
        pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )
    return escaped.replace("*", "%").replace("?", "_")


@dataclass(slots=True, frozen=True)
class CategoryChange:
    tag_id: int
    name: str
    old: TagCategory
    new: TagCategory


def _row_to_tag(row) -> Tag:
    return Tag(
        id=int(row["id"]),
        name=row["name"],
        category=TagCategory.coerce(row["category"]),
        post_count=int(row["post_count"] or 0),
        updated_at=from_epoch(row["updated_at"]),
    )


class TagsRepository(BaseRepository):
    """Tags, aliases and implications of the upstream taxonomy."""

    def __init__(
        self,
        pool: SQLiteConnectionPool,
        event_bus: RepositoryEventBus | None = None,
    ) -> None:
        super().__init__(pool)
        self._event_bus = event_bus

    # ------------------------------------------------------------------ tags

    async def get(self, tag_id: int) -> Tag | None:
        async with self.pool.connection() as conn:
            cursor = await conn.execute(
                "SELECT id, name, category, post_count, updated_at FROM tags WHERE id = ?",
                (int(tag_id),),
            )
            row = await cursor.fetchone()
        return _row_to_tag(row) if row else None

    async def get_by_name(self, name: str) -> Tag | None:
        async with self.pool.connection() as conn:
            cursor = await conn.execute(
                "SELECT id, name, category, post_count, updated_at FROM tags WHERE name = ?",
                (name,),
            )
            row = await cursor.fetchone()
        return _row_to_tag(row) if row else None

    async def get_many(self, tag_ids: Iterable[int]) -> dict[int, Tag]:
        ids = sorted({int(tag_id) for tag_id in tag_ids})
        found: dict[int, Tag] = {}
        if not ids:
            return found
        async with self.pool.connection() as conn:
            for chunk in chunked(ids, _PARAM_CHUNK):
                cursor = await conn.execute(
                    f"""
                    SELECT id, name, category, post_count, updated_at
                    FROM tags WHERE id IN ({placeholders(len(chunk))})
                    """,
                    chunk,
                )
                for row in await cursor.fetchall():
                    found[int(row["id"])] = _row_to_tag(row)
        return found

    async def search_pattern(self, pattern: str, limit: int) -> list[Tag]:
        """Return tags whose name matches the glob ``pattern``, most used first."""

        async with self.pool.connection() as conn:
            cursor = await conn.execute(
                """
                SELECT id, name, category, post_count, updated_at
                FROM tags
                WHERE name LIKE ? ESCAPE '\\'
                ORDER BY post_count DESC, id ASC
                LIMIT ?
                """,
                (glob_to_like(pattern), int(limit)),
            )
            rows = await cursor.fetchall()
        return [_row_to_tag(row) for row in rows]

    async def upsert_tags(self, tags: Sequence[Tag]) -> list[CategoryChange]:
        """Insert or update ``tags`` and report the ones whose category moved."""

        if not tags:
            return []
        changes: list[CategoryChange] = []
        async with self.pool.connection() as conn:

            async def _tx():
                for chunk in chunked(tags, _PARAM_CHUNK):
                    cursor = await conn.execute(
                        f"SELECT id, category FROM tags WHERE id IN ({placeholders(len(chunk))})",
                        [tag.id for tag in chunk],
                    )
                    previous = {
                        int(row["id"]): int(row["category"])
                        for row in await cursor.fetchall()
                    }
                    for tag in chunk:
                        old = previous.get(tag.id)
                        if old is not None and old != int(tag.category):
                            changes.append(
                                CategoryChange(
                                    tag.id,
                                    tag.name,
                                    TagCategory.coerce(old),
                                    TagCategory.coerce(tag.category),
                                )
                            )
                    # A renamed tag may collide with a stale row holding its name.
                    await conn.executemany(
                        "DELETE FROM tags WHERE name = ? AND id != ?",
                        [(tag.name, tag.id) for tag in chunk],
                    )
                    await conn.executemany(
                        """
                        INSERT INTO tags (id, name, category, post_count, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            name = excluded.name,
                            category = excluded.category,
                            post_count = excluded.post_count,
                            updated_at = excluded.updated_at
                        """,
                        [
                            (
                                tag.id,
                                tag.name,
                                int(tag.category),
                                int(tag.post_count),
                                to_epoch(tag.updated_at),
                            )
                            for tag in chunk
                        ],
                    )

            await self._run_in_transaction(conn, _tx)

        await self._emit(TAGS_CHANGED_EVENT, [tag.name for tag in tags])
        return changes

    async def recompute_post_counts(self) -> None:
        """Recount tag usage from the record cross-reference table."""

        async with self.pool.connection() as conn:

            async def _tx():
                await conn.execute(
                    """
                    UPDATE tags SET post_count = (
                        SELECT COUNT(*) FROM record_tags rt WHERE rt.tag_id = tags.id
                    )
                    """
                )

            await self._run_in_transaction(conn, _tx)
        logger.info("Recomputed tag post counts")

    # --------------------------------------------------------------- aliases

    async def get_alias(self, antecedent_name: str) -> TagAlias | None:
        async with self.pool.connection() as conn:
            cursor = await conn.execute(
                """
                SELECT id, antecedent_name, consequent_id, updated_at
                FROM tag_aliases WHERE antecedent_name = ?
                ORDER BY id DESC LIMIT 1
                """,
                (antecedent_name,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return TagAlias(
            id=int(row["id"]),
            antecedent_name=row["antecedent_name"],
            consequent_id=int(row["consequent_id"]),
            updated_at=from_epoch(row["updated_at"]),
        )

    async def upsert_aliases(self, aliases: Sequence[TagAlias]) -> None:
        if not aliases:
            return
        async with self.pool.connection() as conn:

            async def _tx():
                await conn.executemany(
                    """
                    INSERT INTO tag_aliases (id, antecedent_name, consequent_id, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        antecedent_name = excluded.antecedent_name,
                        consequent_id = excluded.consequent_id,
                        updated_at = excluded.updated_at
                    """,
                    [
                        (
                            alias.id,
                            alias.antecedent_name,
                            alias.consequent_id,
                            to_epoch(alias.updated_at),
                        )
                        for alias in aliases
                    ],
                )

            await self._run_in_transaction(conn, _tx)
        await self._emit(
            ALIASES_CHANGED_EVENT, [alias.antecedent_name for alias in aliases]
        )

    async def delete_aliases(self, alias_ids: Iterable[int]) -> int:
        ids = sorted({int(alias_id) for alias_id in alias_ids})
        if not ids:
            return 0
        names: list[str] = []
        async with self.pool.connection() as conn:

            async def _tx():
                for chunk in chunked(ids, _PARAM_CHUNK):
                    marks = placeholders(len(chunk))
                    cursor = await conn.execute(
                        f"SELECT antecedent_name FROM tag_aliases WHERE id IN ({marks})",
                        chunk,
                    )
                    names.extend(
                        row["antecedent_name"] for row in await cursor.fetchall()
                    )
                    await conn.execute(
                        f"DELETE FROM tag_aliases WHERE id IN ({marks})", chunk
                    )

            await self._run_in_transaction(conn, _tx)
        await self._emit(ALIASES_CHANGED_EVENT, names)
        return len(names)

    # ---------------------------------------------------------- implications

    async def upsert_implications(self, implications: Sequence[TagImplication]) -> int:
        rows = [
            (
                item.id,
                item.antecedent_id,
                item.consequent_id,
                to_epoch(item.updated_at),
            )
            for item in implications
            if not item.is_self_loop
        ]
        if not rows:
            return 0
        async with self.pool.connection() as conn:

            async def _tx():
                await conn.executemany(
                    """
                    INSERT INTO tag_implications (id, antecedent_id, consequent_id, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        antecedent_id = excluded.antecedent_id,
                        consequent_id = excluded.consequent_id,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )

            await self._run_in_transaction(conn, _tx)
        await self._emit(IMPLICATIONS_CHANGED_EVENT, [])
        return len(rows)

    async def delete_implications(self, implication_ids: Iterable[int]) -> None:
        ids = sorted({int(item) for item in implication_ids})
        if not ids:
            return
        async with self.pool.connection() as conn:

            async def _tx():
                for chunk in chunked(ids, _PARAM_CHUNK):
                    await conn.execute(
                        f"DELETE FROM tag_implications WHERE id IN ({placeholders(len(chunk))})",
                        chunk,
                    )

            await self._run_in_transaction(conn, _tx)
        await self._emit(IMPLICATIONS_CHANGED_EVENT, [])

    async def _related(
        self, tag_ids: Sequence[int], source: str, target: str
    ) -> dict[int, list[int]]:
        related: dict[int, list[int]] = {int(tag_id): [] for tag_id in tag_ids}
        if not related:
            return related
        async with self.pool.connection() as conn:
            for chunk in chunked(list(related), _PARAM_CHUNK):
                cursor = await conn.execute(
                    f"""
                    SELECT {source} AS source, {target} AS target
                    FROM tag_implications
                    WHERE {source} IN ({placeholders(len(chunk))})
                    ORDER BY id
                    """,
                    chunk,
                )
                for row in await cursor.fetchall():
                    related[int(row["source"])].append(int(row["target"]))
        return related

    async def parents_of(self, tag_ids: Sequence[int]) -> dict[int, list[int]]:
        """Direct implications: tag -> tags it implies."""

        return await self._related(tag_ids, "antecedent_id", "consequent_id")

    async def children_of(self, tag_ids: Sequence[int]) -> dict[int, list[int]]:
        """Reverse implications: tag -> tags implying it."""

        return await self._related(tag_ids, "consequent_id", "antecedent_id")

    async def all_parents_of(self, tag_ids: Sequence[int]) -> dict[int, list[int]]:
        """Transitive closure of :meth:`parents_of`, breadth first."""

        closure: dict[int, list[int]] = {}
        for tag_id in tag_ids:
            seen: set[int] = {int(tag_id)}
            ordered: list[int] = []
            frontier = deque([int(tag_id)])
            while frontier:
                level = list(frontier)
                frontier.clear()
                direct = await self.parents_of(level)
                for parents in direct.values():
                    for parent in parents:
                        if parent in seen:
                            continue
                        seen.add(parent)
                        ordered.append(parent)
                        frontier.append(parent)
            closure[int(tag_id)] = ordered
        return closure

    async def _emit(self, event: str, names: list[str]) -> None:
        if self._event_bus:
            await self._event_bus.emit(event, names=names)


__all__ = ["CategoryChange", "TagsRepository", "glob_to_like"]
