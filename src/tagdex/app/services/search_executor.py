"""Run compiled queries against the index with offset or cursor pagination."""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Sequence

import orjson

from tagdex.app.db.records import row_to_record
from tagdex.app.errors import InvalidCursor, PaginationDepthExceeded
from tagdex.app.index.sql_query import SqlTranslator
from tagdex.app.query.nodes import QueryNode
from tagdex.app.query.ranking import RankingPlan
from tagdex.app.services.record_presenter import present_record
from tagdex.app.services.search_config import SearchLimits

logger = logging.getLogger(__name__)


def encode_cursor(values: Sequence[Any]) -> str:
    raw = orjson.dumps(list(values))
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_cursor(token: str) -> list[Any]:
    text = (token or "").strip()
    if not text:
        raise InvalidCursor("Empty cursor")
    padded = text + "=" * (-len(text) % 4)
    try:
        values = orjson.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise InvalidCursor("Malformed cursor") from exc
    if not isinstance(values, list) or not all(map(_is_cursor_value, values)):
        raise InvalidCursor("Malformed cursor")
    return values


def _is_cursor_value(value: Any) -> bool:
    # Cursor values are bound straight into SQLite parameters.
    if isinstance(value, int):
        return -(2**63) <= value < 2**63
    return value is None or isinstance(value, (float, str))


@dataclass(slots=True)
class SearchPage:
    records: list[dict[str, Any]]
    next_cursor: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"records": self.records}
        if self.next_cursor:
            payload["nextCursor"] = self.next_cursor
        return payload


class SearchExecutor:
    def __init__(
        self,
        db,
        *,
        limits: SearchLimits,
        asset_base_url: str,
        translator: SqlTranslator | None = None,
    ) -> None:
        self._db = db
        self._limits = limits
        self._asset_base_url = asset_base_url.rstrip("/")
        self._translator = translator or SqlTranslator()

    async def execute(
        self,
        query: QueryNode,
        plan: RankingPlan,
        *,
        limit: Any = None,
        page: Any = None,
        cursor: str | None = None,
    ) -> SearchPage:
        size = (
            self._limits.default_limit
            if limit in (None, "")
            else self._limits.clamp_limit(limit)
        )

        after: list[Any] | None = None
        offset = 0
        if cursor:
            if not plan.cursor_stable:
                raise InvalidCursor("This ordering does not support cursors")
            after = decode_cursor(cursor)
            if len(after) != len(plan.sort):
                raise InvalidCursor("Cursor does not match the requested ordering")
        elif page not in (None, ""):
            try:
                page_number = max(int(page), 1)
            except (TypeError, ValueError):
                page_number = 1
            offset = (page_number - 1) * size
            if offset + size > self._limits.max_result_window:
                raise PaginationDepthExceeded(
                    f"Cannot page past {self._limits.max_result_window} results; use a cursor"
                )

        statement = self._translator.select(
            query, plan, limit=size + 1, offset=offset, after=after
        )
        logger.debug("Search SQL %s params=%s", statement.sql, statement.params)
        rows = await self._db.records.select(statement.sql, statement.params)

        has_more = len(rows) > size
        rows = rows[:size]
        records = [row_to_record(row) for row in rows]
        tag_ids = {tag_id for record in records for tag_id in record.flattened_tags}
        tags = await self._db.tags.get_many(tag_ids)

        next_cursor = None
        if has_more and rows and plan.cursor_stable:
            last = rows[-1]
            next_cursor = encode_cursor(
                [last[f"_sort{index}"] for index in range(len(plan.sort))]
            )

        return SearchPage(
            records=[
                present_record(record, tags, asset_base_url=self._asset_base_url)
                for record in records
            ],
            next_cursor=next_cursor,
        )


__all__ = ["SearchExecutor", "SearchPage", "decode_cursor", "encode_cursor"]
