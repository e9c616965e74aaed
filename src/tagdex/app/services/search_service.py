"""Search orchestration: parse, resolve, compile, plan and execute."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from tagdex.app.errors import MalformedQuery
from tagdex.app.query.compiler import QueryCompiler
from tagdex.app.query.groups import Group, GroupParser
from tagdex.app.query.nodes import BoolQuery, describe
from tagdex.app.query.ranking import RankingPlanner
from tagdex.app.services.search_config import SearchLimits
from tagdex.app.services.search_executor import SearchExecutor, SearchPage
from tagdex.app.services.tag_resolver import TagResolver
from tagdex.util import str_to_bool

logger = logging.getLogger(__name__)


def _split_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [part for part in raw.replace(",", " ").split() if part]
    return [str(part).strip() for part in raw if str(part).strip()]


@dataclass(slots=True)
class SearchRequest:
    query: str = ""
    limit: Any = None
    page: Any = None
    cursor: str | None = None
    reverse: bool = False
    exclude_ids: list[int] = field(default_factory=list)
    exclude_hashes: list[str] = field(default_factory=list)

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "SearchRequest":
        """Build a request from merged query-string and body parameters."""

        query = params.get("query") or params.get("q") or ""
        cursor = params.get("cursor") or params.get("searchAfter")
        if cursor is not None and not isinstance(cursor, str):
            raise MalformedQuery("cursor must be a string")
        reverse_raw = params.get("reverse")
        try:
            reverse = str_to_bool(reverse_raw) if reverse_raw not in (None, "") else False
        except ValueError:
            reverse = False
        exclude_ids: list[int] = []
        for raw in _split_list(params.get("exclude_ids")):
            try:
                exclude_ids.append(int(raw))
            except ValueError as exc:
                raise MalformedQuery(f"Invalid id in exclude_ids: {raw!r}") from exc
        return cls(
            query=str(query),
            limit=params.get("limit"),
            page=params.get("page"),
            cursor=cursor or None,
            reverse=reverse,
            exclude_ids=exclude_ids,
            exclude_hashes=_split_list(params.get("exclude_hashes")),
        )


class SearchService:
    def __init__(
        self,
        resolver: TagResolver,
        executor: SearchExecutor,
        planner: RankingPlanner,
        *,
        limits: SearchLimits,
        parser: GroupParser | None = None,
        compiler: QueryCompiler | None = None,
    ) -> None:
        self._resolver = resolver
        self._executor = executor
        self._planner = planner
        self._limits = limits
        self._parser = parser or GroupParser()
        self._compiler = compiler or QueryCompiler()

    def parse(self, query: str) -> Group:
        if len(query) > self._limits.max_query_length:
            raise MalformedQuery(
                f"Query exceeds {self._limits.max_query_length} characters"
            )
        return self._parser.parse(query)

    async def compile(
        self,
        query: str,
        *,
        exclude_ids: Iterable[int] = (),
        exclude_hashes: Iterable[str] = (),
    ) -> tuple[Group, BoolQuery]:
        group = self.parse(query)
        resolved = await self._resolver.resolve_names(group.literal_names())
        compiled = self._compiler.compile(
            group,
            resolved,
            exclude_ids=exclude_ids,
            exclude_hashes=exclude_hashes,
        )
        return group, compiled

    async def search(self, request: SearchRequest) -> SearchPage:
        group, compiled = await self.compile(
            request.query,
            exclude_ids=request.exclude_ids,
            exclude_hashes=request.exclude_hashes,
        )
        plan = self._planner.plan(group.order_directives, reverse=request.reverse)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Compiled %r into %s", request.query, describe(compiled))
        return await self._executor.execute(
            compiled,
            plan,
            limit=request.limit,
            page=request.page,
            cursor=request.cursor,
        )


__all__ = ["SearchRequest", "SearchService"]
