"""Resolve tag names to canonical tags through aliases, caches and upstream."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Protocol

from tagdex.app.db.events import TAXONOMY_EVENTS, RepositoryEventBus
from tagdex.app.errors import MalformedQuery, UpstreamTransient
from tagdex.app.models import Tag
from tagdex.app.services.tag_cache import TagCache

logger = logging.getLogger(__name__)

WILDCARD_CHARS = ("*", "?")


class TagLookup(Protocol):
    async def get_tag(self, name: str) -> Tag | None: ...


def normalize_name(name: str) -> str:
    return name.strip().casefold()


def is_wildcard(name: str) -> bool:
    return any(char in name for char in WILDCARD_CHARS)


class TagResolver:
    """Name -> :class:`Tag` with alias dereferencing and negative caching.

    Lookups go alias table first, then the tag table, then the upstream
    catalog. Concurrent lookups of the same unseen name share one in-flight
    task. Transient upstream failures are never cached.
    """

    def __init__(
        self,
        db,
        upstream: TagLookup | None,
        *,
        cache: TagCache,
        negative_cache: TagCache,
        max_wildcard_expansion: int = 500,
        event_bus: RepositoryEventBus | None = None,
    ) -> None:
        self._db = db
        self._upstream = upstream
        self._cache = cache
        self._negative = negative_cache
        self._max_wildcard_expansion = max(1, int(max_wildcard_expansion))
        self._inflight: dict[str, asyncio.Task[Tag | None]] = {}
        if event_bus is not None:
            event_bus.subscribe_many(TAXONOMY_EVENTS, self._handle_taxonomy_changed)

    async def resolve(self, name: str, *, strict: bool = False) -> int | None:
        tag = await self.resolve_tag(name, strict=strict)
        return tag.id if tag else None

    async def resolve_tag(self, name: str, *, strict: bool = False) -> Tag | None:
        """Return the canonical tag for ``name``.

        With ``strict`` an :class:`UpstreamTransient` propagates; otherwise it
        degrades to a miss that is not remembered.
        """

        key = normalize_name(name)
        if not key:
            return None
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        if key in self._negative:
            return None

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key))
            self._inflight[key] = task
            task.add_done_callback(lambda _done, key=key: self._inflight.pop(key, None))
        try:
            return await asyncio.shield(task)
        except UpstreamTransient:
            if strict:
                raise
            logger.warning("Upstream unavailable while resolving tag %r", key)
            return None

    async def _load(self, key: str) -> Tag | None:
        alias = await self._db.tags.get_alias(key)
        if alias is not None:
            tag = await self._db.tags.get(alias.consequent_id)
            if tag is not None:
                self._cache.set(key, tag)
                return tag
            logger.debug("Alias %r points at unknown tag %s", key, alias.consequent_id)

        tag = await self._db.tags.get_by_name(key)
        if tag is None and self._upstream is not None:
            tag = await self._upstream.get_tag(key)
            if tag is not None:
                await self._db.tags.upsert_tags([tag])
                logger.info("Fetched new tag %r (%s) from upstream", tag.name, tag.id)

        if tag is None:
            self._negative.set(key, True)
            return None
        self._cache.set(key, tag)
        return tag

    async def expand_wildcard(self, pattern: str) -> tuple[int, ...]:
        """Return ids of every tag matching ``pattern``, most used first.

        A pattern matching more than ``max_wildcard_expansion`` tags is
        rejected rather than truncated.
        """

        key = normalize_name(pattern)
        if not key.strip("*?"):
            return ()
        cap = self._max_wildcard_expansion
        matches = await self._db.tags.search_pattern(key, cap + 1)
        if len(matches) > cap:
            raise MalformedQuery(f"Wildcard {key!r} matches more than {cap} tags")
        return tuple(tag.id for tag in matches)

    async def resolve_names(self, names: Iterable[str]) -> dict[str, tuple[int, ...]]:
        """Resolve every name concurrently; wildcards expand to many ids."""

        unique = sorted({normalize_name(name) for name in names if name})

        async def _one(name: str) -> tuple[int, ...]:
            if is_wildcard(name):
                return await self.expand_wildcard(name)
            tag_id = await self.resolve(name)
            return (tag_id,) if tag_id is not None else ()

        results = await asyncio.gather(*(_one(name) for name in unique))
        return dict(zip(unique, results))

    async def resolve_tags(self, names: Iterable[str]) -> dict[str, Tag]:
        unique = sorted({normalize_name(name) for name in names if name})
        tags = await asyncio.gather(*(self.resolve_tag(name) for name in unique))
        return {name: tag for name, tag in zip(unique, tags) if tag is not None}

    def invalidate(self, name: str) -> None:
        key = normalize_name(name)
        self._cache.invalidate(key)
        self._negative.invalidate(key)

    async def _handle_taxonomy_changed(self, *, names: Iterable[str] = ()) -> None:
        for name in names:
            self.invalidate(name)


__all__ = ["TagLookup", "TagResolver", "is_wildcard", "normalize_name"]
