"""TTL caches used by the tag resolver."""

from __future__ import annotations

import time
from typing import Callable, Generic, Hashable, TypeVar

from cachetools import TTLCache

from tagdex.app.services.search_config import TagCacheConfig

_V = TypeVar("_V")

_MISSING = object()


class TagCache(Generic[_V]):
    """Bounded TTL cache with an injectable clock.

    Thin wrapper over :class:`cachetools.TTLCache` so tests can drive expiry
    with a fake timer and the resolver can be handed explicit instances.
    """

    __slots__ = ("_entries",)

    def __init__(
        self,
        maxsize: int,
        ttl: float,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: TTLCache[Hashable, _V] = TTLCache(
            maxsize=max(1, int(maxsize)), ttl=float(ttl), timer=timer
        )

    def get(self, key: Hashable, default: _V | None = None) -> _V | None:
        return self._entries.get(key, default)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def set(self, key: Hashable, value: _V) -> None:
        self._entries[key] = value

    def invalidate(self, key: Hashable) -> bool:
        return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        self._entries.clear()


def build_tag_caches(
    config: TagCacheConfig, *, timer: Callable[[], float] = time.monotonic
) -> tuple[TagCache, TagCache]:
    """Return the ``(positive, negative)`` cache pair for a resolver."""

    return (
        TagCache(config.maxsize, config.ttl, timer=timer),
        TagCache(config.negative_maxsize, config.negative_ttl, timer=timer),
    )


__all__ = ["TagCache", "build_tag_caches"]
