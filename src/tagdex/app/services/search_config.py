from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(slots=True, frozen=True)
class SearchLimits:
    """Limits applied to search requests."""

    default_limit: int
    max_limit: int
    max_result_window: int
    max_query_length: int
    max_wildcard_expansion: int
    max_relationship_tags: int

    def clamp_limit(self, raw: Any) -> int:
        """Clamp a caller-supplied page size to ``[1, max_limit]``."""

        try:
            value = int(raw)
        except (TypeError, ValueError):
            return self.default_limit
        return max(1, min(value, self.max_limit))

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class RankingConfig:
    """Constants of the hot-rank ordering."""

    reference_epoch: int
    log_base: float
    divisor: float
    window_days: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class TagCacheConfig:
    maxsize: int
    ttl: float
    negative_maxsize: int
    negative_ttl: float


@dataclass(slots=True, frozen=True)
class SearchConfig:
    """Aggregate search configuration used across services."""

    limits: SearchLimits
    ranking: RankingConfig
    tag_cache: TagCacheConfig
    asset_base_url: str

    @classmethod
    def from_settings(cls, settings: Any) -> "SearchConfig":
        """Construct a :class:`SearchConfig` from application settings."""

        search_settings = settings.SEARCH
        ranking_settings = settings.RANKING
        cache_settings = settings.TAG_CACHE
        limits = SearchLimits(
            default_limit=int(search_settings.default_limit),
            max_limit=int(search_settings.max_limit),
            max_result_window=int(search_settings.max_result_window),
            max_query_length=int(search_settings.max_query_length),
            max_wildcard_expansion=int(search_settings.max_wildcard_expansion),
            max_relationship_tags=int(search_settings.max_relationship_tags),
        )
        ranking = RankingConfig(
            reference_epoch=int(ranking_settings.reference_epoch),
            log_base=float(ranking_settings.log_base),
            divisor=float(ranking_settings.divisor),
            window_days=int(ranking_settings.window_days),
        )
        tag_cache = TagCacheConfig(
            maxsize=int(cache_settings.maxsize),
            ttl=float(cache_settings.ttl),
            negative_maxsize=int(cache_settings.negative_maxsize),
            negative_ttl=float(cache_settings.negative_ttl),
        )
        return cls(
            limits=limits,
            ranking=ranking,
            tag_cache=tag_cache,
            asset_base_url=str(settings.ASSETS.base_url).rstrip("/"),
        )

    def as_dict(self) -> dict[str, Any]:
        """Return the full configuration as a dictionary."""

        return {
            "limits": self.limits.as_dict(),
            "ranking": self.ranking.as_dict(),
            "tag_cache": asdict(self.tag_cache),
            "asset_base_url": self.asset_base_url,
        }


@dataclass(slots=True, frozen=True)
class UpstreamConfig:
    base_url: str
    export_url: str
    user_agent: str
    username: str | None
    api_key: str | None
    request_interval: float
    queue_backoff: float
    timeout: float
    export_dir: str

    @classmethod
    def from_settings(cls, settings: Any) -> "UpstreamConfig":
        upstream = settings.UPSTREAM
        return cls(
            base_url=str(upstream.base_url).rstrip("/"),
            export_url=str(upstream.export_url).rstrip("/"),
            user_agent=str(upstream.user_agent),
            username=upstream.get("username") or None,
            api_key=upstream.get("api_key") or None,
            request_interval=float(upstream.request_interval),
            queue_backoff=float(upstream.queue_backoff),
            timeout=float(upstream.timeout),
            export_dir=str(upstream.export_dir),
        )


@dataclass(slots=True, frozen=True)
class SyncConfig:
    """Scheduling and batching knobs of the reconciliation loop."""

    enabled: bool
    interval: float
    transient_backoff: float
    batch_size: int
    concurrency: int
    page_limit: int
    metadata_page_limit: int
    max_update_pages: int
    full_resync_on_empty: bool
    export_batch_size: int

    @classmethod
    def from_settings(cls, settings: Any) -> "SyncConfig":
        sync = settings.SYNC
        return cls(
            enabled=bool(sync.enabled),
            interval=float(sync.interval),
            transient_backoff=float(sync.transient_backoff),
            batch_size=int(sync.batch_size),
            concurrency=int(sync.concurrency),
            page_limit=int(sync.page_limit),
            metadata_page_limit=int(sync.metadata_page_limit),
            max_update_pages=int(sync.max_update_pages),
            full_resync_on_empty=bool(sync.full_resync_on_empty),
            export_batch_size=int(sync.export_batch_size),
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = [
    "RankingConfig",
    "SearchConfig",
    "SearchLimits",
    "SyncConfig",
    "TagCacheConfig",
    "UpstreamConfig",
]
