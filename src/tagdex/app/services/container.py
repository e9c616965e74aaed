"""Application service and lifecycle helpers."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

import httpx

from tagdex.app.index.sql_query import SqlTranslator
from tagdex.app.query.ranking import HotRankStrategy, RankingPlanner
from tagdex.app.services.provenance import (
    DirectSourceChecker,
    ProvenanceService,
    SourceCheckerRegistry,
)
from tagdex.app.services.search_config import SearchConfig, SyncConfig, UpstreamConfig
from tagdex.app.services.search_executor import SearchExecutor
from tagdex.app.services.search_service import SearchService
from tagdex.app.services.service_pulse import ServicePulse
from tagdex.app.services.sync_engine import SyncEngine
from tagdex.app.services.tag_cache import build_tag_caches
from tagdex.app.services.tag_resolver import TagResolver
from tagdex.app.services.taxonomy_service import TaxonomyService
from tagdex.persistence.local_db import LocalDB
from tagdex.settings import PROJECT_ROOT, settings
from tagdex.upstream import ExportReader, UpstreamClient

logger = logging.getLogger(__name__)


def _export_directory(config: UpstreamConfig) -> Path:
    path = Path(config.export_dir).expanduser()
    if not path.is_absolute():
        path = PROJECT_ROOT.parent / path
    return path


@dataclass(slots=True)
class AppServices:
    """Bundle long-lived application services."""

    db: LocalDB
    upstream: UpstreamClient
    resolver: TagResolver
    search_service: SearchService
    taxonomy_service: TaxonomyService
    provenance: ProvenanceService
    sync_engine: SyncEngine
    service_pulse: ServicePulse
    sync_config: SyncConfig
    http_client: httpx.AsyncClient

    @classmethod
    def create(cls) -> "AppServices":
        search_config = SearchConfig.from_settings(settings)
        upstream_config = UpstreamConfig.from_settings(settings)
        sync_config = SyncConfig.from_settings(settings)

        scoring = HotRankStrategy.from_config(search_config.ranking)
        db = LocalDB(scoring=scoring)
        service_pulse = ServicePulse()
        upstream = UpstreamClient(upstream_config)

        cache, negative_cache = build_tag_caches(search_config.tag_cache)
        resolver = TagResolver(
            db,
            upstream,
            cache=cache,
            negative_cache=negative_cache,
            max_wildcard_expansion=search_config.limits.max_wildcard_expansion,
            event_bus=db.events,
        )
        executor = SearchExecutor(
            db,
            limits=search_config.limits,
            asset_base_url=search_config.asset_base_url,
            translator=SqlTranslator(scoring_name=scoring.name),
        )
        planner = RankingPlanner(search_config.ranking, scoring=scoring)
        search_service = SearchService(
            resolver, executor, planner, limits=search_config.limits
        )
        taxonomy_service = TaxonomyService(
            resolver, db, max_tags=search_config.limits.max_relationship_tags
        )

        http_client = httpx.AsyncClient(
            timeout=upstream_config.timeout,
            headers={"User-Agent": upstream_config.user_agent},
            follow_redirects=True,
        )
        registry = SourceCheckerRegistry([DirectSourceChecker(http_client)])
        provenance = ProvenanceService(db, registry)

        exports = ExportReader(upstream, _export_directory(upstream_config))
        sync_engine = SyncEngine(
            db,
            upstream,
            resolver,
            config=sync_config,
            exports=exports,
            pulse=service_pulse,
        )
        return cls(
            db=db,
            upstream=upstream,
            resolver=resolver,
            search_service=search_service,
            taxonomy_service=taxonomy_service,
            provenance=provenance,
            sync_engine=sync_engine,
            service_pulse=service_pulse,
            sync_config=sync_config,
            http_client=http_client,
        )


class AppLifecycle:
    """Manage startup and shutdown of long-lived application services."""

    def __init__(self, services: AppServices) -> None:
        self._services = services
        self._sync_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._started = False

    async def __aenter__(self) -> "AppLifecycle":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """Open the database and start the sync loop when enabled."""

        async with self._lock:
            if self._started:
                return

            await self._services.db.init()
            if self._services.sync_config.enabled:
                self._sync_task = asyncio.create_task(
                    self._services.sync_engine.run_forever(),
                    name="tagdex-sync",
                )
            else:
                logger.info("Index synchronisation disabled")
            self._started = True
            logger.info("Application lifecycle started")

    async def stop(self) -> None:
        """Cancel the sync loop and release network and database resources."""

        sync_task: asyncio.Task | None
        async with self._lock:
            if not self._started:
                return
            sync_task = self._sync_task
            self._sync_task = None
            self._started = False

        if sync_task is not None:
            self._services.sync_engine.stop()
            sync_task.cancel()
            with suppress(asyncio.CancelledError):
                await sync_task

        errors: list[Exception] = []

        for label, closer in (
            ("upstream client", self._services.upstream.aclose),
            ("source checker client", self._services.http_client.aclose),
            ("database", self._services.db.close),
        ):
            try:
                await closer()
            except Exception as exc:
                logger.exception("Failed to close %s cleanly", label)
                errors.append(exc)

        if errors:
            raise errors[0]

        logger.info("Application lifecycle stopped")

    @property
    def services(self) -> AppServices:
        return self._services


def get_services() -> AppServices:
    """Return the :class:`AppServices` container bound to the running app."""

    from quart import current_app

    services = current_app.extensions.get("tagdex")
    if services is None:
        raise RuntimeError("App services container is not initialised")
    return services


__all__ = ["AppLifecycle", "AppServices", "get_services"]
