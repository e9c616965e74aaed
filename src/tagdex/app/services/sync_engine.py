"""Recurring reconciliation of the index against the upstream catalog.

A pass walks the stages in order:

    FetchingNew -> ApplyingUpdates -> ReconcilingMisses ->
    RefreshingTagMetadata -> RefreshingAliases -> RefreshingImplications

A transient upstream failure aborts the pass without advancing checkpoints
and the next pass is scheduled after ``transient_backoff``. Any other failure
is logged and the next pass runs after the regular interval. The loop itself
only ends when it is cancelled or asked to stop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol, Sequence

from tagdex.app.db.sync_state import (
    FULL_RECONCILIATION_PENDING,
    LAST_PASS_COMPLETED,
    LATEST_ALIAS_UPDATE,
    LATEST_IMPLICATION_UPDATE,
    LATEST_TAG_UPDATE,
)
from tagdex.app.errors import UpstreamTransient
from tagdex.app.models import Tag, TagAlias, TagImplication
from tagdex.app.services.batch_writer import BatchWriter, RecordTransformer
from tagdex.app.services.search_config import SyncConfig
from tagdex.app.services.service_pulse import (
    SYNC_PASS_TOPIC,
    SYNC_STAGE_TOPIC,
    ServicePulse,
)
from tagdex.app.services.tag_resolver import TagResolver
from tagdex.upstream.exports import EXPORT_KINDS, ExportReader
from tagdex.upstream.parsing import (
    RecordDraft,
    RelationshipEntry,
    parse_export_post,
    parse_post,
    parse_relationship,
    parse_tag,
)
from tagdex.util import chunked, parse_timestamp, to_epoch

logger = logging.getLogger(__name__)

# Upstream caps id lists in a single search.
_IDS_PER_REQUEST = 100


class SyncStage(str, Enum):
    IDLE = "idle"
    FULL_RECONCILIATION = "full_reconciliation"
    FETCHING_NEW = "fetching_new"
    APPLYING_UPDATES = "applying_updates"
    RECONCILING_MISSES = "reconciling_misses"
    REFRESHING_TAG_METADATA = "refreshing_tag_metadata"
    REFRESHING_ALIASES = "refreshing_aliases"
    REFRESHING_IMPLICATIONS = "refreshing_implications"


class UpstreamCatalog(Protocol):
    async def list_records_after(self, after_id: int, *, limit: int = ...) -> list[dict[str, Any]]: ...

    async def list_records_changed(self, page: int, *, limit: int = ...) -> list[dict[str, Any]]: ...

    async def records_by_ids(self, record_ids: Iterable[int]) -> list[dict[str, Any]]: ...

    async def list_tags_updated(self, page: int, *, limit: int = ...) -> list[dict[str, Any]]: ...

    async def list_aliases(self, page: int, *, limit: int = ...) -> list[dict[str, Any]]: ...

    async def list_implications(self, page: int, *, limit: int = ...) -> list[dict[str, Any]]: ...

    async def get_tag(self, name: str) -> Tag | None: ...


class SyncEngine:
    """Sole writer of records; keeps taxonomy and relationships consistent."""

    def __init__(
        self,
        db,
        upstream: UpstreamCatalog,
        resolver: TagResolver,
        *,
        config: SyncConfig,
        exports: ExportReader | None = None,
        pulse: ServicePulse | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self._upstream = upstream
        self._resolver = resolver
        self._config = config
        self._exports = exports
        self._pulse = pulse
        self._clock = clock
        self._transformer = RecordTransformer(resolver, concurrency=config.concurrency)
        self._stage = SyncStage.IDLE
        self._stop = asyncio.Event()

    @property
    def stage(self) -> SyncStage:
        return self._stage

    def _enter(self, stage: SyncStage, **details: Any) -> None:
        self._stage = stage
        logger.debug("Sync stage -> %s", stage.value)
        if self._pulse is not None:
            self._pulse.emit(SYNC_STAGE_TOPIC, {"stage": stage.value, **details})

    def _writer(self, stage: SyncStage) -> BatchWriter:
        return BatchWriter(
            self._db.records,
            self._db.failed_batches,
            stage=stage.value,
            batch_size=self._config.batch_size,
        )

    # ------------------------------------------------------------- scheduling

    def stop(self) -> None:
        self._stop.set()

    async def run_forever(self) -> None:
        """Run passes until :meth:`stop` is called or the task is cancelled."""

        self._stop.clear()
        while not self._stop.is_set():
            delay = await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> float:
        """Run one pass and return the delay before the next one."""

        started = self._clock()
        try:
            await self.run_pass()
        except UpstreamTransient as exc:
            logger.warning(
                "Upstream unavailable during %s (%s); retrying in %.0fs",
                self._stage.value,
                exc,
                self._config.transient_backoff,
            )
            outcome, delay = "transient", self._config.transient_backoff
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Sync pass failed during %s", self._stage.value)
            outcome, delay = "failed", self._config.interval
        else:
            outcome, delay = "ok", self._config.interval
        finally:
            stage = self._stage
            self._enter(SyncStage.IDLE)

        if self._pulse is not None:
            self._pulse.emit(
                SYNC_PASS_TOPIC,
                {
                    "outcome": outcome,
                    "stage": stage.value,
                    "duration": self._clock() - started,
                    "next_in": delay,
                },
            )
        return delay

    async def run_pass(self) -> None:
        """Run every stage once; exceptions propagate to the caller."""

        if self._exports is not None and (
            await self._db.sync_state.get(FULL_RECONCILIATION_PENDING) is not None
            or (
                self._config.full_resync_on_empty
                and await self._db.records.count() == 0
            )
        ):
            await self.full_reconciliation()

        await self.fetch_new()
        await self.apply_updates()
        await self.reconcile_misses()
        await self.refresh_tags()
        await self.refresh_aliases()
        await self.refresh_implications()
        await self._db.sync_state.set(LAST_PASS_COMPLETED, int(self._clock()))

    # ----------------------------------------------------------------- records

    async def _write_drafts(self, writer: BatchWriter, drafts: Sequence[RecordDraft]) -> None:
        records = await self._transformer.transform_many(drafts)
        await writer.extend(records)

    async def fetch_new(self) -> int:
        """Page records after the highest indexed id."""

        self._enter(SyncStage.FETCHING_NEW)
        after = await self._db.records.max_id()
        limit = self._config.page_limit
        async with self._writer(SyncStage.FETCHING_NEW) as writer:
            for _ in range(self._config.max_update_pages):
                posts = await self._upstream.list_records_after(after, limit=limit)
                if not posts:
                    break
                drafts = [draft for draft in map(parse_post, posts) if draft]
                await self._write_drafts(writer, drafts)
                after = max([after, *(int(post["id"]) for post in posts if "id" in post)])
                if len(posts) < limit:
                    break
        written = len(writer.result.written)
        if written:
            logger.info("Indexed %d new records up to id %s", written, after)
        return written

    async def apply_updates(self) -> int:
        """Apply edits newest first until a record is already up to date."""

        self._enter(SyncStage.APPLYING_UPDATES)
        async with self._writer(SyncStage.APPLYING_UPDATES) as writer:
            for page in range(1, self._config.max_update_pages + 1):
                posts = await self._upstream.list_records_changed(
                    page, limit=self._config.page_limit
                )
                if not posts:
                    break
                drafts = [draft for draft in map(parse_post, posts) if draft]
                stored = await self._db.records.updated_at_for(
                    draft.record.id for draft in drafts
                )
                pending: list[RecordDraft] = []
                caught_up = False
                for draft in drafts:
                    record_id = draft.record.id
                    if record_id in stored and stored[record_id] == to_epoch(
                        draft.record.updated_at
                    ):
                        caught_up = True
                        break
                    pending.append(draft)
                await self._write_drafts(writer, pending)
                if caught_up:
                    break
        written = len(writer.result.written)
        if written:
            logger.info("Applied %d record updates", written)
        return written

    async def reconcile_misses(self) -> int:
        """Fetch parents referenced only by hanging relationships."""

        self._enter(SyncStage.RECONCILING_MISSES)
        hanging = await self._db.records.hanging_relationships(
            limit=self._config.page_limit
        )
        if not hanging:
            return 0
        parent_ids = [relationship.parent_id for relationship in hanging]
        found: set[int] = set()
        async with self._writer(SyncStage.RECONCILING_MISSES) as writer:
            for chunk in chunked(parent_ids, _IDS_PER_REQUEST):
                posts = await self._upstream.records_by_ids(chunk)
                drafts = [draft for draft in map(parse_post, posts) if draft]
                found.update(draft.record.id for draft in drafts)
                await self._write_drafts(writer, drafts)
        missing = set(parent_ids) - found
        if missing:
            logger.info("Dropping %d hanging parents unknown upstream", len(missing))
            await self._db.records.drop_hanging(missing)
        return len(writer.result.written)

    # ---------------------------------------------------------------- taxonomy

    async def _page_until(
        self,
        fetch: Callable[[int], Awaitable[list[dict[str, Any]]]],
        checkpoint_key: str,
    ) -> tuple[list[dict[str, Any]], int | None]:
        """Collect update-ordered entries newer than the stored checkpoint.

        Without a checkpoint only the first page is read.
        """

        checkpoint = await self._db.sync_state.get(checkpoint_key)
        collected: list[dict[str, Any]] = []
        newest = checkpoint
        for page in range(1, self._config.max_update_pages + 1):
            entries = await fetch(page)
            if not entries:
                break
            reached = False
            for entry in entries:
                stamp = to_epoch(
                    parse_timestamp(entry.get("updated_at") or entry.get("created_at"))
                )
                if checkpoint is not None and stamp is not None and stamp <= checkpoint:
                    reached = True
                    break
                collected.append(entry)
                if stamp is not None and (newest is None or stamp > newest):
                    newest = stamp
            if reached or checkpoint is None:
                break
        return collected, newest

    async def refresh_tags(self) -> int:
        self._enter(SyncStage.REFRESHING_TAG_METADATA)
        limit = self._config.metadata_page_limit
        entries, newest = await self._page_until(
            lambda page: self._upstream.list_tags_updated(page, limit=limit),
            LATEST_TAG_UPDATE,
        )
        tags = [parse_tag(entry) for entry in entries]
        await self._apply_tags(tags)
        if newest is not None:
            await self._db.sync_state.set(LATEST_TAG_UPDATE, newest)
        return len(tags)

    async def refresh_tag(self, name: str) -> Tag | None:
        """Re-read one tag from upstream and apply it as a metadata update."""

        tag = await self._upstream.get_tag(name)
        if tag is not None:
            await self._apply_tags([tag])
        self._resolver.invalidate(name)
        return tag

    async def _apply_tags(self, tags: Sequence[Tag]) -> None:
        if not tags:
            return
        # Newest entry wins when a tag appears twice in one listing.
        latest = {tag.id: tag for tag in reversed(tags)}
        changes = await self._db.tags.upsert_tags(list(latest.values()))
        for change in changes:
            await self._db.records.migrate_tag_category(
                change.tag_id,
                change.old,
                change.new,
                batch_size=self._config.batch_size,
            )

    async def _consequent_id(self, name: str) -> int | None:
        tag = await self._resolver.resolve_tag(name, strict=True)
        if tag is None:
            logger.warning("Unable to resolve tag %r for relationship", name)
            return None
        return tag.id

    async def _apply_aliases(self, entries: Sequence[RelationshipEntry]) -> None:
        active: dict[int, TagAlias] = {}
        inactive: set[int] = set()
        for entry in entries:
            if entry.id in active or entry.id in inactive:
                continue
            if not entry.is_active:
                inactive.add(entry.id)
                continue
            consequent = await self._consequent_id(entry.consequent_name)
            if consequent is None:
                continue
            active[entry.id] = TagAlias(
                id=entry.id,
                antecedent_name=entry.antecedent_name,
                consequent_id=consequent,
                updated_at=entry.updated_at,
            )
        await self._db.tags.upsert_aliases(list(active.values()))
        await self._db.tags.delete_aliases(inactive)

    async def _apply_implications(self, entries: Sequence[RelationshipEntry]) -> None:
        active: dict[int, TagImplication] = {}
        inactive: set[int] = set()
        for entry in entries:
            if entry.id in active or entry.id in inactive:
                continue
            if not entry.is_active:
                inactive.add(entry.id)
                continue
            antecedent = await self._consequent_id(entry.antecedent_name)
            consequent = await self._consequent_id(entry.consequent_name)
            if antecedent is None or consequent is None:
                continue
            implication = TagImplication(
                id=entry.id,
                antecedent_id=antecedent,
                consequent_id=consequent,
                updated_at=entry.updated_at,
            )
            if implication.is_self_loop:
                logger.debug("Dropping self-implication %s", entry.id)
                continue
            active[entry.id] = implication
        await self._db.tags.upsert_implications(list(active.values()))
        await self._db.tags.delete_implications(inactive)

    async def refresh_aliases(self) -> int:
        self._enter(SyncStage.REFRESHING_ALIASES)
        entries, newest = await self._page_until(
            lambda page: self._upstream.list_aliases(
                page, limit=self._config.metadata_page_limit
            ),
            LATEST_ALIAS_UPDATE,
        )
        await self._apply_aliases([parse_relationship(entry) for entry in entries])
        if newest is not None:
            await self._db.sync_state.set(LATEST_ALIAS_UPDATE, newest)
        return len(entries)

    async def refresh_implications(self) -> int:
        self._enter(SyncStage.REFRESHING_IMPLICATIONS)
        entries, newest = await self._page_until(
            lambda page: self._upstream.list_implications(
                page, limit=self._config.metadata_page_limit
            ),
            LATEST_IMPLICATION_UPDATE,
        )
        await self._apply_implications([parse_relationship(entry) for entry in entries])
        if newest is not None:
            await self._db.sync_state.set(LATEST_IMPLICATION_UPDATE, newest)
        return len(entries)

    # ------------------------------------------------------ full reconciliation

    async def full_reconciliation(self) -> None:
        """Rebuild the index from the daily exports, then recount tag usage.

        The exports still to load are checkpointed in ``sync_state``; an
        interrupted reconciliation resumes with the first unfinished export
        on the next pass.
        """

        if self._exports is None:
            raise RuntimeError("Full reconciliation requires an export reader")
        state = self._db.sync_state
        remaining = await state.get(FULL_RECONCILIATION_PENDING)
        if remaining is None:
            logger.info("Starting full reconciliation from exports")
            remaining = list(EXPORT_KINDS)
            await state.set(FULL_RECONCILIATION_PENDING, remaining)
        else:
            logger.info("Resuming full reconciliation with %s", ", ".join(remaining) or "recount")

        loaders = {
            "tags": self._reconcile_tags,
            "posts": self._reconcile_posts,
            "tag_aliases": self._reconcile_aliases,
            "tag_implications": self._reconcile_implications,
        }
        for export in EXPORT_KINDS:
            if export not in remaining:
                continue
            self._enter(SyncStage.FULL_RECONCILIATION, export=export)
            path = await self._exports.fetch(export)
            await loaders[export](path)
            remaining = [name for name in remaining if name != export]
            await state.set(FULL_RECONCILIATION_PENDING, remaining)

        await self._db.tags.recompute_post_counts()
        await state.delete(FULL_RECONCILIATION_PENDING)
        logger.info("Full reconciliation finished")

    async def _reconcile_tags(self, path: Path) -> None:
        async for rows in self._exports.batches(path, self._config.export_batch_size):
            await self._apply_tags(
                [parse_tag(row) for row in rows if row.get("id") and row.get("name")]
            )

    async def _reconcile_posts(self, path: Path) -> None:
        async with self._writer(SyncStage.FULL_RECONCILIATION) as writer:
            async for rows in self._exports.batches(path, self._config.export_batch_size):
                drafts = [draft for draft in map(parse_export_post, rows) if draft]
                stored = await self._db.records.updated_at_for(
                    draft.record.id for draft in drafts
                )
                changed = [
                    draft
                    for draft in drafts
                    if stored.get(draft.record.id, -1) != to_epoch(draft.record.updated_at)
                ]
                await self._write_drafts(writer, changed)
                logger.info("Processed %d export posts", len(rows))

    async def _reconcile_aliases(self, path: Path) -> None:
        async for rows in self._exports.batches(path, self._config.export_batch_size):
            await self._apply_aliases([parse_relationship(row) for row in rows])

    async def _reconcile_implications(self, path: Path) -> None:
        async for rows in self._exports.batches(path, self._config.export_batch_size):
            await self._apply_implications([parse_relationship(row) for row in rows])


__all__ = ["SyncEngine", "SyncStage", "UpstreamCatalog"]
