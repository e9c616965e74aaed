"""Buffered record writes with durable capture of per-document failures."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Iterable

from tagdex.app.db.failed_batches import FailedBatchesRepository
from tagdex.app.db.records import BulkWriteResult, RecordsRepository
from tagdex.app.models import Record
from tagdex.app.services.tag_resolver import TagResolver
from tagdex.upstream.parsing import RecordDraft

logger = logging.getLogger(__name__)


def record_document(record: Record) -> dict[str, Any]:
    document = asdict(record)
    document["children"] = sorted(record.children)
    return document


class BatchWriter:
    """Collect records and flush them to the index in fixed-size chunks."""

    def __init__(
        self,
        records: RecordsRepository,
        failed_batches: FailedBatchesRepository,
        *,
        stage: str,
        batch_size: int,
    ) -> None:
        self._records = records
        self._failed_batches = failed_batches
        self._stage = stage
        self._batch_size = max(1, int(batch_size))
        self._buffer: list[Record] = []
        self.result = BulkWriteResult()

    async def __aenter__(self) -> "BatchWriter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # Buffered work is dropped when the stage aborts; it is re-fetched next pass.
        if exc_type is None:
            await self.flush()

    async def add(self, record: Record) -> None:
        self._buffer.append(record)
        if len(self._buffer) >= self._batch_size:
            await self.flush()

    async def extend(self, records: Iterable[Record]) -> None:
        for record in records:
            await self.add(record)

    async def flush(self) -> BulkWriteResult:
        if not self._buffer:
            return BulkWriteResult()
        chunk, self._buffer = self._buffer, []
        outcome = await self._records.bulk_upsert(chunk)
        self.result.merge(outcome)
        if outcome.failures:
            failed_ids = {failure.document_id for failure in outcome.failures}
            await self._failed_batches.record(
                self._stage,
                [record_document(record) for record in chunk if record.id in failed_ids],
                [
                    {"id": failure.document_id, "error": failure.error}
                    for failure in outcome.failures
                ],
            )
        logger.debug(
            "Flushed %d records for %s (%d failed)",
            len(chunk),
            self._stage,
            len(outcome.failures),
        )
        return outcome


class RecordTransformer:
    """Resolve draft tag names into category buckets."""

    def __init__(self, resolver: TagResolver, *, concurrency: int) -> None:
        self._resolver = resolver
        self._semaphore = asyncio.Semaphore(max(1, int(concurrency)))

    async def transform(self, draft: RecordDraft) -> Record:
        tagged: list[tuple[int, int]] = []
        for name in draft.tag_names:
            tag = await self._resolver.resolve_tag(name, strict=True)
            if tag is None:
                logger.warning("Unable to resolve tag %r on record %s", name, draft.record.id)
                continue
            tagged.append((int(tag.category), tag.id))
        record = draft.record
        record.set_tags(tagged)
        return record

    async def transform_many(self, drafts: Iterable[RecordDraft]) -> list[Record]:
        async def _bounded(draft: RecordDraft) -> Record:
            async with self._semaphore:
                return await self.transform(draft)

        return list(await asyncio.gather(*(_bounded(draft) for draft in drafts)))


__all__ = ["BatchWriter", "RecordTransformer", "record_document"]
