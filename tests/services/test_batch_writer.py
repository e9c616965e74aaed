from __future__ import annotations

import pytest

from tagdex.app.db.records import BulkWriteResult, DocumentFailure
from tagdex.app.models import TagCategory
from tagdex.app.services.batch_writer import BatchWriter

pytestmark = pytest.mark.asyncio


class RefusingRecords:
    """Accepts every record except the ids listed in ``refuse``."""

    def __init__(self, refuse=()) -> None:
        self.refuse = set(refuse)
        self.chunks: list[list[int]] = []

    async def bulk_upsert(self, records):
        self.chunks.append([record.id for record in records])
        result = BulkWriteResult()
        for record in records:
            if record.id in self.refuse:
                result.failures.append(DocumentFailure(record.id, "refused"))
            else:
                result.written.append(record.id)
        return result


async def test_flushes_in_fixed_chunks(db, make_record) -> None:
    records = RefusingRecords()
    async with BatchWriter(
        records, db.failed_batches, stage="fetching_new", batch_size=2
    ) as writer:
        await writer.extend(make_record(record_id) for record_id in range(1, 6))

    assert records.chunks == [[1, 2], [3, 4], [5]]
    assert writer.result.written == [1, 2, 3, 4, 5]
    assert await db.failed_batches.list_recent() == []


async def test_failures_are_captured_with_their_documents(db, make_record) -> None:
    records = RefusingRecords(refuse={2})
    async with BatchWriter(
        records, db.failed_batches, stage="applying_updates", batch_size=10
    ) as writer:
        await writer.add(make_record(1))
        await writer.add(make_record(2, tags={TagCategory.ARTIST: [9]}))

    assert writer.result.written == [1]
    (batch,) = await db.failed_batches.list_recent()
    assert batch.stage == "applying_updates"
    assert [document["id"] for document in batch.documents] == [2]
    assert batch.documents[0]["tags"][TagCategory.ARTIST] == [9]
    assert batch.errors == [{"id": 2, "error": "refused"}]


async def test_buffer_is_dropped_when_the_stage_fails(db, make_record) -> None:
    records = RefusingRecords()
    with pytest.raises(RuntimeError):
        async with BatchWriter(
            records, db.failed_batches, stage="fetching_new", batch_size=10
        ) as writer:
            await writer.add(make_record(1))
            raise RuntimeError("upstream went away")

    assert records.chunks == []
