from __future__ import annotations

import pytest

from tagdex.app.models import TagCategory

pytestmark = pytest.mark.asyncio

G = TagCategory.GENERAL
S = TagCategory.SPECIES


async def _post_counts(db, *tag_ids: int) -> list[int]:
    tags = await db.tags.get_many(tag_ids)
    return [tags[tag_id].post_count for tag_id in tag_ids]


async def test_round_trips_records(db, make_record) -> None:
    record = make_record(
        10,
        tags={G: [1, 2], S: [3]},
        sources=["https://example.test/a.png"],
        width=1920,
        height=1080,
        score=12,
    )

    result = await db.records.bulk_upsert([record])
    stored = await db.records.get(10)

    assert result.ok and result.written == [10]
    assert stored is not None
    assert stored.tags[int(G)] == [1, 2]
    assert stored.tags[int(S)] == [3]
    assert stored.flattened_tags == {1, 2, 3}
    assert stored.sources == ["https://example.test/a.png"]
    assert stored.created_at == record.created_at
    assert stored.ratio == 1.78
    assert await db.records.max_id() == 10
    assert await db.records.count() == 1


async def test_child_before_parent_creates_hanging_relationship(db, make_record) -> None:
    await db.records.bulk_upsert([make_record(2, parent_id=1)])

    hanging = await db.records.hanging_relationships()
    assert [(item.parent_id, item.children) for item in hanging] == [(1, {2})]

    await db.records.bulk_upsert([make_record(1)])

    parent = await db.records.get(1)
    assert parent is not None and parent.children >= {2}
    assert await db.records.hanging_relationships() == []


async def test_child_after_parent_is_attached_directly(db, make_record) -> None:
    await db.records.bulk_upsert([make_record(1)])
    await db.records.bulk_upsert([make_record(2, parent_id=1), make_record(3, parent_id=1)])

    parent = await db.records.get(1)
    assert parent is not None and parent.children == {2, 3}
    assert await db.records.hanging_relationships() == []


async def test_reparenting_moves_the_child(db, make_record) -> None:
    await db.records.bulk_upsert([make_record(1), make_record(5), make_record(2, parent_id=1)])
    await db.records.bulk_upsert([make_record(2, parent_id=5)])

    records = await db.records.get_many([1, 5])
    assert records[1].children == set()
    assert records[5].children == {2}


async def test_parent_update_keeps_existing_children(db, make_record) -> None:
    await db.records.bulk_upsert([make_record(1), make_record(2, parent_id=1)])
    await db.records.bulk_upsert([make_record(1, score=50)])

    parent = await db.records.get(1)
    assert parent is not None and parent.children == {2}
    assert parent.score == 50


async def test_tag_counters_follow_tag_diffs(db, make_record, make_tag) -> None:
    await db.tags.upsert_tags([make_tag(1, "a"), make_tag(2, "b"), make_tag(3, "c")])

    await db.records.bulk_upsert(
        [make_record(1, tags={G: [1, 2]}), make_record(2, tags={G: [1]})]
    )
    assert await _post_counts(db, 1, 2, 3) == [2, 1, 0]

    await db.records.bulk_upsert([make_record(1, tags={G: [1, 3]})])
    assert await _post_counts(db, 1, 2, 3) == [2, 0, 1]

    await db.records.bulk_upsert([make_record(1, tags={G: [1, 3]})])
    assert await _post_counts(db, 1, 2, 3) == [2, 0, 1]


async def test_one_bad_document_does_not_abort_the_batch(db, make_record, make_tag) -> None:
    await db.tags.upsert_tags([make_tag(1, "a")])
    broken = make_record(2, tags={G: [1]})
    broken.rating = None

    result = await db.records.bulk_upsert(
        [make_record(1, tags={G: [1]}), broken, make_record(3, tags={G: [1]})]
    )

    assert result.written == [1, 3]
    assert [failure.document_id for failure in result.failures] == [2]
    assert await db.records.get(2) is None
    assert await _post_counts(db, 1) == [2]


async def test_category_migration_moves_tag_between_buckets(db, make_record) -> None:
    await db.records.bulk_upsert(
        [make_record(record_id, tags={G: [7, 8]}) for record_id in range(1, 6)]
        + [make_record(6, tags={G: [8]})]
    )

    patched = await db.records.migrate_tag_category(7, G, S, batch_size=2)

    assert patched == 5
    records = await db.records.get_many(range(1, 7))
    for record_id in range(1, 6):
        assert records[record_id].tags[int(G)] == [8]
        assert records[record_id].tags[int(S)] == [7]
        assert records[record_id].flattened_tags == {7, 8}
    assert records[6].tags[int(G)] == [8]


async def test_drop_hanging(db, make_record) -> None:
    await db.records.bulk_upsert([make_record(2, parent_id=1), make_record(4, parent_id=3)])

    await db.records.drop_hanging([1])

    assert [item.parent_id for item in await db.records.hanging_relationships()] == [3]
