from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from tagdex.app.errors import InvalidCursor, MalformedQuery, PaginationDepthExceeded
from tagdex.app.models import TagCategory
from tagdex.app.query.ranking import RankingPlanner
from tagdex.app.services.search_config import RankingConfig, SearchLimits
from tagdex.app.services.search_executor import SearchExecutor, encode_cursor
from tagdex.app.services.search_service import SearchRequest, SearchService
from tagdex.app.services.tag_cache import TagCache
from tagdex.app.services.tag_resolver import TagResolver

pytestmark = pytest.mark.asyncio

G = TagCategory.GENERAL

LIMITS = SearchLimits(
    default_limit=2,
    max_limit=10,
    max_result_window=4,
    max_query_length=200,
    max_wildcard_expansion=50,
    max_relationship_tags=50,
)
RANKING = RankingConfig(
    reference_epoch=1116892800, log_base=3.0, divisor=35000.0, window_days=2
)
NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def indexed(db, make_record, make_tag):
    await db.tags.upsert_tags(
        [make_tag(1, "blue_eyes"), make_tag(2, "red_eyes"), make_tag(3, "solo")]
    )
    await db.records.bulk_upsert(
        [
            make_record(1, tags={G: [1, 3]}, rating="s", score=5),
            make_record(2, tags={G: [2]}, rating="s", score=50),
            make_record(3, tags={G: [1]}, rating="e", score=10),
            make_record(4, tags={G: [1, 2]}, rating="s", deleted=True),
            make_record(5, tags={G: [3]}, rating="s", score=1),
            make_record(
                6,
                tags={G: [3]},
                rating="s",
                score=9,
                created_at=NOW - timedelta(hours=6),
            ),
        ]
    )
    return db


@pytest.fixture
def service(indexed) -> SearchService:
    resolver = TagResolver(
        indexed,
        None,
        cache=TagCache(100, 60),
        negative_cache=TagCache(100, 60),
        event_bus=indexed.events,
    )
    executor = SearchExecutor(
        indexed, limits=LIMITS, asset_base_url="https://static.example/data/"
    )
    planner = RankingPlanner(RANKING, clock=NOW.timestamp)
    return SearchService(resolver, executor, planner, limits=LIMITS)


def _ids(page) -> list[int]:
    return [record["id"] for record in page.records]


async def test_union_with_metatag(service: SearchService) -> None:
    page = await service.search(
        SearchRequest(query="blue_eyes ~ red_eyes rating:s", limit=10)
    )

    assert _ids(page) == [2, 1]
    assert page.next_cursor is None


async def test_presented_record_shape(service: SearchService) -> None:
    page = await service.search(SearchRequest(query="red_eyes"))

    (record,) = page.records
    assert record["tags"]["general"] == ["red_eyes"]
    assert record["md5"] == f"{2:032x}"
    assert record["file"].startswith("https://static.example/data/00/00/")
    assert record["file"].endswith(".png")


async def test_deleted_hidden_unless_requested(service: SearchService) -> None:
    visible = await service.search(SearchRequest(query="blue_eyes red_eyes"))
    deleted = await service.search(
        SearchRequest(query="blue_eyes red_eyes status:deleted")
    )

    assert _ids(visible) == []
    assert _ids(deleted) == [4]
    assert "file" not in deleted.records[0]


async def test_exclusions(service: SearchService) -> None:
    page = await service.search(
        SearchRequest(
            query="solo",
            limit=10,
            exclude_ids=[6],
            exclude_hashes=[f"{5:032x}"],
        )
    )

    assert _ids(page) == [1]


async def test_cursor_walks_every_page(service: SearchService) -> None:
    seen: list[int] = []
    cursor = None
    for _ in range(5):
        page = await service.search(SearchRequest(query="", cursor=cursor))
        seen.extend(_ids(page))
        cursor = page.next_cursor
        if cursor is None:
            break

    assert seen == [6, 5, 3, 2, 1]


async def test_cursor_follows_score_order(service: SearchService) -> None:
    first = await service.search(SearchRequest(query="order:score"))
    second = await service.search(
        SearchRequest(query="order:score", cursor=first.next_cursor)
    )

    assert _ids(first) == [2, 3]
    assert _ids(second) == [6, 1]


async def test_offset_paging_is_bounded(service: SearchService) -> None:
    page = await service.search(SearchRequest(query="", page=2))
    assert _ids(page) == [3, 2]

    with pytest.raises(PaginationDepthExceeded):
        await service.search(SearchRequest(query="", page=3))


async def test_seeded_random_is_repeatable(service: SearchService) -> None:
    first = await service.search(SearchRequest(query="order:random:42", limit=10))
    second = await service.search(SearchRequest(query="order:random:42", limit=10))

    assert _ids(first) == _ids(second)
    assert sorted(_ids(first)) == [1, 2, 3, 5, 6]


async def test_unseeded_random_rejects_cursor(service: SearchService) -> None:
    page = await service.search(SearchRequest(query="order:random"))
    assert page.next_cursor is None

    seeded = await service.search(SearchRequest(query="order:random:7"))
    with pytest.raises(InvalidCursor):
        await service.search(
            SearchRequest(query="order:random", cursor=seeded.next_cursor)
        )


async def test_garbage_cursor(service: SearchService) -> None:
    with pytest.raises(InvalidCursor):
        await service.search(SearchRequest(query="", cursor="!!not-a-cursor!!"))


async def test_rank_keeps_recent_scored_records(service: SearchService) -> None:
    page = await service.search(SearchRequest(query="order:rank", limit=10))

    assert _ids(page) == [6]


async def test_query_length_limit(service: SearchService) -> None:
    with pytest.raises(MalformedQuery):
        await service.search(SearchRequest(query="a " * 150))



async def test_random_order_depends_on_seed(
    service: SearchService, indexed, make_record
) -> None:
    await indexed.records.bulk_upsert(
        [make_record(record_id, tags={G: [3]}, rating="s") for record_id in range(7, 41)]
    )

    orders = [
        _ids(await service.search(SearchRequest(query=f"solo order:random:{seed}", limit=10)))
        for seed in (1, 2, 3, 42)
    ]

    assert len({tuple(order) for order in orders}) == len(orders)


async def test_cursor_with_nested_values_is_rejected(service: SearchService) -> None:
    with pytest.raises(InvalidCursor):
        await service.search(SearchRequest(query="", cursor=encode_cursor([{"a": 1}, 2])))


async def test_wildcard_expands_to_every_match(indexed) -> None:
    resolver = TagResolver(
        indexed,
        None,
        cache=TagCache(100, 60),
        negative_cache=TagCache(100, 60),
        max_wildcard_expansion=2,
    )
    service = SearchService(
        resolver,
        SearchExecutor(
            indexed, limits=LIMITS, asset_base_url="https://static.example/data/"
        ),
        RankingPlanner(RANKING, clock=NOW.timestamp),
        limits=LIMITS,
    )

    page = await service.search(SearchRequest(query="*_eyes", limit=10))
    assert sorted(_ids(page)) == [1, 2, 3]

    with pytest.raises(MalformedQuery):
        await service.search(SearchRequest(query="*s*"))
