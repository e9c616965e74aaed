from __future__ import annotations

import pytest
import pytest_asyncio

from tagdex.app.models import TagAlias, TagCategory, TagImplication
from tagdex.app.services.tag_cache import TagCache
from tagdex.app.services.tag_resolver import TagResolver
from tagdex.app.services.taxonomy_service import TaxonomyService

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def service(db, make_tag) -> TaxonomyService:
    await db.tags.upsert_tags(
        [
            make_tag(1, "kitten", TagCategory.SPECIES, 5),
            make_tag(2, "domestic_cat", TagCategory.SPECIES, 9),
            make_tag(3, "felid", TagCategory.SPECIES, 12),
            make_tag(4, "mammal", TagCategory.SPECIES, 40),
        ]
    )
    await db.tags.upsert_aliases([TagAlias(1, "kitty", 2)])
    await db.tags.upsert_implications(
        [
            TagImplication(10, 1, 2),
            TagImplication(11, 2, 3),
            TagImplication(12, 3, 4),
        ]
    )
    resolver = TagResolver(
        db,
        None,
        cache=TagCache(100, 60),
        negative_cache=TagCache(100, 60),
        event_bus=db.events,
    )
    return TaxonomyService(resolver, db, max_tags=3)


async def test_lookup_omits_misses(service: TaxonomyService) -> None:
    found = await service.lookup(["Kitten", "nope"])

    assert list(found) == ["kitten"]
    assert found["kitten"]["categoryName"] == "species"
    assert found["kitten"]["postCount"] == 5


async def test_direct_relationships_via_alias(service: TaxonomyService) -> None:
    relationships = await service.relationships(["kitty"])

    assert relationships == {
        "domestic_cat": {"children": ["kitten"], "parents": ["felid"]}
    }


async def test_transitive_parents(service: TaxonomyService) -> None:
    relationships = await service.relationships(["kitten"], ["allparents"])

    assert relationships == {
        "kitten": {"parents": ["domestic_cat", "felid", "mammal"]}
    }


async def test_request_is_capped(service: TaxonomyService) -> None:
    found = await service.lookup(["kitten", "domestic_cat", "felid", "mammal"])

    assert sorted(found) == ["domestic_cat", "felid", "kitten"]
