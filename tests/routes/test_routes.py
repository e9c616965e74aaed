from __future__ import annotations

from types import SimpleNamespace

import pytest

from tagdex.app import create_app
from tagdex.app.errors import MalformedQuery, UpstreamTransient
from tagdex.app.models import Tag, TagCategory
from tagdex.app.services.search_executor import SearchPage
from tagdex.settings import settings

pytestmark = pytest.mark.asyncio


class FakeSearch:
    def __init__(self) -> None:
        self.requests = []
        self.fail_with: Exception | None = None

    async def search(self, request):
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        return SearchPage(records=[{"id": 1}], next_cursor="abc")


class FakeTaxonomy:
    async def lookup(self, names):
        return {name: {"name": name} for name in names}

    async def relationships(self, names, include):
        return {name: {section: [] for section in include} for name in names}


class FakeProvenance:
    async def check(self, record_id):
        if record_id != 1:
            return None
        return {"https://i.imgur.com/a.png": {"checker": "direct", "md5Match": True}}


class FakeSync:
    def __init__(self) -> None:
        self.fail_with: Exception | None = None

    async def refresh_tag(self, name):
        if self.fail_with is not None:
            raise self.fail_with
        if name == "blue_eyes":
            return Tag(1, "blue_eyes", TagCategory.CHARACTER, 3)
        return None


@pytest.fixture
def services():
    return SimpleNamespace(
        search_service=FakeSearch(),
        taxonomy_service=FakeTaxonomy(),
        provenance=FakeProvenance(),
        sync_engine=FakeSync(),
    )


@pytest.fixture
def client(services):
    app = create_app(services=services, start_lifecycle=False)
    return app.test_client()


@pytest.fixture
def admin_key():
    previous = settings.get("ADMIN.key")
    settings.set("ADMIN.key", "s3cret")
    yield "s3cret"
    settings.set("ADMIN.key", previous)


async def test_search_get(client, services) -> None:
    response = await client.get("/", query_string={"q": "blue_eyes", "limit": "5"})

    assert response.status_code == 200
    assert await response.get_json() == {"records": [{"id": 1}], "nextCursor": "abc"}
    (request,) = services.search_service.requests
    assert request.query == "blue_eyes"
    assert request.limit == "5"


async def test_search_post_body_overrides_args(client, services) -> None:
    response = await client.post(
        "/?q=ignored", json={"query": "red_eyes", "exclude_ids": [3, 4]}
    )

    assert response.status_code == 200
    (request,) = services.search_service.requests
    assert request.query == "red_eyes"
    assert request.exclude_ids == [3, 4]


async def test_malformed_query_is_a_client_error(client, services) -> None:
    services.search_service.fail_with = MalformedQuery("Unbalanced parentheses")

    response = await client.get("/", query_string={"q": "( a"})

    assert response.status_code == 400
    assert await response.get_json() == {
        "status": 400,
        "message": "Unbalanced parentheses",
    }


async def test_unexpected_failure_is_hidden(client, services) -> None:
    services.search_service.fail_with = RuntimeError("database is on fire")

    response = await client.get("/")

    assert response.status_code == 500
    assert "fire" not in (await response.get_json())["message"]


async def test_tags_and_relationships(client) -> None:
    tags = await client.get("/tags", query_string={"names": "a,b"})
    relationships = await client.get("/tagrelationships", query_string={"tags": "a"})
    missing = await client.get("/tags")

    assert await tags.get_json() == {"a": {"name": "a"}, "b": {"name": "b"}}
    assert await relationships.get_json() == {"a": {"children": [], "parents": []}}
    assert missing.status_code == 400


async def test_check_source(client) -> None:
    found = await client.get("/checksource", query_string={"id": "1"})
    unknown = await client.get("/checksource", query_string={"id": "2"})
    invalid = await client.get("/checksource", query_string={"id": "x"})

    assert found.status_code == 200
    assert (await found.get_json())["https://i.imgur.com/a.png"]["md5Match"] is True
    assert unknown.status_code == 404
    assert invalid.status_code == 400


async def test_admin_requires_key(client, admin_key) -> None:
    response = await client.get("/admin/updatetag", query_string={"tag": "blue_eyes"})

    assert response.status_code == 401
    assert (await response.get_json())["status"] == 401


async def test_admin_update_tag(client, services, admin_key) -> None:
    ok = await client.get(
        "/admin/updatetag", query_string={"tag": "blue_eyes", "key": admin_key}
    )
    missing = await client.get(
        "/admin/updatetag", query_string={"tag": "nobody", "key": admin_key}
    )
    services.sync_engine.fail_with = UpstreamTransient("busy", status_code=503)
    failed = await client.get(
        "/admin/updatetag", query_string={"tag": "blue_eyes", "key": admin_key}
    )

    assert ok.status_code == 200
    assert (await ok.get_json())["categoryName"] == "character"
    assert missing.status_code == 404
    assert failed.status_code == 502


async def test_unknown_route_is_json(client) -> None:
    response = await client.get("/nothing-here")

    assert response.status_code == 404
    assert (await response.get_json())["status"] == 404
