from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

import pytest
import pytest_asyncio

from tagdex.app.models import Record, RecordFlags, Tag, TagCategory
from tagdex.persistence.local_db import LocalDB


@pytest_asyncio.fixture
async def db(tmp_path):
    async with LocalDB(tmp_path / "index.sqlite3") as database:
        yield database


@pytest.fixture
def make_record() -> Callable[..., Record]:
    def _make(
        record_id: int,
        *,
        tags: dict[TagCategory, list[int]] | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
        deleted: bool = False,
        **fields: Any,
    ) -> Record:
        fields.setdefault("content_hash", f"{record_id:032x}")
        fields.setdefault("file_type", "png")
        record = Record(
            id=record_id,
            created_at=created_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
            updated_at=updated_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
            flags=RecordFlags(deleted=deleted),
            **fields,
        )
        record.set_tags(
            (category, tag_id)
            for category, tag_ids in (tags or {}).items()
            for tag_id in tag_ids
        )
        return record

    return _make


@pytest.fixture
def make_tag() -> Callable[..., Tag]:
    def _make(
        tag_id: int,
        name: str,
        category: TagCategory = TagCategory.GENERAL,
        post_count: int = 0,
    ) -> Tag:
        return Tag(id=tag_id, name=name, category=category, post_count=post_count)

    return _make
