"""Catalog entities stored in the index."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Iterable

CATEGORY_COUNT = 9


class TagCategory(IntEnum):
    """Upstream tag category ids; the value doubles as the bucket index."""

    GENERAL = 0
    ARTIST = 1
    CONTRIBUTOR = 2
    COPYRIGHT = 3
    CHARACTER = 4
    SPECIES = 5
    INVALID = 6
    META = 7
    LORE = 8

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def coerce(cls, value: Any) -> "TagCategory":
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and not value.strip().lstrip("-").isdigit():
            return cls[value.strip().upper()]
        return cls(int(value))


RATINGS: dict[str, str] = {
    "s": "s",
    "safe": "s",
    "q": "q",
    "questionable": "q",
    "e": "e",
    "explicit": "e",
}


@dataclass(slots=True)
class Tag:
    id: int
    name: str
    category: TagCategory = TagCategory.GENERAL
    post_count: int = 0
    updated_at: datetime | None = None


@dataclass(slots=True)
class TagAlias:
    id: int
    antecedent_name: str
    consequent_id: int
    updated_at: datetime | None = None


@dataclass(slots=True)
class TagImplication:
    id: int
    antecedent_id: int
    consequent_id: int
    updated_at: datetime | None = None

    @property
    def is_self_loop(self) -> bool:
        return self.antecedent_id == self.consequent_id


def empty_buckets() -> list[list[int]]:
    return [[] for _ in range(CATEGORY_COUNT)]


@dataclass(slots=True)
class RecordFlags:
    deleted: bool = False
    pending: bool = False
    flagged: bool = False
    rating_locked: bool = False
    status_locked: bool = False
    note_locked: bool = False


@dataclass(slots=True)
class Record:
    """A catalog record with its tags bucketed by category."""

    id: int
    tags: list[list[int]] = field(default_factory=empty_buckets)
    uploader_id: int | None = None
    approver_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    content_hash: str | None = None
    sources: list[str] = field(default_factory=list)
    rating: str = "s"
    width: int = 0
    height: int = 0
    duration: float = 0.0
    favorite_count: int = 0
    score: int = 0
    parent_id: int | None = None
    children: set[int] = field(default_factory=set)
    file_type: str | None = None
    file_size: int = 0
    comment_count: int = 0
    flags: RecordFlags = field(default_factory=RecordFlags)

    @property
    def flattened_tags(self) -> set[int]:
        return {tag_id for bucket in self.tags for tag_id in bucket}

    @property
    def ratio(self) -> float:
        if not self.height:
            return 0.0
        return round(self.width / self.height, 2)

    @property
    def megapixels(self) -> float:
        return round(self.width * self.height / 1_000_000, 4)

    def set_tags(self, tagged: Iterable[tuple[int, int]]) -> None:
        """Rebuild the buckets from ``(category, tag_id)`` pairs, deduplicated."""

        buckets = empty_buckets()
        seen: set[int] = set()
        for category, tag_id in tagged:
            if tag_id in seen:
                continue
            seen.add(tag_id)
            buckets[int(category)].append(tag_id)
        self.tags = buckets


@dataclass(slots=True)
class HangingRelationship:
    parent_id: int
    children: set[int] = field(default_factory=set)


__all__ = [
    "CATEGORY_COUNT",
    "TagCategory",
    "RATINGS",
    "Tag",
    "TagAlias",
    "TagImplication",
    "Record",
    "RecordFlags",
    "HangingRelationship",
    "empty_buckets",
]
