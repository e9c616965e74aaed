"""Parse upstream JSON payloads and CSV export rows into domain objects."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from tagdex.app.models import RATINGS, Record, RecordFlags, Tag, TagCategory
from tagdex.util import parse_timestamp

logger = logging.getLogger(__name__)

_REQUIRED_POST_KEYS = ("id", "file", "created_at", "score", "tags")

ACTIVE_STATUS = "active"


@dataclass(slots=True)
class RecordDraft:
    """A record whose tags are still names awaiting resolution."""

    record: Record
    tag_names: list[str]


@dataclass(slots=True)
class RelationshipEntry:
    """An alias or implication row as the upstream reports it."""

    id: int
    antecedent_name: str
    consequent_name: str
    status: str
    updated_at: Any = None

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE_STATUS


def _int_or_none(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any, default: int = 0) -> int:
    parsed = _int_or_none(value)
    return default if parsed is None else parsed


def _float(value: Any, default: float = 0.0) -> float:
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("t", "true", "1")


def _rating(value: Any) -> str:
    return RATINGS.get(str(value or "s").strip().lower(), "s")


def _split_sources(raw: Any) -> list[str]:
    if isinstance(raw, str):
        return [line.strip() for line in raw.split("\n") if line.strip()]
    return [str(item).strip() for item in raw or () if str(item).strip()]


def parse_tag(payload: Mapping[str, Any]) -> Tag:
    return Tag(
        id=int(payload["id"]),
        name=str(payload["name"]),
        category=TagCategory.coerce(payload.get("category", 0)),
        post_count=_int(payload.get("post_count")),
        updated_at=parse_timestamp(payload.get("updated_at")),
    )


def parse_relationship(payload: Mapping[str, Any]) -> RelationshipEntry:
    return RelationshipEntry(
        id=int(payload["id"]),
        antecedent_name=str(payload["antecedent_name"]).strip(),
        consequent_name=str(payload["consequent_name"]).strip(),
        status=str(payload.get("status") or "").strip().lower(),
        updated_at=parse_timestamp(
            payload.get("updated_at") or payload.get("created_at")
        ),
    )


def parse_post(payload: Mapping[str, Any]) -> RecordDraft | None:
    """Parse a ``posts.json`` entry; incomplete entries yield ``None``."""

    if any(key not in payload for key in _REQUIRED_POST_KEYS):
        logger.debug("Skipping incomplete upstream post %s", payload.get("id"))
        return None

    file_info = payload.get("file") or {}
    flags = payload.get("flags") or {}
    relationships = payload.get("relationships") or {}
    score = payload.get("score")
    if isinstance(score, Mapping):
        score = score.get("total")

    tags = payload.get("tags")
    if isinstance(tags, Mapping):
        names = [name for group in tags.values() for name in group or ()]
    else:
        names = str(tags or "").split()

    record = Record(
        id=int(payload["id"]),
        uploader_id=_int_or_none(payload.get("uploader_id")),
        approver_id=_int_or_none(payload.get("approver_id")),
        created_at=parse_timestamp(payload.get("created_at")),
        updated_at=parse_timestamp(payload.get("updated_at")),
        content_hash=file_info.get("md5"),
        sources=_split_sources(payload.get("sources")),
        rating=_rating(payload.get("rating")),
        width=_int(file_info.get("width")),
        height=_int(file_info.get("height")),
        duration=_float(payload.get("duration")),
        favorite_count=_int(payload.get("fav_count")),
        score=_int(score),
        parent_id=_int_or_none(relationships.get("parent_id")),
        children={int(child) for child in relationships.get("children") or ()},
        file_type=file_info.get("ext"),
        file_size=_int(file_info.get("size")),
        comment_count=_int(payload.get("comment_count")),
        flags=RecordFlags(
            deleted=_flag(flags.get("deleted", False)),
            pending=_flag(flags.get("pending", False)),
            flagged=_flag(flags.get("flagged", False)),
            rating_locked=_flag(flags.get("rating_locked", False)),
            status_locked=_flag(flags.get("status_locked", False)),
            note_locked=_flag(flags.get("note_locked", False)),
        ),
    )
    return RecordDraft(record=record, tag_names=[name.strip() for name in names if name.strip()])


def parse_export_post(row: Mapping[str, str]) -> RecordDraft | None:
    """Parse a row of the daily ``posts`` CSV export."""

    record_id = _int_or_none(row.get("id"))
    if record_id is None:
        return None
    # Export timestamps carry no offset and are UTC.
    record = Record(
        id=record_id,
        uploader_id=_int_or_none(row.get("uploader_id")),
        approver_id=_int_or_none(row.get("approver_id")),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
        content_hash=row.get("md5") or None,
        sources=_split_sources(row.get("source") or ""),
        rating=_rating(row.get("rating")),
        width=_int(row.get("image_width")),
        height=_int(row.get("image_height")),
        duration=_float(row.get("duration")),
        favorite_count=_int(row.get("fav_count")),
        score=_int(row.get("score")),
        parent_id=_int_or_none(row.get("parent_id")),
        file_type=row.get("file_ext") or None,
        file_size=_int(row.get("file_size")),
        comment_count=_int(row.get("comment_count")),
        flags=RecordFlags(
            deleted=_flag(row.get("is_deleted")),
            pending=_flag(row.get("is_pending")),
            flagged=_flag(row.get("is_flagged")),
            rating_locked=_flag(row.get("is_rating_locked")),
            status_locked=_flag(row.get("is_status_locked")),
            note_locked=_flag(row.get("is_note_locked")),
        ),
    )
    return RecordDraft(record=record, tag_names=(row.get("tag_string") or "").split())


__all__ = [
    "ACTIVE_STATUS",
    "RecordDraft",
    "RelationshipEntry",
    "parse_export_post",
    "parse_post",
    "parse_relationship",
    "parse_tag",
]
