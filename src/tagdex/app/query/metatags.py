"""Classification of ``key:value`` query tokens.

A token either names a field predicate (``score:>10``), an ordering directive
(``order:favcount``) or nothing the query language understands, in which case
it is ignored. The language is permissive: a recognised key with a value that
cannot be parsed is ignored rather than rejected.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Final

from tagdex.app.models import RATINGS, TagCategory
from tagdex.util import parse_timestamp, str_to_bool

from .nodes import (
    BoolQuery,
    Exists,
    MatchAll,
    QueryNode,
    Range,
    Term,
    Wildcard,
    any_of,
    negate,
)


class Ignore:
    """Sentinel type for tokens that classify to nothing."""

    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "IGNORE"


IGNORE: Final = Ignore()


@dataclass(frozen=True, slots=True)
class OrderDirective:
    key: str
    descending: bool = True
    seed: int | None = None


@dataclass(frozen=True, slots=True)
class FieldPredicate:
    query: QueryNode
    references_deleted: bool = False


Classification = Ignore | OrderDirective | FieldPredicate


# ---------------------------------------------------------------------------
# value parsers


_BYTE_SIZE = re.compile(r"^(\d+(?:\.\d+)?)\s*(b|kb|mb|gb)?$", re.IGNORECASE)
_BYTE_UNITS = {"b": 1, "kb": 1024, "mb": 1024**2, "gb": 1024**3}
_MD5 = re.compile(r"^[0-9a-f]{32}$")
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_int(raw: str) -> int:
    return int(raw.strip())


def parse_float(raw: str) -> float:
    return float(raw.strip())


def parse_byte_size(raw: str) -> int:
    match = _BYTE_SIZE.match(raw.strip())
    if not match:
        raise ValueError(f"Invalid size: {raw!r}")
    number, unit = match.groups()
    return int(float(number) * _BYTE_UNITS[(unit or "b").lower()])


def parse_ratio(raw: str) -> float:
    text = raw.strip()
    if ":" in text:
        width, _, height = text.partition(":")
        denominator = float(height)
        if denominator == 0:
            raise ValueError("Ratio denominator must not be zero")
        return round(float(width) / denominator, 2)
    return round(float(text), 2)


def parse_instant(raw: str) -> datetime:
    parsed = parse_timestamp(raw)
    if parsed is None:
        raise ValueError("Empty date")
    return parsed


ValueParser = Callable[[str], object]

_COMPARATORS = ((">=", "gte"), ("<=", "lte"), (">", "gt"), ("<", "lt"))


def parse_range(field: str, raw: str, parser: ValueParser) -> QueryNode:
    """Parse ``N``, ``A..B``, ``A..``, ``..B``, ``>=N``, ``<=N``, ``>N`` or ``<N``."""

    text = raw.strip()
    if not text:
        raise ValueError("Empty range")
    for prefix, bound in _COMPARATORS:
        if text.startswith(prefix):
            return Range(field, **{bound: parser(text[len(prefix) :])})
    if ".." in text:
        low, _, high = text.partition("..")
        lower = parser(low) if low.strip() else None
        upper = parser(high) if high.strip() else None
        if lower is None and upper is None:
            raise ValueError("Range needs at least one bound")
        return Range(field, gte=lower, lte=upper)
    return Term(field, parser(text))


def parse_date_range(field: str, raw: str) -> QueryNode:
    """Date ranges where a bare ``YYYY-MM-DD`` covers the whole day."""

    text = raw.strip()

    def start(value: str) -> datetime:
        return parse_instant(value)

    def day_end(value: str) -> tuple[str, datetime]:
        if _DATE_ONLY.match(value.strip()):
            return "lt", parse_instant(value) + timedelta(days=1)
        return "lte", parse_instant(value)

    for prefix, bound in _COMPARATORS:
        if text.startswith(prefix):
            value = text[len(prefix) :]
            if bound == "lte":
                key, moment = day_end(value)
                return Range(field, **{key: moment})
            if bound == "gt" and _DATE_ONLY.match(value.strip()):
                return Range(field, gte=start(value) + timedelta(days=1))
            return Range(field, **{bound: start(value)})
    if ".." in text:
        low, _, high = text.partition("..")
        bounds: dict[str, datetime] = {}
        if low.strip():
            bounds["gte"] = start(low)
        if high.strip():
            key, moment = day_end(high)
            bounds[key] = moment
        if not bounds:
            raise ValueError("Range needs at least one bound")
        return Range(field, **bounds)
    if _DATE_ONLY.match(text):
        day = parse_instant(text)
        return Range(field, gte=day, lt=day + timedelta(days=1))
    return Term(field, parse_instant(text))


# ---------------------------------------------------------------------------
# key tables


RANGE_FIELDS: dict[str, tuple[str, ValueParser]] = {
    "id": ("id", parse_int),
    "score": ("score", parse_int),
    "favcount": ("favorite_count", parse_int),
    "comment_count": ("comment_count", parse_int),
    "tagcount": ("tag_count", parse_int),
    "width": ("width", parse_int),
    "height": ("height", parse_int),
    "mpixels": ("megapixels", parse_float),
    "filesize": ("file_size", parse_byte_size),
    "ratio": ("ratio", parse_ratio),
    "duration": ("duration", parse_float),
    "user_id": ("uploader_id", parse_int),
    "approver_id": ("approver_id", parse_int),
}

DATE_FIELDS: dict[str, str] = {
    "date": "created_at",
    "updated": "updated_at",
}

CATEGORY_COUNT_KEYS: dict[str, TagCategory] = {
    "gentags": TagCategory.GENERAL,
    "arttags": TagCategory.ARTIST,
    "contribtags": TagCategory.CONTRIBUTOR,
    "copytags": TagCategory.COPYRIGHT,
    "chartags": TagCategory.CHARACTER,
    "spectags": TagCategory.SPECIES,
    "invtags": TagCategory.INVALID,
    "metatags": TagCategory.META,
    "lortags": TagCategory.LORE,
}

FLAG_FIELDS: dict[str, str] = {
    "ratinglocked": "is_rating_locked",
    "notelocked": "is_note_locked",
    "statuslocked": "is_status_locked",
}

FILE_TYPE_ALIASES: dict[str, str] = {"jpeg": "jpg"}

# Sort keys and their default direction (``True`` for descending).
ORDER_FIELDS: dict[str, bool] = {
    "id": False,
    "score": True,
    "favcount": True,
    "comment_count": True,
    "tagcount": True,
    "mpixels": True,
    "filesize": True,
    "duration": True,
    "created": True,
    "updated": True,
    "width": True,
    "height": True,
    "ratio": True,
    "landscape": True,
    "portrait": True,
    "rank": True,
}

_PENDING = Term("is_pending", True)
_FLAGGED = Term("is_flagged", True)
_DELETED = Term("is_deleted", True)

STATUS_PREDICATES: dict[str, FieldPredicate] = {
    "active": FieldPredicate(BoolQuery(must_not=(_DELETED, _PENDING, _FLAGGED))),
    "pending": FieldPredicate(_PENDING),
    "flagged": FieldPredicate(_FLAGGED),
    "modqueue": FieldPredicate(any_of((_PENDING, _FLAGGED))),
    "deleted": FieldPredicate(_DELETED, references_deleted=True),
    "any": FieldPredicate(MatchAll(), references_deleted=True),
}


def category_count_field(category: TagCategory) -> str:
    return f"tag_count_{category.label}"


# ---------------------------------------------------------------------------
# classification


def split_meta(token: str) -> tuple[str, str] | None:
    """Split ``key:value`` or return ``None`` when ``token`` is not a meta tag."""

    key, sep, value = token.partition(":")
    if not sep or not key:
        return None
    return key.lower(), value


def classify(token: str) -> Classification | None:
    """Classify ``token``; ``None`` means it is a plain tag name."""

    parts = split_meta(token)
    if parts is None:
        return None
    key, value = parts
    try:
        result = _classify(key, value)
    except (ValueError, KeyError, OverflowError):
        return IGNORE
    return IGNORE if result is None else result


def _classify(key: str, value: str) -> Classification | None:
    if key == "order":
        return _order(value)
    if key == "random":
        return OrderDirective("random", seed=parse_int(value))

    lowered = value.strip().lower()

    if key in RANGE_FIELDS:
        field, parser = RANGE_FIELDS[key]
        return FieldPredicate(parse_range(field, value, parser))
    if key in DATE_FIELDS:
        return FieldPredicate(parse_date_range(DATE_FIELDS[key], value))
    if key in CATEGORY_COUNT_KEYS:
        field = category_count_field(CATEGORY_COUNT_KEYS[key])
        return FieldPredicate(parse_range(field, value, parse_int))
    if key == "rating":
        return FieldPredicate(Term("rating", RATINGS[lowered]))
    if key == "type":
        if not lowered:
            return None
        file_type = FILE_TYPE_ALIASES.get(lowered, lowered)
        return FieldPredicate(Term("file_type", file_type))
    if key == "status":
        return STATUS_PREDICATES.get(lowered)
    if key in FLAG_FIELDS:
        return FieldPredicate(Term(FLAG_FIELDS[key], str_to_bool(lowered)))
    if key == "ischild":
        return FieldPredicate(_presence("parent_id", str_to_bool(lowered)))
    if key == "isparent":
        return FieldPredicate(_presence("children", str_to_bool(lowered)))
    if key == "parent":
        if lowered in ("none", "any"):
            return FieldPredicate(_presence("parent_id", lowered == "any"))
        return FieldPredicate(Term("parent_id", parse_int(lowered)))
    if key == "source":
        return _source(value.strip())
    if key == "md5":
        if not _MD5.match(lowered):
            return None
        return FieldPredicate(Term("content_hash", lowered))
    return None


def _presence(field: str, present: bool) -> QueryNode:
    node = Exists(field)
    return node if present else negate(node)


def _source(value: str) -> FieldPredicate | None:
    if not value:
        return None
    if value.lower() == "none":
        return FieldPredicate(negate(Exists("sources")))
    if "*" in value or "?" in value:
        return FieldPredicate(Wildcard("sources", value))
    return FieldPredicate(Term("sources", value))


def _order(value: str) -> OrderDirective | None:
    text = value.strip().lower()
    if text == "random" or text.startswith("random:"):
        _, _, seed = text.partition(":")
        return OrderDirective("random", seed=parse_int(seed) if seed else None)

    key = text
    descending: bool | None = None
    for suffix, direction in (("_desc", True), ("_asc", False)):
        if text.endswith(suffix):
            key = text[: -len(suffix)]
            descending = direction
            break
    if key not in ORDER_FIELDS:
        return None
    if descending is None:
        descending = ORDER_FIELDS[key]
    return OrderDirective(key, descending=descending)


__all__ = [
    "IGNORE",
    "Ignore",
    "OrderDirective",
    "FieldPredicate",
    "Classification",
    "classify",
    "split_meta",
    "parse_range",
    "parse_date_range",
    "parse_byte_size",
    "parse_ratio",
    "category_count_field",
    "ORDER_FIELDS",
]
