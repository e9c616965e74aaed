from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tagdex.app.query.metatags import (
    IGNORE,
    FieldPredicate,
    OrderDirective,
    classify,
    parse_byte_size,
    parse_ratio,
)
from tagdex.app.query.nodes import BoolQuery, Exists, MatchAll, Range, Term, Wildcard


def _predicate(token: str):
    result = classify(token)
    assert isinstance(result, FieldPredicate), token
    return result.query


def test_plain_tags_are_not_classified() -> None:
    assert classify("blue_eyes") is None
    assert classify(":3") is None


@pytest.mark.parametrize(
    "token, expected",
    [
        ("score:10", Term("score", 10)),
        ("score:>10", Range("score", gt=10)),
        ("score:>=10", Range("score", gte=10)),
        ("score:<-5", Range("score", lt=-5)),
        ("favcount:<=3", Range("favorite_count", lte=3)),
        ("width:100..200", Range("width", gte=100, lte=200)),
        ("height:..200", Range("height", lte=200)),
        ("id:5..", Range("id", gte=5)),
        ("mpixels:>2.5", Range("megapixels", gt=2.5)),
        ("filesize:>1mb", Range("file_size", gt=1024 * 1024)),
        ("ratio:16:9", Term("ratio", 1.78)),
        ("duration:>=30", Range("duration", gte=30.0)),
        ("arttags:>1", Range("tag_count_artist", gt=1)),
    ],
)
def test_range_fields(token: str, expected) -> None:
    assert _predicate(token) == expected


def test_bare_date_covers_the_whole_day() -> None:
    node = _predicate("date:2024-03-01")

    assert node == Range(
        "created_at",
        gte=datetime(2024, 3, 1, tzinfo=timezone.utc),
        lt=datetime(2024, 3, 2, tzinfo=timezone.utc),
    )


def test_date_upper_bound_includes_the_named_day() -> None:
    node = _predicate("date:..2024-03-01")

    assert node == Range("created_at", lt=datetime(2024, 3, 2, tzinfo=timezone.utc))


def test_enumerations_and_flags() -> None:
    assert _predicate("rating:explicit") == Term("rating", "e")
    assert _predicate("rating:Q") == Term("rating", "q")
    assert _predicate("type:jpeg") == Term("file_type", "jpg")
    assert _predicate("ratinglocked:true") == Term("is_rating_locked", True)
    assert _predicate("notelocked:no") == Term("is_note_locked", False)
    assert _predicate("ischild:true") == Exists("parent_id")
    assert _predicate("isparent:false") == BoolQuery(must_not=(Exists("children"),))
    assert _predicate("parent:123") == Term("parent_id", 123)


def test_status_predicates_mark_deleted_visibility() -> None:
    deleted = classify("status:deleted")
    any_status = classify("status:any")
    pending = classify("status:pending")

    assert deleted == FieldPredicate(Term("is_deleted", True), references_deleted=True)
    assert any_status == FieldPredicate(MatchAll(), references_deleted=True)
    assert pending == FieldPredicate(Term("is_pending", True))


def test_source_matching() -> None:
    assert _predicate("source:*twitter.com*") == Wildcard("sources", "*twitter.com*")
    assert _predicate("source:https://x.test/a") == Term("sources", "https://x.test/a")
    assert _predicate("source:none") == BoolQuery(must_not=(Exists("sources"),))


@pytest.mark.parametrize(
    "token",
    ["score:abc", "width:..", "rating:sketchy", "ratio:1:0", "md5:nothex", "unknownkey:5", "status:bogus"],
)
def test_unparsable_values_are_ignored(token: str) -> None:
    assert classify(token) is IGNORE


@pytest.mark.parametrize(
    "token, expected",
    [
        ("order:score", OrderDirective("score", descending=True)),
        ("order:score_asc", OrderDirective("score", descending=False)),
        ("order:id", OrderDirective("id", descending=False)),
        ("order:id_desc", OrderDirective("id", descending=True)),
        ("order:rank", OrderDirective("rank", descending=True)),
        ("order:random", OrderDirective("random", seed=None)),
        ("random:42", OrderDirective("random", seed=42)),
        ("order:random:7", OrderDirective("random", seed=7)),
    ],
)
def test_order_directives(token: str, expected: OrderDirective) -> None:
    assert classify(token) == expected


def test_value_parsers() -> None:
    assert parse_byte_size("512") == 512
    assert parse_byte_size("2KB") == 2048
    assert parse_byte_size("1.5mb") == int(1.5 * 1024 * 1024)
    assert parse_ratio("4:3") == 1.33
    with pytest.raises(ValueError):
        parse_byte_size("lots")
