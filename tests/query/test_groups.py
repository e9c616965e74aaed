from __future__ import annotations

import pytest

from tagdex.app.errors import MalformedQuery
from tagdex.app.query.groups import (
    GroupRef,
    Literal,
    MetaRef,
    Negated,
    UnionMarker,
    parse_query,
)
from tagdex.app.query.metatags import OrderDirective
from tagdex.app.query.nodes import Term


def test_literals_are_case_folded() -> None:
    root = parse_query("Blue_Eyes RED_eyes")

    assert root.tokens == [Literal("blue_eyes"), Literal("red_eyes")]
    assert root.literal_names() == {"blue_eyes", "red_eyes"}


def test_negation_and_union_markers() -> None:
    root = parse_query("a ~ -b")

    assert root.tokens == [Literal("a"), UnionMarker(), Negated(Literal("b"))]


def test_subgroups_are_referenced_by_position() -> None:
    root = parse_query("a ( b ~ c ) -( d )")

    assert root.tokens == [Literal("a"), GroupRef(0), Negated(GroupRef(1))]
    assert root.subgroups[0].tokens == [Literal("b"), UnionMarker(), Literal("c")]
    assert root.subgroups[1].tokens == [Literal("d")]
    assert root.literal_names() == {"a", "b", "c", "d"}


def test_meta_predicates_stay_local_to_their_group() -> None:
    root = parse_query("rating:s ( a -score:<0 )")

    assert root.tokens == [MetaRef(0), GroupRef(0)]
    assert root.meta_predicates[0].query == Term("rating", "s")
    child = root.subgroups[0]
    assert child.tokens == [Literal("a"), Negated(MetaRef(0))]
    assert len(child.meta_predicates) == 1


def test_order_directives_are_hoisted_to_the_root() -> None:
    root = parse_query("( a order:score ) random:9")

    assert root.order_directives == [
        OrderDirective("score", descending=True),
        OrderDirective("random", seed=9),
    ]
    assert root.subgroups[0].tokens == [Literal("a")]


def test_deleted_visibility_propagates_from_nested_groups() -> None:
    assert parse_query("( ( status:deleted ) )").references_deleted
    assert parse_query("a ~ status:any").references_deleted
    assert not parse_query("a status:pending").references_deleted


def test_ignored_meta_tags_leave_no_token() -> None:
    root = parse_query("a score:abc -nonsense:1 b")

    assert root.tokens == [Literal("a"), Literal("b")]
    assert root.meta_predicates == []


def test_negation_applies_to_the_next_term_only() -> None:
    root = parse_query("- a b")

    assert root.tokens == [Negated(Literal("a")), Literal("b")]


@pytest.mark.parametrize(
    "query",
    ["( a", "a ( b ( c )", "( ( )", "-("],
)
def test_unclosed_groups_are_malformed(query: str) -> None:
    with pytest.raises(MalformedQuery):
        parse_query(query)


@pytest.mark.parametrize(
    "query",
    ["( a )", "( a ( b ) ) ( c )", "( )", "a ~ ( b -c ) d", ""],
)
def test_balanced_groups_parse(query: str) -> None:
    parse_query(query)


@pytest.mark.parametrize("query", ["a )", "a ) b", ")", "( a ) )"])
def test_unmatched_closing_parenthesis_is_malformed(query: str) -> None:
    with pytest.raises(MalformedQuery):
        parse_query(query)


def test_exclusive_or_token_is_skipped() -> None:
    root = parse_query("a ^ b")

    assert root.tokens == [Literal("a"), Literal("b")]
