from __future__ import annotations

from tagdex.app.query.compiler import NOT_DELETED, QueryCompiler
from tagdex.app.query.groups import parse_query
from tagdex.app.query.nodes import BoolQuery, MatchAll, Range, TagTerm, Term, Terms

RESOLVED = {
    "a": (1,),
    "b": (2,),
    "c": (3,),
    "d": (4,),
    "blue_eyes": (10,),
    "red_eyes": (11,),
    "*_eyes": (10, 11),
}


def _compile(query: str, resolved=RESOLVED, **kwargs) -> BoolQuery:
    return QueryCompiler().compile(parse_query(query), resolved, **kwargs)


def test_adjacent_terms_are_conjoined() -> None:
    assert _compile("a b") == BoolQuery(
        must=(TagTerm(1), TagTerm(2)), must_not=(NOT_DELETED,)
    )


def test_union_places_both_sides_in_should() -> None:
    assert _compile("a ~ b") == BoolQuery(
        should=(TagTerm(1), TagTerm(2)),
        must_not=(NOT_DELETED,),
        minimum_should_match=1,
    )


def test_negation_under_and_goes_to_must_not() -> None:
    assert _compile("-a") == BoolQuery(must_not=(TagTerm(1), NOT_DELETED))


def test_negation_under_or_becomes_should_not() -> None:
    assert _compile("a ~ -b") == BoolQuery(
        should=(TagTerm(1), BoolQuery(must_not=(TagTerm(2),))),
        must_not=(NOT_DELETED,),
        minimum_should_match=1,
    )


def test_union_modifier_reverts_to_and() -> None:
    compiled = _compile("a ~ b ~ c d")

    assert compiled.should == (TagTerm(1), TagTerm(2), TagTerm(3))
    assert compiled.must == (TagTerm(4),)
    assert compiled.minimum_should_match == 1


def test_subgroups_follow_the_placement_rules() -> None:
    compiled = _compile("d ( a ~ b ) -( c ~ a )")

    assert compiled.must == (
        TagTerm(4),
        BoolQuery(should=(TagTerm(1), TagTerm(2)), minimum_should_match=1),
    )
    assert compiled.must_not == (
        BoolQuery(should=(TagTerm(3), TagTerm(1)), minimum_should_match=1),
        NOT_DELETED,
    )


def test_plain_and_subgroup_is_spliced_into_parent() -> None:
    assert _compile("a ( b c )").must == (TagTerm(1), TagTerm(2), TagTerm(3))


def test_single_member_subgroup_collapses() -> None:
    assert _compile("( ( a ) ) ~ b").should == (TagTerm(1), TagTerm(2))


def test_unknown_tags_and_empty_groups_are_dropped() -> None:
    compiled = _compile("a unknown ( missing ) -nothing")

    assert compiled == BoolQuery(must=(TagTerm(1),), must_not=(NOT_DELETED,))


def test_unknown_tag_is_removed_before_union_placement() -> None:
    compiled = _compile("a ~ unknown b")

    assert compiled.should == (TagTerm(1), TagTerm(2))
    assert compiled.must == ()


def test_wildcard_expands_into_a_union() -> None:
    compiled = _compile("*_eyes")

    assert compiled.must == (
        BoolQuery(should=(TagTerm(10), TagTerm(11)), minimum_should_match=1),
    )


def test_empty_wildcard_expansion_is_removed() -> None:
    compiled = _compile("a *_hair", {"a": (1,), "*_hair": ()})

    assert compiled.must == (TagTerm(1),)


def test_deleted_visibility_clause() -> None:
    assert NOT_DELETED in _compile("a").must_not
    assert NOT_DELETED not in _compile("a status:deleted").must_not
    assert NOT_DELETED not in _compile("a ( b ~ status:any )").must_not


def test_status_any_matches_everything() -> None:
    compiled = _compile("status:any")

    assert compiled == BoolQuery(must=(MatchAll(),))


def test_end_to_end_union_with_rating() -> None:
    compiled = _compile("blue_eyes ~ red_eyes rating:s")

    assert compiled == BoolQuery(
        must=(Term("rating", "s"),),
        should=(TagTerm(10), TagTerm(11)),
        must_not=(NOT_DELETED,),
        minimum_should_match=1,
    )


def test_meta_predicates_are_placed_like_tags() -> None:
    compiled = _compile("a -score:<0 ~ b")

    assert compiled.must == (TagTerm(1),)
    assert compiled.should == (BoolQuery(must_not=(Range("score", lt=0),)), TagTerm(2))


def test_exclusions_are_appended_to_must_not() -> None:
    compiled = _compile(
        "a",
        exclude_ids=[5, 6, 5],
        exclude_hashes=["ABCDEF", "abcdef", ""],
    )

    assert compiled.must_not == (
        NOT_DELETED,
        Terms("id", (5, 6)),
        Terms("content_hash", ("abcdef",)),
    )


def test_empty_query_only_filters_deleted() -> None:
    assert _compile("") == BoolQuery(must_not=(NOT_DELETED,))
