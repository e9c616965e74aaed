"""Query language: tokenizer, parser, compiler and ranking planner."""
from __future__ import annotations

from .tokenizer import NEGATION, Tokenizer
from .metatags import FieldPredicate, IGNORE, OrderDirective, classify
from .groups import (
    Group,
    GroupParser,
    GroupRef,
    Literal,
    MetaRef,
    Negated,
    UnionMarker,
    parse_query,
)
from .nodes import (
    BoolQuery,
    Exists,
    MatchAll,
    QueryNode,
    Range,
    TagTerm,
    Term,
    Terms,
    Wildcard,
    describe,
)
from .compiler import NOT_DELETED, QueryCompiler
from .ranking import HotRankStrategy, RankingPlan, RankingPlanner, SortKey

__all__ = [
    "NEGATION",
    "Tokenizer",
    "FieldPredicate",
    "IGNORE",
    "OrderDirective",
    "classify",
    "Group",
    "GroupParser",
    "GroupRef",
    "Literal",
    "MetaRef",
    "Negated",
    "UnionMarker",
    "parse_query",
    "BoolQuery",
    "Exists",
    "MatchAll",
    "QueryNode",
    "Range",
    "TagTerm",
    "Term",
    "Terms",
    "Wildcard",
    "describe",
    "NOT_DELETED",
    "QueryCompiler",
    "HotRankStrategy",
    "RankingPlan",
    "RankingPlanner",
    "SortKey",
]
