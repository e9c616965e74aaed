"""Backend-neutral boolean query tree produced by the compiler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

Scalar = Union[int, float, str, bool, datetime]


@dataclass(frozen=True, slots=True)
class MatchAll:
    """Matches every record."""


@dataclass(frozen=True, slots=True)
class TagTerm:
    """Record carries ``tag_id`` in its flattened tag set."""

    tag_id: int


@dataclass(frozen=True, slots=True)
class Term:
    field: str
    value: Scalar


@dataclass(frozen=True, slots=True)
class Terms:
    field: str
    values: tuple[Scalar, ...]


@dataclass(frozen=True, slots=True)
class Range:
    field: str
    gt: Scalar | None = None
    gte: Scalar | None = None
    lt: Scalar | None = None
    lte: Scalar | None = None


@dataclass(frozen=True, slots=True)
class Exists:
    """Field is set: non-null scalar or non-empty collection."""

    field: str


@dataclass(frozen=True, slots=True)
class Wildcard:
    """Glob match where ``*`` is any run of characters and ``?`` one character."""

    field: str
    pattern: str


@dataclass(frozen=True, slots=True)
class BoolQuery:
    must: tuple["QueryNode", ...] = ()
    should: tuple["QueryNode", ...] = ()
    must_not: tuple["QueryNode", ...] = ()
    minimum_should_match: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.must or self.should or self.must_not)


QueryNode = Union[MatchAll, TagTerm, Term, Terms, Range, Exists, Wildcard, BoolQuery]


def negate(node: QueryNode) -> BoolQuery:
    """Return ``not(node)`` as a standalone clause."""

    return BoolQuery(must_not=(node,))


def any_of(nodes: tuple[QueryNode, ...] | list[QueryNode]) -> QueryNode:
    """Return a union of ``nodes``, collapsing the single-member case."""

    members = tuple(nodes)
    if len(members) == 1:
        return members[0]
    return BoolQuery(should=members, minimum_should_match=1)


def describe(node: QueryNode) -> Any:
    """Render ``node`` as plain data for logs and debugging responses."""

    if isinstance(node, BoolQuery):
        payload: dict[str, Any] = {}
        if node.must:
            payload["must"] = [describe(child) for child in node.must]
        if node.should:
            payload["should"] = [describe(child) for child in node.should]
            payload["minimum_should_match"] = node.minimum_should_match
        if node.must_not:
            payload["must_not"] = [describe(child) for child in node.must_not]
        return {"bool": payload}
    if isinstance(node, TagTerm):
        return {"tag": node.tag_id}
    if isinstance(node, MatchAll):
        return {"match_all": {}}
    if isinstance(node, Term):
        return {"term": {node.field: _plain(node.value)}}
    if isinstance(node, Terms):
        return {"terms": {node.field: [_plain(v) for v in node.values]}}
    if isinstance(node, Range):
        bounds = {
            key: _plain(value)
            for key, value in (
                ("gt", node.gt),
                ("gte", node.gte),
                ("lt", node.lt),
                ("lte", node.lte),
            )
            if value is not None
        }
        return {"range": {node.field: bounds}}
    if isinstance(node, Exists):
        return {"exists": node.field}
    if isinstance(node, Wildcard):
        return {"wildcard": {node.field: node.pattern}}
    raise TypeError(f"Unsupported query node: {node!r}")


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


__all__ = [
    "BoolQuery",
    "Exists",
    "MatchAll",
    "QueryNode",
    "Range",
    "TagTerm",
    "Term",
    "Terms",
    "Wildcard",
    "any_of",
    "describe",
    "negate",
]
