"""Translate the boolean query tree and a ranking plan into SQLite statements."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from tagdex.app.db.records import RECORD_COLUMNS
from tagdex.app.db.tags import glob_to_like
from tagdex.app.models import TagCategory
from tagdex.app.query.nodes import (
    BoolQuery,
    Exists,
    MatchAll,
    QueryNode,
    Range,
    TagTerm,
    Term,
    Terms,
    Wildcard,
)
from tagdex.app.query.ranking import RANDOM_FIELD, RankingPlan, SortKey
from tagdex.util import to_epoch

_ARRAY_COLUMNS = frozenset({"sources", "children"})
_SCALAR_COLUMNS = frozenset(RECORD_COLUMNS) - _ARRAY_COLUMNS - {"tags"}
_CATEGORY_COUNT_COLUMNS = {
    f"tag_count_{category.label}": f"json_array_length(r.tags, '$[{int(category)}]')"
    for category in TagCategory
}
_RANGE_OPERATORS = (("gt", ">"), ("gte", ">="), ("lt", "<"), ("lte", "<="))

# Two multiplicative rounds modulo a Mersenne prime; the second multiplier is
# derived from the seed so each seed yields a distinct permutation. Operands
# stay below 2**31 so SQLite never overflows into REAL arithmetic.
_RANDOM_MODULUS = 2147483647
_RANDOM_MULTIPLIER = 1583458089
_SEED_MULTIPLIER = 48271


def _random_key_factors(seed: int) -> tuple[int, int]:
    """Return the (offset, multiplier) pair mixed into the random sort key."""

    offset = seed % _RANDOM_MODULUS
    multiplier = 1 + (offset * _SEED_MULTIPLIER) % (_RANDOM_MODULUS - 1)
    return offset, multiplier


@dataclass(slots=True)
class SqlStatement:
    sql: str
    params: list[Any] = field(default_factory=list)


def _value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_epoch(value)
    if isinstance(value, bool):
        return int(value)
    return value


class SqlTranslator:
    def __init__(self, *, scoring_name: str = "hot_rank") -> None:
        self._scoring_name = scoring_name

    # ---------------------------------------------------------------- filters

    def where(self, node: QueryNode) -> SqlStatement:
        params: list[Any] = []
        sql = self._node(node, params)
        return SqlStatement(sql, params)

    def _column(self, name: str) -> str:
        if name in _SCALAR_COLUMNS or name in _ARRAY_COLUMNS:
            return f"r.{name}"
        if name in _CATEGORY_COUNT_COLUMNS:
            return _CATEGORY_COUNT_COLUMNS[name]
        raise ValueError(f"Unknown record field: {name}")

    def _node(self, node: QueryNode, params: list[Any]) -> str:
        if isinstance(node, BoolQuery):
            return self._bool(node, params)
        if isinstance(node, MatchAll):
            return "1"
        if isinstance(node, TagTerm):
            params.append(int(node.tag_id))
            return (
                "EXISTS (SELECT 1 FROM record_tags rt "
                "WHERE rt.record_id = r.id AND rt.tag_id = ?)"
            )
        if isinstance(node, Term):
            if node.field in _ARRAY_COLUMNS:
                params.append(_value(node.value))
                return f"EXISTS (SELECT 1 FROM json_each(r.{node.field}) WHERE value = ?)"
            params.append(_value(node.value))
            return f"{self._column(node.field)} = ?"
        if isinstance(node, Terms):
            if not node.values:
                return "0"
            params.extend(_value(value) for value in node.values)
            marks = ", ".join("?" for _ in node.values)
            if node.field in _ARRAY_COLUMNS:
                return (
                    f"EXISTS (SELECT 1 FROM json_each(r.{node.field}) "
                    f"WHERE value IN ({marks}))"
                )
            return f"{self._column(node.field)} IN ({marks})"
        if isinstance(node, Range):
            clauses = []
            column = self._column(node.field)
            for attribute, operator in _RANGE_OPERATORS:
                bound = getattr(node, attribute)
                if bound is None:
                    continue
                params.append(_value(bound))
                clauses.append(f"{column} {operator} ?")
            return "(" + " AND ".join(clauses) + ")" if clauses else "1"
        if isinstance(node, Exists):
            if node.field in _ARRAY_COLUMNS:
                return f"json_array_length(r.{node.field}) > 0"
            return f"{self._column(node.field)} IS NOT NULL"
        if isinstance(node, Wildcard):
            params.append(glob_to_like(node.pattern))
            if node.field in _ARRAY_COLUMNS:
                return (
                    f"EXISTS (SELECT 1 FROM json_each(r.{node.field}) "
                    "WHERE value LIKE ? ESCAPE '\\')"
                )
            return f"{self._column(node.field)} LIKE ? ESCAPE '\\'"
        raise TypeError(f"Unsupported query node: {node!r}")

    def _bool(self, node: BoolQuery, params: list[Any]) -> str:
        clauses = [f"({self._node(child, params)})" for child in node.must]

        if node.should:
            parts = [self._node(child, params) for child in node.should]
            required = max(node.minimum_should_match, 1)
            if required == 1:
                clauses.append("(" + " OR ".join(f"({part})" for part in parts) + ")")
            else:
                total = " + ".join(f"(CASE WHEN {part} THEN 1 ELSE 0 END)" for part in parts)
                clauses.append(f"(({total}) >= {int(required)})")

        clauses.extend(
            f"NOT ({self._node(child, params)})" for child in node.must_not
        )
        return " AND ".join(clauses) if clauses else "1"

    # -------------------------------------------------------------- ordering

    def sort_expression(self, key: SortKey, plan: RankingPlan) -> str:
        if key.field == RANDOM_FIELD:
            offset, multiplier = _random_key_factors(int(plan.random_seed or 0))
            mixed = f"(((r.id + {offset}) * {_RANDOM_MULTIPLIER}) % {_RANDOM_MODULUS})"
            return f"(({mixed} * {multiplier}) % {_RANDOM_MODULUS})"
        if key.field == self._scoring_name:
            return f"{self._scoring_name}(r.score, COALESCE(r.created_at, 0))"
        if key.field == "id":
            return "r.id"
        return f"COALESCE({self._column(key.field)}, 0)"

    def keyset(
        self, plan: RankingPlan, after: Sequence[Any], params: list[Any]
    ) -> str:
        """Rows strictly after ``after`` in plan order."""

        expressions = [self.sort_expression(key, plan) for key in plan.sort]
        alternatives = []
        for index, key in enumerate(plan.sort):
            parts = []
            for prior in range(index):
                parts.append(f"{expressions[prior]} = ?")
                params.append(after[prior])
            operator = "<" if key.descending else ">"
            parts.append(f"{expressions[index]} {operator} ?")
            params.append(after[index])
            alternatives.append("(" + " AND ".join(parts) + ")")
        return "(" + " OR ".join(alternatives) + ")"

    def select(
        self,
        query: QueryNode,
        plan: RankingPlan,
        *,
        limit: int,
        offset: int = 0,
        after: Sequence[Any] | None = None,
    ) -> SqlStatement:
        params: list[Any] = []
        conditions = [self._node(query, params)]
        conditions.extend(self._node(node, params) for node in plan.filters)
        if after is not None:
            conditions.append(self.keyset(plan, after, params))

        expressions = [self.sort_expression(key, plan) for key in plan.sort]
        sort_columns = ", ".join(
            f"{expression} AS _sort{index}"
            for index, expression in enumerate(expressions)
        )
        order_by = ", ".join(
            f"_sort{index} {'DESC' if key.descending else 'ASC'}"
            for index, key in enumerate(plan.sort)
        )
        where = " AND ".join(f"({condition})" for condition in conditions)
        params.extend([int(limit), int(offset)])
        sql = (
            f"SELECT r.*, {sort_columns} FROM records r "
            f"WHERE {where} ORDER BY {order_by} LIMIT ? OFFSET ?"
        )
        return SqlStatement(sql, params)


__all__ = ["SqlStatement", "SqlTranslator"]
