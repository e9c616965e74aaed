"""Compile a parsed query :class:`Group` into a boolean query tree.

Placement rules, per group:

* adjacent terms are conjoined (``must``);
* ``~`` arms a one-shot OR for the next term and pulls the term before it into
  ``should`` as well, so ``a ~ b ~ c d`` is ``(a | b | c) & d``;
* a negated term lands in ``must_not`` under AND and becomes
  ``should: not(term)`` under OR;
* subgroups follow the same rules at their position in the parent.

Terms that resolve to nothing (unknown tags, empty wildcard expansions, empty
groups) are removed before placement.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Sequence

from .groups import Group, GroupRef, Literal, MetaRef, Negated, UnionMarker
from .nodes import BoolQuery, QueryNode, TagTerm, Term, Terms, any_of, negate

logger = logging.getLogger(__name__)

NOT_DELETED = Term("is_deleted", True)

ResolvedTags = Mapping[str, Sequence[int]]

_UNION = object()


class QueryCompiler:
    """Walk the AST and resolved tag ids into a :class:`BoolQuery`."""

    def compile(
        self,
        root: Group,
        resolved: ResolvedTags,
        *,
        exclude_ids: Iterable[int] = (),
        exclude_hashes: Iterable[str] = (),
    ) -> BoolQuery:
        compiled = self._compile_group(root, resolved)

        must_not = list(compiled.must_not)
        if not root.references_deleted:
            must_not.append(NOT_DELETED)
        excluded_ids = tuple(dict.fromkeys(int(value) for value in exclude_ids))
        if excluded_ids:
            must_not.append(Terms("id", excluded_ids))
        excluded_hashes = tuple(
            dict.fromkeys(value.strip().lower() for value in exclude_hashes if value)
        )
        if excluded_hashes:
            must_not.append(Terms("content_hash", excluded_hashes))

        return BoolQuery(
            must=compiled.must,
            should=compiled.should,
            must_not=tuple(must_not),
            minimum_should_match=compiled.minimum_should_match,
        )

    def _compile_group(self, group: Group, resolved: ResolvedTags) -> BoolQuery:
        items: list[object] = []
        for token in group.tokens:
            if isinstance(token, UnionMarker):
                items.append(_UNION)
                continue
            negated = isinstance(token, Negated)
            term = token.term if isinstance(token, Negated) else token
            node = self._term_node(group, term, resolved)
            if node is None:
                continue
            items.append((node, negated))

        must: list[QueryNode] = []
        should: list[QueryNode] = []
        must_not: list[QueryNode] = []

        armed = False
        for index, item in enumerate(items):
            if item is _UNION:
                armed = True
                continue
            node, negated = item  # type: ignore[misc]
            followed_by_union = index + 1 < len(items) and items[index + 1] is _UNION
            use_or = armed or followed_by_union
            armed = False

            if use_or:
                should.append(negate(node) if negated else node)
            elif negated:
                must_not.append(node)
            elif _is_conjunction(node):
                # A plain AND group adds nothing over its members.
                must.extend(node.must)  # type: ignore[union-attr]
            else:
                must.append(node)

        return BoolQuery(
            must=tuple(must),
            should=tuple(should),
            must_not=tuple(must_not),
            minimum_should_match=1 if should else 0,
        )

    def _term_node(
        self,
        group: Group,
        term: Literal | GroupRef | MetaRef,
        resolved: ResolvedTags,
    ) -> QueryNode | None:
        if isinstance(term, Literal):
            tag_ids = resolved.get(term.name) or ()
            if not tag_ids:
                logger.debug("Dropping unresolved tag %r", term.name)
                return None
            return any_of([TagTerm(int(tag_id)) for tag_id in tag_ids])

        if isinstance(term, MetaRef):
            return group.meta_predicates[term.index].query

        compiled = self._compile_group(group.subgroups[term.index], resolved)
        if compiled.is_empty:
            return None
        if len(compiled.must) == 1 and not compiled.should and not compiled.must_not:
            return compiled.must[0]
        return compiled


def _is_conjunction(node: QueryNode) -> bool:
    return (
        isinstance(node, BoolQuery)
        and bool(node.must)
        and not node.should
        and not node.must_not
    )


__all__ = ["NOT_DELETED", "QueryCompiler", "ResolvedTags"]
