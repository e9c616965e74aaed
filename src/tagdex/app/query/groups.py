"""Group parser building the query AST from tokens."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from tagdex.app.errors import MalformedQuery

from .metatags import FieldPredicate, OrderDirective, classify
from .tokenizer import NEGATION, Tokenizer

OPEN_GROUP = "("
CLOSE_GROUP = ")"
UNION = "~"
# Exclusive-or was dropped from the language; the token is skipped.
EXCLUSIVE_OR = "^"


@dataclass(frozen=True, slots=True)
class Literal:
    """A tag name, case-folded."""

    name: str


@dataclass(frozen=True, slots=True)
class GroupRef:
    """Placeholder for ``Group.subgroups[index]``."""

    index: int


@dataclass(frozen=True, slots=True)
class MetaRef:
    """Placeholder for ``Group.meta_predicates[index]``."""

    index: int


@dataclass(frozen=True, slots=True)
class Negated:
    term: Union[Literal, GroupRef, MetaRef]


@dataclass(frozen=True, slots=True)
class UnionMarker:
    """``~`` between two terms."""


Term = Union[Literal, GroupRef, MetaRef]
Token = Union[Literal, GroupRef, MetaRef, Negated, UnionMarker]


@dataclass(slots=True)
class Group:
    tokens: list[Token] = field(default_factory=list)
    subgroups: list["Group"] = field(default_factory=list)
    order_directives: list[OrderDirective] = field(default_factory=list)
    meta_predicates: list[FieldPredicate] = field(default_factory=list)
    references_deleted: bool = False

    def literal_names(self) -> set[str]:
        """Return every tag name referenced in this group or its subgroups."""

        names: set[str] = set()
        for token in self.tokens:
            term = token.term if isinstance(token, Negated) else token
            if isinstance(term, Literal):
                names.add(term.name)
        for subgroup in self.subgroups:
            names |= subgroup.literal_names()
        return names


class GroupParser:
    """Turn a token stream into a nested :class:`Group` tree."""

    def parse(self, query: str | None) -> Group:
        root = Group()
        stack: list[Group] = [root]
        negate_next = False

        for token in Tokenizer(query):
            current = stack[-1]

            if token == NEGATION:
                negate_next = not negate_next
                continue

            if token == OPEN_GROUP:
                subgroup = Group()
                current.subgroups.append(subgroup)
                self._append(current, GroupRef(len(current.subgroups) - 1), negate_next)
                stack.append(subgroup)
                negate_next = False
                continue

            if token == CLOSE_GROUP:
                negate_next = False
                if len(stack) == 1:
                    raise MalformedQuery("Malformed tags, unexpected ')'")
                closed = stack.pop()
                if closed.references_deleted:
                    stack[-1].references_deleted = True
                continue

            if token == UNION:
                negate_next = False
                current.tokens.append(UnionMarker())
                continue

            if token == EXCLUSIVE_OR:
                negate_next = False
                continue

            classified = classify(token)
            if classified is None:
                self._append(current, Literal(token.casefold()), negate_next)
            elif isinstance(classified, OrderDirective):
                root.order_directives.append(classified)
            elif isinstance(classified, FieldPredicate):
                current.meta_predicates.append(classified)
                if classified.references_deleted:
                    current.references_deleted = True
                self._append(
                    current, MetaRef(len(current.meta_predicates) - 1), negate_next
                )
            negate_next = False

        if len(stack) != 1:
            raise MalformedQuery("Malformed tags, group not closed")
        return root

    @staticmethod
    def _append(group: Group, term: Term, negated: bool) -> None:
        group.tokens.append(Negated(term) if negated else term)


def parse_query(query: str | None) -> Group:
    return GroupParser().parse(query)


__all__ = [
    "Group",
    "GroupParser",
    "GroupRef",
    "Literal",
    "MetaRef",
    "Negated",
    "UnionMarker",
    "Token",
    "Term",
    "parse_query",
]
