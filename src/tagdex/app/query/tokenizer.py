"""Whitespace tokenizer for the tag query language."""

from __future__ import annotations

import re
from typing import Iterator

NEGATION = "-"

_WHITESPACE = re.compile(r"\s+")


class Tokenizer:
    """Lazily split a raw query into tokens.

    Tokens are whitespace delimited. A ``-`` seen before any other character
    of a token is emitted on its own so ``-blue_eyes`` yields ``-`` followed
    by ``blue_eyes``. Iterating restarts from the beginning of the query.
    """

    __slots__ = ("raw", "_text", "_index")

    def __init__(self, raw: str | None) -> None:
        self.raw = raw or ""
        self._text = _WHITESPACE.sub(" ", self.raw).strip()
        self._index = 0

    def __iter__(self) -> Iterator[str]:
        self.reset()
        while not self.done:
            token = self.consume()
            if token:
                yield token

    @property
    def done(self) -> bool:
        return self._index >= len(self._text)

    def reset(self) -> None:
        self._index = 0

    def peek(self) -> str | None:
        """Return the next token without consuming it, or ``None`` at the end."""

        if self.done:
            return None
        token, _ = self._scan(self._index)
        return token

    def consume(self) -> str | None:
        """Return the next token and advance past it."""

        if self.done:
            return None
        token, self._index = self._scan(self._index)
        return token

    def _scan(self, start: int) -> tuple[str, int]:
        text = self._text
        while start < len(text) and text[start] == " ":
            start += 1
        chars: list[str] = []
        for position in range(start, len(text)):
            char = text[position]
            if char == " ":
                return "".join(chars), position + 1
            if char == NEGATION and not chars:
                return char, position + 1
            chars.append(char)
        return "".join(chars), len(text)


__all__ = ["NEGATION", "Tokenizer"]
