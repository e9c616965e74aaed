from __future__ import annotations

import pytest

from tagdex.app.query.tokenizer import Tokenizer


@pytest.mark.parametrize(
    "query, expected",
    [
        ("blue_eyes red_eyes", ["blue_eyes", "red_eyes"]),
        ("  blue_eyes \t\n red_eyes  ", ["blue_eyes", "red_eyes"]),
        ("-blue_eyes", ["-", "blue_eyes"]),
        ("- blue_eyes", ["-", "blue_eyes"]),
        ("-(a ~ b)", ["-", "(a", "~", "b)"]),
        ("( a ~ b )", ["(", "a", "~", "b", ")"]),
        ("x-ray score:>-1", ["x-ray", "score:>-1"]),
        ("", []),
        (None, []),
    ],
)
def test_splits_tokens(query, expected) -> None:
    assert list(Tokenizer(query)) == expected


def test_peek_does_not_consume() -> None:
    tokens = Tokenizer("-a b")

    assert tokens.peek() == "-"
    assert tokens.peek() == "-"
    assert tokens.consume() == "-"
    assert tokens.peek() == "a"
    assert tokens.consume() == "a"
    assert tokens.consume() == "b"
    assert tokens.done
    assert tokens.peek() is None
    assert tokens.consume() is None


def test_iteration_restarts_from_the_beginning() -> None:
    tokens = Tokenizer("a b")
    tokens.consume()

    assert list(tokens) == ["a", "b"]
    assert list(tokens) == ["a", "b"]
