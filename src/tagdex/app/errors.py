"""Exceptions shared across the query, search and sync layers."""

from __future__ import annotations


class TagdexError(Exception):
    """Base class for all application errors."""


class MalformedQuery(TagdexError, ValueError):
    """Raised when a query cannot be parsed (for example an unclosed group)."""

    status = 400


class PaginationDepthExceeded(TagdexError, ValueError):
    """Raised when a page cursor would read past the safe result window."""

    status = 400


class InvalidCursor(TagdexError, ValueError):
    """Raised when an opaque sort cursor cannot be decoded."""

    status = 400


class UpstreamError(TagdexError):
    """Hard failure reported by the upstream catalog."""

    __slots__ = ("status_code", "url")

    def __init__(self, message: str, *, status_code: int | None = None, url: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class UpstreamTransient(UpstreamError):
    """Rate limiting, 5xx or connection failure; safe to retry later."""


__all__ = [
    "TagdexError",
    "MalformedQuery",
    "PaginationDepthExceeded",
    "InvalidCursor",
    "UpstreamError",
    "UpstreamTransient",
]
