"""Verify a record against the files its sources point at."""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Protocol, Sequence

import httpx

from tagdex.app.models import Record

logger = logging.getLogger(__name__)

_MAGIC_NUMBERS: tuple[tuple[bytes, int, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", 0, "png"),
    (b"\xff\xd8\xff", 0, "jpg"),
    (b"GIF87a", 0, "gif"),
    (b"GIF89a", 0, "gif"),
    (b"\x1a\x45\xdf\xa3", 0, "webm"),
    (b"WEBP", 8, "webp"),
)


def detect_file_type(payload: bytes) -> str | None:
    for magic, offset, extension in _MAGIC_NUMBERS:
        if payload[offset : offset + len(magic)] == magic:
            return extension
    return None


@dataclass(slots=True, frozen=True)
class MatchResult:
    md5_match: bool = False
    file_type_match: bool = False
    file_type: str | None = None
    unsupported: bool = False
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "md5Match": self.md5_match,
            "fileTypeMatch": self.file_type_match,
        }
        if self.file_type is not None:
            payload["fileType"] = self.file_type
        if self.unsupported:
            payload["unsupported"] = True
        if self.error is not None:
            payload["error"] = self.error
        return payload


class SourceChecker(Protocol):
    name: str

    def supports(self, url: str) -> bool:
        ...

    async def verify(self, record: Record, url: str) -> MatchResult:
        ...


class DirectSourceChecker:
    """Download direct file links and compare them with the record."""

    name = "direct"

    DEFAULT_PATTERNS: tuple[str, ...] = (
        r"://pbs\.twimg\.com/media/.*(\.|format=)(png|jpe?g)",
        r"://d\.furaffinity\.net/art/.*\.(png|jpe?g|gif)",
        r"://inkbunny\.net/files/.*\.(png|jpe?g|gif)",
        r"://derpicdn\.net/img/(view|download)/.*\.(png|jpe?g|gif|webm)",
        r"://files\.catbox\.moe/.*\.(png|jpe?g|gif|webm)",
        r"://i\.imgur\.com/.*\.(png|jpe?g|gif|webm)",
        r"://cdn\.weasyl\.com/.*/submissions/.*\.(png|jpe?g|gif|webm)",
    )

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        patterns: Sequence[str] | None = None,
        max_bytes: int = 100 * 1024 * 1024,
    ) -> None:
        self._client = client
        self._patterns = [
            re.compile(pattern, re.IGNORECASE)
            for pattern in (patterns if patterns is not None else self.DEFAULT_PATTERNS)
        ]
        self._max_bytes = max_bytes

    def supports(self, url: str) -> bool:
        return any(pattern.search(url) for pattern in self._patterns)

    async def verify(self, record: Record, url: str) -> MatchResult:
        digest = hashlib.md5()
        head = b""
        size = 0
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    size += len(chunk)
                    if size > self._max_bytes:
                        return MatchResult(error="file too large")
                    if len(head) < 16:
                        head += chunk[: 16 - len(head)]
                    digest.update(chunk)
        except httpx.HTTPError as exc:
            logger.warning("Source check failed for %s (record %s): %s", url, record.id, exc)
            return MatchResult(error=str(exc) or exc.__class__.__name__)

        file_type = detect_file_type(head)
        if file_type is None:
            return MatchResult(unsupported=True)
        expected_type = "jpg" if record.file_type == "jpeg" else record.file_type
        return MatchResult(
            md5_match=digest.hexdigest() == (record.content_hash or "").lower(),
            file_type_match=file_type == expected_type,
            file_type=file_type,
        )


class SourceCheckerRegistry:
    """Checkers registered at startup, consulted in registration order."""

    def __init__(self, checkers: Iterable[SourceChecker] = ()) -> None:
        self._checkers: list[SourceChecker] = list(checkers)

    def checker_for(self, url: str) -> SourceChecker | None:
        for checker in self._checkers:
            if checker.supports(url):
                return checker
        return None


class ProvenanceService:
    def __init__(self, db, registry: SourceCheckerRegistry) -> None:
        self._db = db
        self._registry = registry

    async def check(self, record_id: int) -> dict[str, dict[str, Any]] | None:
        """Return per-source results, or ``None`` when the record is unknown."""

        record = await self._db.records.get(record_id)
        if record is None:
            return None
        results: dict[str, dict[str, Any]] = {}
        for url in dict.fromkeys(record.sources):
            checker = self._registry.checker_for(url)
            if checker is None:
                continue
            result = await checker.verify(record, url)
            results[url] = {"checker": checker.name, **result.as_dict()}
        return results


__all__ = [
    "DirectSourceChecker",
    "MatchResult",
    "ProvenanceService",
    "SourceChecker",
    "SourceCheckerRegistry",
    "detect_file_type",
]
