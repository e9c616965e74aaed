from __future__ import annotations

import hashlib

import httpx
import pytest

from tagdex.app.services.provenance import (
    DirectSourceChecker,
    MatchResult,
    ProvenanceService,
    SourceCheckerRegistry,
    detect_file_type,
)

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JPEG = b"\xff\xd8\xff\xe0" + b"\x01" * 64

FILES = {
    "https://i.imgur.com/match.png": PNG,
    "https://i.imgur.com/other.jpg": JPEG,
    "https://i.imgur.com/unknown.png": b"plain text body",
}


def _handler(request: httpx.Request) -> httpx.Response:
    body = FILES.get(str(request.url))
    if body is None:
        return httpx.Response(404)
    return httpx.Response(200, content=body)


@pytest.fixture
def checker() -> DirectSourceChecker:
    return DirectSourceChecker(httpx.AsyncClient(transport=httpx.MockTransport(_handler)))


@pytest.mark.parametrize(
    "payload, expected",
    [
        (PNG, "png"),
        (JPEG, "jpg"),
        (b"GIF89a....", "gif"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "webp"),
        (b"\x1a\x45\xdf\xa3\x01", "webm"),
        (b"%PDF-1.7", None),
    ],
)
def test_detect_file_type(payload: bytes, expected) -> None:
    assert detect_file_type(payload) == expected


def test_direct_checker_patterns(checker: DirectSourceChecker) -> None:
    assert checker.supports("https://pbs.twimg.com/media/abc?format=jpg&name=orig")
    assert checker.supports("https://d.furaffinity.net/art/someone/1/1.someone_pic.png")
    assert not checker.supports("https://twitter.com/someone/status/1")


@pytest.mark.asyncio
async def test_matching_file(checker: DirectSourceChecker, make_record) -> None:
    record = make_record(1, content_hash=hashlib.md5(PNG).hexdigest())

    result = await checker.verify(record, "https://i.imgur.com/match.png")

    assert result == MatchResult(md5_match=True, file_type_match=True, file_type="png")


@pytest.mark.asyncio
async def test_different_file(checker: DirectSourceChecker, make_record) -> None:
    record = make_record(1)

    result = await checker.verify(record, "https://i.imgur.com/other.jpg")

    assert result.as_dict() == {"md5Match": False, "fileTypeMatch": False, "fileType": "jpg"}


@pytest.mark.asyncio
async def test_unrecognised_and_failed_downloads(checker: DirectSourceChecker, make_record) -> None:
    record = make_record(1)

    unknown = await checker.verify(record, "https://i.imgur.com/unknown.png")
    missing = await checker.verify(record, "https://i.imgur.com/gone.png")

    assert unknown.unsupported
    assert missing.error is not None
    assert not missing.md5_match


@pytest.mark.asyncio
async def test_service_checks_supported_sources(db, checker, make_record) -> None:
    record = make_record(
        1,
        content_hash=hashlib.md5(PNG).hexdigest(),
        sources=[
            "https://i.imgur.com/match.png",
            "https://example.com/gallery",
            "https://i.imgur.com/match.png",
        ],
    )
    await db.records.bulk_upsert([record])
    service = ProvenanceService(db, SourceCheckerRegistry([checker]))

    results = await service.check(1)

    assert results == {
        "https://i.imgur.com/match.png": {
            "checker": "direct",
            "md5Match": True,
            "fileTypeMatch": True,
            "fileType": "png",
        }
    }
    assert await service.check(99) is None
