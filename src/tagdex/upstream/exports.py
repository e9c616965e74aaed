"""Daily CSV exports: naming, download and streaming reads."""

from __future__ import annotations

import asyncio
import csv
import gzip
import logging
import sys
from datetime import date, timedelta
from itertools import islice
from pathlib import Path
from typing import AsyncIterator, Iterator

from tagdex.app.errors import UpstreamError, UpstreamTransient

from .client import UpstreamClient

logger = logging.getLogger(__name__)

EXPORT_KINDS = ("tags", "posts", "tag_aliases", "tag_implications")

# Post rows carry full tag strings and descriptions.
csv.field_size_limit(min(sys.maxsize, 2**31 - 1))


def export_name(kind: str, day: date) -> str:
    if kind not in EXPORT_KINDS:
        raise ValueError(f"Unknown export kind: {kind}")
    return f"{kind}-{day.isoformat()}.csv.gz"


def iter_export_rows(path: Path) -> Iterator[dict[str, str]]:
    """Yield export rows as dictionaries keyed by the CSV header."""

    opener = gzip.open if path.suffix == ".gz" else open
    with opener(path, "rt", encoding="utf-8", newline="") as handle:
        for row in csv.DictReader(handle):
            yield {key: (value or "").strip() for key, value in row.items() if key}


class ExportReader:
    """Fetch the newest export of a kind and read it in batches."""

    def __init__(
        self,
        client: UpstreamClient,
        directory: Path,
        *,
        today: date | None = None,
        lookback_days: int = 2,
    ) -> None:
        self._client = client
        self._directory = directory
        self._today = today
        self._lookback_days = max(1, lookback_days)

    async def fetch(self, kind: str) -> Path:
        """Download the most recent export of ``kind``, trying earlier days on 404."""

        today = self._today or date.today()
        *recent, oldest = [
            export_name(kind, today - timedelta(days=offset))
            for offset in range(self._lookback_days)
        ]
        for name in recent:
            try:
                return await self._client.download_export(name, self._directory / name)
            except UpstreamTransient:
                raise
            except UpstreamError as exc:
                if exc.status_code != 404:
                    raise
                logger.info("Export %s not published yet", name)
        return await self._client.download_export(oldest, self._directory / oldest)

    async def batches(self, path: Path, size: int) -> AsyncIterator[list[dict[str, str]]]:
        """Read ``path`` off the event loop, ``size`` rows at a time."""

        rows = iter_export_rows(path)
        while True:
            batch = await asyncio.to_thread(lambda: list(islice(rows, size)))
            if not batch:
                return
            yield batch


__all__ = ["EXPORT_KINDS", "ExportReader", "export_name", "iter_export_rows"]
