"""Rate-limited client for the upstream catalog API."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping

import httpx
import orjson

from tagdex.app.errors import UpstreamError, UpstreamTransient
from tagdex.app.models import Tag
from tagdex.app.services.search_config import UpstreamConfig

from .parsing import parse_tag

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 502, 503, 504})
_TRY_LATER_MARKERS = ("try again later", "rate limit", "too many requests")


def _looks_like_try_later(body: str) -> bool:
    lowered = body.lower()
    return any(marker in lowered for marker in _TRY_LATER_MARKERS)


def _as_list(payload: Any, key: str) -> list[dict[str, Any]]:
    # The API answers an empty listing with ``{"<key>": []}`` instead of ``[]``.
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        value = payload.get(key)
        if isinstance(value, list):
            return value
    return []


class UpstreamClient:
    """Serialises every request behind one lock with a minimum spacing.

    Callers queueing behind the lock add ``queue_backoff`` seconds each to the
    wait, which keeps bursts from the sync engine and the resolver polite.
    """

    def __init__(
        self,
        config: UpstreamConfig,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config
        auth = None
        if config.username and config.api_key:
            auth = httpx.BasicAuth(config.username, config.api_key)
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
            headers={"User-Agent": config.user_agent},
            auth=auth,
            follow_redirects=True,
        )
        self._owns_client = client is None
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._waiting = 0
        self._last_request: float | None = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _throttle(self) -> None:
        delay = 0.0
        if self._last_request is not None:
            elapsed = self._clock() - self._last_request
            delay = self._config.request_interval - elapsed
        delay = max(delay, 0.0) + self._config.queue_backoff * self._waiting
        if delay > 0:
            await self._sleep(delay)
        self._last_request = self._clock()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        try:
            await self._throttle()
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                raise UpstreamTransient(
                    f"Upstream connection failed: {exc}", url=url
                ) from exc
        finally:
            self._lock.release()

        status = response.status_code
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            raise UpstreamTransient(
                f"Upstream responded {status}", status_code=status, url=url
            )
        if status >= 400:
            if _looks_like_try_later(response.text):
                raise UpstreamTransient(
                    f"Upstream asked to retry later ({status})",
                    status_code=status,
                    url=url,
                )
            raise UpstreamError(
                f"Upstream responded {status}: {response.text[:200]}",
                status_code=status,
                url=url,
            )
        return response

    async def get_json(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        response = await self._send("GET", path, params=dict(params or {}))
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            if _looks_like_try_later(response.text):
                raise UpstreamTransient(
                    "Upstream asked to retry later", url=path
                ) from exc
            raise UpstreamError(f"Invalid JSON from upstream {path}", url=path) from exc

    # ----------------------------------------------------------------- posts

    async def list_records_after(self, after_id: int, *, limit: int = 320) -> list[dict[str, Any]]:
        payload = await self.get_json(
            "/posts.json", {"limit": limit, "page": f"a{int(after_id)}"}
        )
        return _as_list(payload, "posts")

    async def list_records_changed(self, page: int, *, limit: int = 320) -> list[dict[str, Any]]:
        payload = await self.get_json(
            "/posts.json", {"limit": limit, "order": "change", "page": int(page)}
        )
        return _as_list(payload, "posts")

    async def records_by_ids(self, record_ids: Iterable[int]) -> list[dict[str, Any]]:
        ids = sorted({int(record_id) for record_id in record_ids})
        if not ids:
            return []
        payload = await self.get_json(
            "/posts.json",
            {
                "limit": len(ids),
                "tags": f"id:{','.join(str(record_id) for record_id in ids)} status:any",
            },
        )
        return _as_list(payload, "posts")

    # ------------------------------------------------------------------ tags

    async def get_tag(self, name: str) -> Tag | None:
        try:
            payload = await self.get_json(
                "/tags.json", {"limit": 1, "search[name_matches]": name}
            )
        except UpstreamError as exc:
            if isinstance(exc, UpstreamTransient) or exc.status_code != 404:
                raise
            logger.info("Tag not found upstream: %s", name)
            return None
        entries = _as_list(payload, "tags")
        if not entries:
            return None
        return parse_tag(entries[0])

    async def list_tags_updated(self, page: int, *, limit: int = 320) -> list[dict[str, Any]]:
        payload = await self.get_json(
            "/tags.json",
            {"limit": limit, "page": int(page), "search[order]": "updated_at"},
        )
        return _as_list(payload, "tags")

    async def list_aliases(self, page: int, *, limit: int = 100) -> list[dict[str, Any]]:
        payload = await self.get_json(
            "/tag_aliases.json",
            {"limit": limit, "page": int(page), "search[order]": "updated_at"},
        )
        return _as_list(payload, "tag_aliases")

    async def list_implications(self, page: int, *, limit: int = 100) -> list[dict[str, Any]]:
        payload = await self.get_json(
            "/tag_implications.json",
            {"limit": limit, "page": int(page), "search[order]": "updated_at"},
        )
        return _as_list(payload, "tag_implications")

    # --------------------------------------------------------------- exports

    async def download_export(self, name: str, destination: Path) -> Path:
        """Stream ``db_export/<name>`` to ``destination`` unless already present."""

        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.exists():
            logger.info("Reusing downloaded export %s", destination)
            return destination

        url = f"{self._config.export_url}/{name}"
        partial = destination.with_suffix(destination.suffix + ".part")
        async with self._lock:
            await self._throttle()
            try:
                async with self._client.stream("GET", url) as response:
                    if response.status_code >= 400:
                        error_type = (
                            UpstreamTransient
                            if response.status_code in TRANSIENT_STATUS_CODES
                            or response.status_code >= 500
                            else UpstreamError
                        )
                        raise error_type(
                            f"Export download failed ({response.status_code})",
                            status_code=response.status_code,
                            url=url,
                        )
                    with partial.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            await asyncio.to_thread(handle.write, chunk)
            except httpx.TransportError as exc:
                raise UpstreamTransient(f"Export download failed: {exc}", url=url) from exc
        partial.replace(destination)
        logger.info("Downloaded export %s", destination)
        return destination


__all__ = ["TRANSIENT_STATUS_CODES", "UpstreamClient"]
