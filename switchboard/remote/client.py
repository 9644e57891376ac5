"""Read-only client for the remote config/document store.

Documents live under ``<base>/<partition>/<id>.json`` where ``id`` is a ULID:
fixed length and lexicographically sortable by creation time. Nothing here
ever writes to the store.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import weakref
from dataclasses import dataclass

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from switchboard.config import Settings, get_settings

logger = logging.getLogger(__name__)

BOT_CONFIGS = "bot-configs"
SERVICE_CONFIGS = "service-configs"
DATASETS = "datasets"
PARTITIONS = (BOT_CONFIGS, SERVICE_CONFIGS, DATASETS)
ULID_PATTERN = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")


class RemoteFetchError(RuntimeError):
    def __init__(self, message: str, *, url: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


@dataclass(frozen=True)
class FetchedDocument:
    url: str
    body: bytes
    etag: str | None = None
    not_modified: bool = False


def is_document_id(value: str) -> bool:
    return bool(ULID_PATTERN.match(value.strip().upper()))


class RemoteStore:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        document_ttl_seconds: float | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None
        self._document_ttl = (
            self.settings.snapshot_ttl_seconds if document_ttl_seconds is None else document_ttl_seconds
        )
        self._documents: dict[str, tuple[float, FetchedDocument]] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.request_timeout_seconds, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def document_url(self, partition: str, ref: str) -> str:
        """Map a document id or URL to its canonical URL inside ``partition``."""
        if partition not in PARTITIONS:
            raise ValueError(f"unknown partition: {partition}")
        value = ref.strip()
        prefix = f"{self.settings.remote_base_url}/{partition}/"
        if is_document_id(value):
            return f"{prefix}{value.upper()}.json"
        if value.startswith(prefix):
            name = value[len(prefix):].removesuffix(".json")
            if is_document_id(name):
                return value
        raise ValueError(f"not a {partition} document reference: {ref}")

    async def fetch_document(self, partition: str, ref: str) -> FetchedDocument:
        """Fetch a document with a short-lived in-memory cache per URL."""
        try:
            url = self.document_url(partition, ref)
        except ValueError as exc:
            raise RemoteFetchError(str(exc), url=ref) from exc
        cached = self._documents.get(url)
        if cached is not None and cached[0] > time.monotonic():
            return cached[1]
        lock = self._locks.setdefault(url, asyncio.Lock())
        async with lock:
            cached = self._documents.get(url)
            if cached is not None and cached[0] > time.monotonic():
                return cached[1]
            document = await self.fetch(url)
            now = time.monotonic()
            self._prune(now)
            self._documents[url] = (now + self._document_ttl, document)
            return document

    def forget(self, url: str) -> None:
        self._documents.pop(url, None)

    def _prune(self, now: float) -> None:
        for url in [url for url, (expires_at, _) in self._documents.items() if expires_at <= now]:
            del self._documents[url]

    async def fetch(self, url: str, *, etag: str | None = None) -> FetchedDocument:
        headers = {"Accept": "application/json"}
        if etag:
            headers["If-None-Match"] = etag
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.max_retries + 1),
                wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
                retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError, httpx.HTTPStatusError)),
                reraise=True,
            ):
                with attempt:
                    response = await self.client.get(url, headers=headers)
                    if response.status_code >= 500 or response.status_code == 429:
                        response.raise_for_status()
                    if response.status_code == 304:
                        return FetchedDocument(url=url, body=b"", etag=etag, not_modified=True)
                    if response.status_code >= 400:
                        raise RemoteFetchError(
                            f"non-retryable status={response.status_code} for {url}",
                            url=url,
                            status_code=response.status_code,
                        )
                    return FetchedDocument(url=url, body=response.content, etag=response.headers.get("ETag"))
        except httpx.HTTPStatusError as exc:
            raise RemoteFetchError(
                f"fetch failed for {url}: {exc}", url=url, status_code=exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteFetchError(f"fetch failed for {url}: {exc}", url=url) from exc
        raise RemoteFetchError("unreachable", url=url)
