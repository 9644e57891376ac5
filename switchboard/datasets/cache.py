"""TTL cache of schema-validated, read-only JSON datasets.

Only documents that passed validation are ever stored, so whatever sits in
the cache is the last known good version for its URL.
"""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from typing import Any, Mapping

from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlmodel import select

from switchboard.config import Settings, get_settings
from switchboard.datasets.schemas import SchemaRegistry
from switchboard.errors import ConfigResolutionError, DataFetchError, DataValidationError
from switchboard.models.config import DatasetRef, ServiceConfig
from switchboard.remote.client import DATASETS, RemoteFetchError, RemoteStore
from switchboard.storage.db import get_session, now_ts
from switchboard.storage.models import DatasetCacheEntry

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "any.v1"


def dataset_refs(default_config: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, DatasetRef]:
    raw: dict[str, Any] = {}
    for source in (default_config.get("datasets"), overrides.get("datasets")):
        if isinstance(source, dict):
            raw.update(source)
    refs: dict[str, DatasetRef] = {}
    for key, value in raw.items():
        if value is None:
            continue
        if isinstance(value, str):
            value = {"id": value, "schema": DEFAULT_SCHEMA}
        try:
            ref = DatasetRef.model_validate(value)
        except ValidationError as exc:
            raise ConfigResolutionError(f"invalid dataset reference {key!r}: {exc.errors()[0]['msg']}") from exc
        if not ref.url and not ref.id:
            raise ConfigResolutionError(f"dataset reference {key!r} needs an id or url")
        refs[str(key)] = ref
    return refs


class DatasetCache:
    def __init__(
        self,
        remote: RemoteStore,
        schemas: SchemaRegistry,
        settings: Settings | None = None,
        *,
        engine: Engine | None = None,
    ) -> None:
        self.remote = remote
        self.schemas = schemas
        self.settings = settings or get_settings()
        self._engine = engine
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def resolve_datasets(self, service: ServiceConfig, overrides: Mapping[str, Any]) -> dict[str, Any]:
        refs = dataset_refs(service.default_config, overrides)
        if not refs:
            return {}
        keys = list(refs)
        values = await asyncio.gather(*(self.get(refs[key]) for key in keys))
        return dict(zip(keys, values))

    async def get(self, ref: DatasetRef) -> Any:
        try:
            url = self.remote.document_url(DATASETS, ref.url or ref.id or "")
        except ValueError as exc:
            raise DataFetchError(str(exc), url=ref.url or ref.id or "") from exc
        ttl_seconds = self.settings.dataset_default_ttl_seconds if ref.ttl_seconds is None else ref.ttl_seconds

        lock = self._locks.setdefault(url, asyncio.Lock())
        async with lock:
            entry = await asyncio.to_thread(self._load, url)
            previous = entry if entry is not None and entry.schema_name == ref.schema_name else None
            if previous is not None and previous.fetched_at + previous.ttl_seconds * 1000 > now_ts():
                return json.loads(previous.body_json)
            return await self._refresh(url, ref.schema_name, ttl_seconds, previous)

    async def _refresh(
        self,
        url: str,
        schema_name: str,
        ttl_seconds: int,
        previous: DatasetCacheEntry | None,
    ) -> Any:
        try:
            document = await self.remote.fetch(url, etag=previous.etag if previous is not None else None)
        except RemoteFetchError as exc:
            if previous is not None:
                logger.warning("dataset fetch failed for %s, serving last valid copy: %s", url, exc)
                return json.loads(previous.body_json)
            raise DataFetchError(f"dataset fetch failed for {url}: {exc}", url=url) from exc

        if document.not_modified and previous is not None:
            await asyncio.to_thread(self._touch, url, ttl_seconds)
            return json.loads(previous.body_json)

        try:
            value = json.loads(document.body)
            errors = self.schemas.validate(schema_name, value)
        except ValueError as exc:
            errors = [f"not valid JSON: {exc}"]
            value = None
        if errors:
            if previous is not None:
                logger.error("dataset %s failed %s validation, keeping last valid copy: %s", url, schema_name, errors)
                return json.loads(previous.body_json)
            raise DataValidationError(
                f"dataset {url} failed {schema_name} validation: {'; '.join(errors)}",
                url=url,
                schema_name=schema_name,
            )

        body = json.dumps(value, ensure_ascii=False)
        await asyncio.to_thread(self._store, url, body, document.etag, schema_name, ttl_seconds)
        return value

    def _load(self, url: str) -> DatasetCacheEntry | None:
        with get_session(self._engine) as session:
            return session.exec(select(DatasetCacheEntry).where(DatasetCacheEntry.url == url)).first()

    def _touch(self, url: str, ttl_seconds: int) -> None:
        with get_session(self._engine) as session:
            item = session.exec(select(DatasetCacheEntry).where(DatasetCacheEntry.url == url)).first()
            if item is None:
                return
            item.fetched_at = now_ts()
            item.ttl_seconds = ttl_seconds
            session.add(item)
            session.commit()

    def _store(self, url: str, body: str, etag: str | None, schema_name: str, ttl_seconds: int) -> None:
        with get_session(self._engine) as session:
            item = session.exec(select(DatasetCacheEntry).where(DatasetCacheEntry.url == url)).first()
            if item is None:
                item = DatasetCacheEntry(
                    url=url,
                    body_json=body,
                    etag=etag,
                    schema_name=schema_name,
                    fetched_at=now_ts(),
                    ttl_seconds=ttl_seconds,
                )
            else:
                item.body_json = body
                item.etag = etag
                item.schema_name = schema_name
                item.fetched_at = now_ts()
                item.ttl_seconds = ttl_seconds
            session.add(item)
            session.commit()
