from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import weakref
from pathlib import Path
from urllib.parse import urlparse

from sqlalchemy.engine import Engine
from sqlmodel import select

from switchboard.config import Settings, get_settings
from switchboard.errors import ConfigResolutionError
from switchboard.models.config import GitSource, PackageSource, ServiceConfig, UrlSource
from switchboard.remote.client import RemoteFetchError, RemoteStore
from switchboard.storage.db import get_session, now_ts
from switchboard.storage.models import ResolvedArtifact

logger = logging.getLogger(__name__)

MAX_ARTIFACT_BYTES = 2 * 1024 * 1024


def source_key(source: PackageSource | GitSource | UrlSource) -> str:
    if isinstance(source, PackageSource):
        return f"package:{source.name}@{source.version}"
    if isinstance(source, GitSource):
        return f"git:{source.repo}@{source.commit}:{source.path}"
    return f"url:{source.url}#{source.sha256}"


def source_url(source: PackageSource | GitSource | UrlSource, settings: Settings) -> str:
    if isinstance(source, PackageSource):
        return f"{settings.package_registry_url}/{source.name}/{source.version}/service.py"
    if isinstance(source, GitSource):
        parsed = urlparse(source.repo)
        parts = [item for item in parsed.path.strip("/").removesuffix(".git").split("/") if item]
        if len(parts) < 2:
            raise ConfigResolutionError(f"cannot derive owner/repo from {source.repo}", url=source.repo)
        return settings.git_raw_url_template.format(
            owner=parts[0],
            repo=parts[1],
            commit=source.commit,
            path=source.path,
            repo_url=source.repo.removesuffix(".git"),
        )
    return source.url


def _file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArtifactResolver:
    """Resolves a service source to an immutable local file, cached by source key."""

    def __init__(self, remote: RemoteStore, settings: Settings | None = None, *, engine: Engine | None = None) -> None:
        self.remote = remote
        self.settings = settings or get_settings()
        self._engine = engine
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def resolve(self, service: ServiceConfig) -> Path:
        key = source_key(service.source)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = await asyncio.to_thread(self._lookup, key)
            if cached is not None:
                path = Path(cached.local_path)
                if path.exists() and await asyncio.to_thread(_file_sha256, path) == cached.sha256:
                    return path
                logger.warning("artifact cache for %s is stale or corrupt; refetching", key)
            return await self._download(key, service)

    async def _download(self, key: str, service: ServiceConfig) -> Path:
        url = source_url(service.source, self.settings)
        try:
            document = await self.remote.fetch(url)
        except RemoteFetchError as exc:
            raise ConfigResolutionError(f"cannot fetch artifact for {service.id}: {exc}", url=url) from exc
        body = document.body
        if not body or len(body) > MAX_ARTIFACT_BYTES:
            raise ConfigResolutionError(f"artifact for {service.id} is empty or too large", url=url)
        digest = hashlib.sha256(body).hexdigest()
        expected = getattr(service.source, "sha256", None)
        if expected and expected != digest:
            raise ConfigResolutionError(
                f"artifact hash mismatch for {service.id}: expected {expected}, got {digest}", url=url
            )

        target = self.settings.artifacts_dir / f"{digest}.py"
        await asyncio.to_thread(self._write, target, body)
        await asyncio.to_thread(self._store, key, url, target, digest)
        logger.info("resolved artifact service=%s key=%s sha256=%s", service.id, key, digest)
        return target

    def _lookup(self, key: str) -> ResolvedArtifact | None:
        with get_session(self._engine) as session:
            return session.exec(select(ResolvedArtifact).where(ResolvedArtifact.source_key == key)).first()

    def _store(self, key: str, url: str, target: Path, digest: str) -> None:
        with get_session(self._engine) as session:
            item = session.exec(select(ResolvedArtifact).where(ResolvedArtifact.source_key == key)).first()
            if item is None:
                item = ResolvedArtifact(source_key=key, url=url, local_path=str(target), sha256=digest, fetched_at=now_ts())
            else:
                item.url = url
                item.local_path = str(target)
                item.sha256 = digest
                item.fetched_at = now_ts()
            session.add(item)
            session.commit()

    @staticmethod
    def _write(target: Path, body: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(f".{os.getpid()}.tmp")
        tmp.write_bytes(body)
        os.replace(tmp, target)
