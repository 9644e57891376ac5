from __future__ import annotations

import json
import os
import sys
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any

import httpx
import pytest


ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

BASE_URL = "https://store.test/v1"

os.environ.setdefault("SWITCHBOARD_DATA_DIR", tempfile.mkdtemp(prefix="switchboard_test_"))
os.environ.setdefault("SWITCHBOARD_REMOTE_BASE_URL", BASE_URL)
os.environ.setdefault("SWITCHBOARD_SCHEDULER_ENABLED", "false")
os.environ.setdefault("SWITCHBOARD_EXECUTION_MODE", "local")
os.environ.pop("TELEGRAM_BOT_TOKEN", None)
os.environ.pop("SWITCHBOARD_ADMIN_TOKEN", None)

from switchboard.config import Settings, get_settings  # noqa: E402
from switchboard.remote.client import RemoteStore  # noqa: E402
from switchboard.storage.db import init_db, make_engine  # noqa: E402


def ulid(n: int) -> str:
    return f"01HZX3K5Q8W2M4N6P7R9T0{n:04d}"


class DocumentServer:
    """In-process stand-in for the remote document store, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.documents: dict[str, tuple[bytes, str | None]] = {}
        self.failing: set[str] = set()
        self.requests: list[str] = []

    def put_url(self, url: str, body: Any, *, etag: str | None = None) -> str:
        if isinstance(body, str):
            data = body.encode("utf-8")
        elif isinstance(body, bytes):
            data = body
        else:
            data = json.dumps(body).encode("utf-8")
        self.documents[url] = (data, etag)
        return url

    def put(self, partition: str, doc_id: str, body: Any, *, etag: str | None = None) -> str:
        return self.put_url(f"{BASE_URL}/{partition}/{doc_id}.json", body, etag=etag)

    def count(self, url: str) -> int:
        return sum(1 for item in self.requests if item == url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url in self.failing:
            return httpx.Response(503, text="unavailable")
        item = self.documents.get(url)
        if item is None:
            return httpx.Response(404, text="not found")
        body, etag = item
        if etag and request.headers.get("If-None-Match") == etag:
            return httpx.Response(304)
        headers = {"ETag": etag} if etag else {}
        return httpx.Response(200, content=body, headers=headers)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return replace(
        get_settings(),
        data_dir=tmp_path,
        db_path=tmp_path / "switchboard.db",
        artifacts_dir=tmp_path / "artifacts",
        service_data_dir=tmp_path / "service-data",
        service_env_path=tmp_path / "service-env.json",
        remote_base_url=BASE_URL,
        default_config_url="",
        package_registry_url=f"{BASE_URL}/packages",
        max_retries=0,
        scheduler_jitter_seconds=0.0,
    )


@pytest.fixture
def engine(tmp_path: Path):
    target = make_engine(tmp_path / "test.db")
    init_db(target)
    return target


@pytest.fixture
def server() -> DocumentServer:
    return DocumentServer()


@pytest.fixture
def remote(settings: Settings, server: DocumentServer) -> RemoteStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    return RemoteStore(settings, client=client)
