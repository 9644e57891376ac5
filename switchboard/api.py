from __future__ import annotations

import asyncio
import hmac
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from switchboard import __version__
from switchboard.auth import require_owner
from switchboard.config import get_settings
from switchboard.errors import ConfigResolutionError
from switchboard.remote.client import BOT_CONFIGS
from switchboard.runtime import SwitchboardRuntime, build_runtime
from switchboard.storage.chats import get_chat, set_chat_config_url
from switchboard.storage.db import init_db

logger = logging.getLogger(__name__)

_runtime: SwitchboardRuntime | None = None


def get_runtime() -> SwitchboardRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: SwitchboardRuntime | None) -> None:
    global _runtime
    _runtime = runtime


def _scheduler_enabled() -> bool:
    return os.getenv("SWITCHBOARD_SCHEDULER_ENABLED", "true").strip().lower() in {"1", "true", "yes", "on"}


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    init_db()
    runtime = get_runtime()
    if _scheduler_enabled():
        await runtime.scheduler.start()
    try:
        yield
    finally:
        await runtime.aclose()


app = FastAPI(title="Switchboard", version=__version__, lifespan=lifespan)


class ChatConfigRequest(BaseModel):
    config: str | None = None


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/chats/{chat_id}/snapshot")
async def chat_snapshot(chat_id: str, request: Request) -> dict[str, Any]:
    require_owner(request)
    runtime = get_runtime()
    try:
        snapshot = await runtime.snapshots.get(chat_id)
    except ConfigResolutionError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return snapshot.summary()


@app.put("/v1/chats/{chat_id}/config")
async def set_chat_config(chat_id: str, body: ChatConfigRequest, request: Request) -> dict[str, Any]:
    require_owner(request)
    runtime = get_runtime()
    config_url: str | None = None
    if body.config and body.config.strip():
        try:
            config_url = runtime.remote.document_url(BOT_CONFIGS, body.config)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            await runtime.snapshots.build(chat_id, config_url)
        except ConfigResolutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
    item = await asyncio.to_thread(set_chat_config_url, chat_id, config_url)
    runtime.snapshots.invalidate(chat_id)
    return {"chat_id": item.chat_id, "config_url": item.config_url}


@app.get("/v1/chats/{chat_id}")
async def chat_record(chat_id: str, request: Request) -> dict[str, Any]:
    require_owner(request)
    item = await asyncio.to_thread(get_chat, chat_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return item.model_dump()


@app.post("/v1/chats/{chat_id}/invalidate")
async def invalidate_chat(chat_id: str, request: Request) -> dict[str, Any]:
    require_owner(request)
    get_runtime().snapshots.invalidate(chat_id)
    return {"chat_id": chat_id, "invalidated": True}


@app.get("/v1/chats/{chat_id}/flows/{service_id}")
async def read_flow(chat_id: str, service_id: str, request: Request) -> dict[str, Any]:
    require_owner(request)
    snapshot = await get_runtime().flows.read(chat_id, service_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Flow state not found")
    return asdict(snapshot)


@app.delete("/v1/chats/{chat_id}/flows/{service_id}")
async def clear_flow(chat_id: str, service_id: str, request: Request) -> dict[str, Any]:
    require_owner(request)
    deleted = await get_runtime().flows.clear(chat_id, service_id)
    return {"chat_id": chat_id, "service_id": service_id, "deleted": deleted}


@app.get("/v1/scheduler/status")
async def scheduler_status(request: Request) -> dict[str, Any]:
    require_owner(request)
    return get_runtime().scheduler.status()


@app.post("/v1/scheduler/tick")
async def scheduler_tick(request: Request) -> dict[str, Any]:
    require_owner(request)
    return await get_runtime().scheduler.run_tick()


@app.post("/v1/telegram/webhook")
async def telegram_webhook(request: Request) -> dict[str, bool]:
    runtime = get_runtime()
    gateway = runtime.gateway
    if gateway is None:
        raise HTTPException(status_code=404, detail="Telegram gateway not configured")
    secret = gateway.settings.webhook_secret
    if secret:
        supplied = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if not hmac.compare_digest(supplied, secret):
            raise HTTPException(status_code=403, detail="Invalid webhook secret")
    update = await request.json()
    if not isinstance(update, dict):
        raise HTTPException(status_code=400, detail="Update must be a JSON object")
    gateway.submit(update)
    return {"ok": True}
