from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from switchboard.config import Settings, get_settings
from switchboard.datasets.cache import DatasetCache
from switchboard.datasets.schemas import SchemaRegistry
from switchboard.flows.store import FlowStateStore
from switchboard.gateway.telegram import TelegramGateway, TelegramSettings, TelegramTransport
from switchboard.remote.client import RemoteStore
from switchboard.routing.router import DispatchRouter, Transport
from switchboard.routing.snapshot import SnapshotBuilder
from switchboard.sandbox.executor import ProcessExecutor, SandboxExecutor
from switchboard.scheduler.runtime import PeriodicScheduler
from switchboard.services.artifacts import ArtifactResolver

logger = logging.getLogger(__name__)


class LogTransport:
    """Transport used when no bot token is configured: outbound calls are only logged."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        buttons: list[list[dict[str, str]]] | None = None,
        reply_to: int | None = None,
    ) -> int | None:
        self.sent.append({"chat_id": chat_id, "text": text, "buttons": buttons, "reply_to": reply_to})
        logger.info("send chat=%s text=%r buttons=%s", chat_id, text, buttons)
        return None

    async def edit_message(
        self,
        chat_id: str,
        message_id: int,
        text: str,
        *,
        buttons: list[list[dict[str, str]]] | None = None,
    ) -> None:
        self.sent.append({"chat_id": chat_id, "message_id": message_id, "text": text, "buttons": buttons})
        logger.info("edit chat=%s message=%s text=%r", chat_id, message_id, text)

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        logger.info("answer callback=%s text=%r", callback_id, text)

    async def is_chat_admin(self, chat_id: str, user_id: str) -> bool:
        return chat_id == user_id


@dataclass
class SwitchboardRuntime:
    settings: Settings
    remote: RemoteStore
    schemas: SchemaRegistry
    datasets: DatasetCache
    flows: FlowStateStore
    artifacts: ArtifactResolver
    snapshots: SnapshotBuilder
    executor: SandboxExecutor
    transport: Transport
    router: DispatchRouter
    scheduler: PeriodicScheduler
    gateway: TelegramGateway | None = None

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.remote.aclose()
        closer = getattr(self.transport, "aclose", None)
        if closer is not None:
            await closer()


def build_runtime(
    settings: Settings | None = None,
    *,
    transport: Transport | None = None,
    executor: SandboxExecutor | None = None,
    remote: RemoteStore | None = None,
) -> SwitchboardRuntime:
    settings = settings or get_settings()
    telegram: TelegramSettings | None = None
    if transport is None and os.getenv("TELEGRAM_BOT_TOKEN", "").strip():
        telegram = TelegramSettings.from_env()
        transport = TelegramTransport(telegram)
    if transport is None:
        logger.warning("TELEGRAM_BOT_TOKEN not set; replies are only logged")
        transport = LogTransport()

    remote = remote or RemoteStore(settings)
    schemas = SchemaRegistry([settings.schemas_dir] if settings.schemas_dir else None)
    datasets = DatasetCache(remote, schemas, settings)
    flows = FlowStateStore(default_ttl_seconds=settings.flow_ttl_seconds)
    artifacts = ArtifactResolver(remote, settings)
    snapshots = SnapshotBuilder(remote, settings)
    executor = executor or ProcessExecutor(max_output_bytes=settings.sandbox_max_output_bytes)
    router = DispatchRouter(
        snapshots=snapshots,
        executor=executor,
        datasets=datasets,
        flows=flows,
        transport=transport,
        artifacts=artifacts,
        settings=settings,
    )
    scheduler = PeriodicScheduler(router, snapshots, flows, settings)
    gateway = None
    if telegram is not None and isinstance(transport, TelegramTransport):
        gateway = TelegramGateway(telegram, router, transport)
    return SwitchboardRuntime(
        settings=settings,
        remote=remote,
        schemas=schemas,
        datasets=datasets,
        flows=flows,
        artifacts=artifacts,
        snapshots=snapshots,
        executor=executor,
        transport=transport,
        router=router,
        scheduler=scheduler,
        gateway=gateway,
    )
