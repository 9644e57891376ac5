"""Per-chat routing snapshots.

A snapshot is derived only from the chat config and the service configs it
references. Builds are single-flight per chat and cached with a short TTL.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.engine import Engine

from switchboard.config import Settings, get_settings
from switchboard.errors import ConfigResolutionError
from switchboard.models.config import (
    COMMAND_KINDS,
    ChatConfig,
    ServiceConfig,
    merge_config,
    parse_chat_config,
    parse_service_config,
)
from switchboard.models.routes import (
    CommandRoute,
    ListenerRoute,
    PeriodicRoute,
    RoutingSnapshot,
    ServiceRoute,
    frozen_mapping,
)
from switchboard.remote.client import BOT_CONFIGS, SERVICE_CONFIGS, RemoteFetchError, RemoteStore
from switchboard.routing.callback import short_id_for
from switchboard.scheduler.cron import compile_schedule
from switchboard.storage.chats import get_chat_config_url

logger = logging.getLogger(__name__)

SERVICE_BINDING_KINDS = COMMAND_KINDS | {"periodic_command"}
LISTENER_KINDS = frozenset({"listener"})
PERIODIC_KINDS = frozenset({"periodic_command"})
FAILED_REBUILD_RETRY_SECONDS = 5.0
MAX_BUILD_ATTEMPTS = 3


def normalize_command(token: str) -> str:
    name = token.strip().split()[0] if token.strip() else ""
    name = name.lstrip("/")
    name, _, _ = name.partition("@")
    return name.lower()


@dataclass
class _CachedSnapshot:
    snapshot: RoutingSnapshot
    expires_at: float
    stale: bool = False


class SnapshotBuilder:
    def __init__(
        self,
        remote: RemoteStore,
        settings: Settings | None = None,
        *,
        engine: Engine | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.remote = remote
        self.settings = settings or get_settings()
        self._engine = engine
        self._clock = clock
        self._entries: dict[str, _CachedSnapshot] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        # bumped by invalidate(); a build that saw an older value is not cached
        self._generations: dict[str, int] = {}

    def cached(self, chat_id: str) -> RoutingSnapshot | None:
        entry = self._entries.get(chat_id)
        return entry.snapshot if entry is not None else None

    def invalidate(self, chat_id: str) -> None:
        self._generations[chat_id] = self._generations.get(chat_id, 0) + 1
        entry = self._entries.get(chat_id)
        if entry is None:
            return
        entry.stale = True
        # service config ids are immutable; only the chat config can change under the same URL
        self.remote.forget(entry.snapshot.config_url)
        logger.info("snapshot invalidated chat=%s", chat_id)

    async def get(self, chat_id: str) -> RoutingSnapshot:
        entry = self._entries.get(chat_id)
        if entry is not None and not entry.stale and entry.expires_at > self._clock():
            return entry.snapshot

        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        async with lock:
            entry = self._entries.get(chat_id)
            if entry is not None and not entry.stale and entry.expires_at > self._clock():
                return entry.snapshot
            for _ in range(MAX_BUILD_ATTEMPTS):
                generation = self._generations.get(chat_id, 0)
                try:
                    config_url = await asyncio.to_thread(self.resolve_config_url, chat_id)
                    snapshot = await self.build(chat_id, config_url)
                except ConfigResolutionError as exc:
                    if entry is None:
                        raise
                    logger.warning("snapshot rebuild failed for chat=%s, serving last good snapshot: %s", chat_id, exc)
                    entry.stale = False
                    entry.expires_at = self._clock() + min(
                        FAILED_REBUILD_RETRY_SECONDS, self.settings.snapshot_ttl_seconds
                    )
                    return entry.snapshot
                if self._generations.get(chat_id, 0) == generation:
                    self._generations.pop(chat_id, None)
                    self._entries[chat_id] = _CachedSnapshot(
                        snapshot=snapshot,
                        expires_at=self._clock() + self.settings.snapshot_ttl_seconds,
                    )
                    return snapshot
                logger.info("chat=%s invalidated during rebuild, rebuilding", chat_id)
                self.remote.forget(snapshot.config_url)
            # invalidated on every attempt: serve the newest build but keep nothing cached
            self._entries.pop(chat_id, None)
            return snapshot

    def resolve_config_url(self, chat_id: str) -> str:
        override = get_chat_config_url(chat_id, engine=self._engine)
        config_url = override or self.settings.default_config_url
        if not config_url:
            raise ConfigResolutionError(f"no chat config configured for chat {chat_id}")
        return config_url

    async def load_chat_config(self, config_url: str) -> tuple[str, ChatConfig]:
        try:
            document = await self.remote.fetch_document(BOT_CONFIGS, config_url)
        except RemoteFetchError as exc:
            raise ConfigResolutionError(f"cannot fetch chat config: {exc}", url=config_url) from exc
        try:
            return document.url, parse_chat_config(document.body)
        except ValueError as exc:
            raise ConfigResolutionError(f"invalid chat config at {document.url}: {exc}", url=document.url) from exc

    async def build(self, chat_id: str, config_url: str) -> RoutingSnapshot:
        canonical_url, chat_config = await self.load_chat_config(config_url)
        refs = chat_config.service_refs()
        loaded = await asyncio.gather(*(self._load_service(ref) for ref in refs))
        services = {ref: service for ref, service in zip(refs, loaded) if service is not None}
        snapshot = assemble_snapshot(chat_id, canonical_url, chat_config, services)
        logger.info(
            "snapshot built chat=%s commands=%d listeners=%d periodic=%d skipped=%d",
            chat_id,
            len(snapshot.commands),
            len(snapshot.listeners),
            len(snapshot.periodic),
            len(refs) - len(services),
        )
        return snapshot

    async def _load_service(self, ref: str) -> ServiceConfig | None:
        try:
            document = await self.remote.fetch_document(SERVICE_CONFIGS, ref)
            return parse_service_config(document.body)
        except (RemoteFetchError, ValueError) as exc:
            logger.warning("skipping service %s: %s", ref, exc)
            return None


def assemble_snapshot(
    chat_id: str,
    config_url: str,
    chat_config: ChatConfig,
    services: dict[str, ServiceConfig],
) -> RoutingSnapshot:
    """Project a chat config and its resolved service configs into routing maps.

    ``services`` maps binding references to configs; bindings whose reference
    is missing, or whose service kind does not fit the binding list, are
    skipped.
    """
    short_ids: dict[str, str] = {}
    by_service: dict[str, ServiceRoute] = {}
    commands: dict[str, CommandRoute] = {}
    listeners: list[ListenerRoute] = []
    periodic: list[PeriodicRoute] = []

    def _service(ref: str, allowed: frozenset[str], section: str) -> ServiceConfig | None:
        service = services.get(ref)
        if service is None:
            return None
        if service.kind not in allowed:
            logger.warning("chat %s: service %s of kind %s cannot be bound in %s", chat_id, service.id, service.kind, section)
            return None
        if service.id not in short_ids.values():
            short_ids[_short_id(service.id, short_ids)] = service.id
        return service

    def _common(service: ServiceConfig, overrides: dict[str, Any]) -> dict[str, Any]:
        short = next(key for key, value in short_ids.items() if value == service.id)
        return {
            "service_id": service.id,
            "short_id": short,
            "kind": service.kind,
            "capabilities": service.capabilities,
            "merged_config": frozen_mapping(merge_config(service.default_config, overrides)),
            "overrides": frozen_mapping(overrides),
            "service": service,
        }

    for binding in chat_config.services:
        service = _service(binding.service, SERVICE_BINDING_KINDS, "services")
        if service is None:
            continue
        fields = _common(service, binding.overrides)
        command = normalize_command(binding.command or str(fields["merged_config"].get("command") or ""))
        if not command:
            logger.warning("chat %s: service %s has no command name; skipped", chat_id, service.id)
            continue
        if command in commands:
            logger.warning("chat %s: command /%s already bound to %s", chat_id, command, commands[command].service_id)
            continue
        route = CommandRoute(**fields, command=command, expose=binding.expose, admin_only=binding.admin_only)
        commands[command] = route
        by_service.setdefault(service.id, route)

    for binding in chat_config.listeners:
        if not binding.enabled:
            continue
        service = _service(binding.service, LISTENER_KINDS, "listeners")
        if service is None:
            continue
        route = ListenerRoute(**_common(service, binding.overrides))
        listeners.append(route)
        by_service.setdefault(service.id, route)

    for binding in chat_config.periodic:
        if not binding.enabled:
            continue
        service = _service(binding.service, PERIODIC_KINDS, "periodic")
        if service is None:
            continue
        fields = _common(service, binding.overrides)
        merged = fields["merged_config"]
        schedule = str(binding.schedule or merged.get("schedule") or "").strip()
        tz_name = str(merged.get("timezone") or chat_config.timezone or "UTC")
        try:
            compile_schedule(schedule, tz_name)
        except ValueError as exc:
            logger.warning("chat %s: service %s has unusable schedule %r (%s): %s", chat_id, service.id, schedule, tz_name, exc)
            continue
        route = PeriodicRoute(**fields, schedule=schedule, timezone=tz_name)
        periodic.append(route)
        by_service.setdefault(service.id, route)

    return RoutingSnapshot(
        chat_id=chat_id,
        config_url=config_url,
        chat_config=chat_config,
        commands=frozen_mapping(commands),
        listeners=tuple(listeners),
        periodic=tuple(periodic),
        short_ids=frozen_mapping(short_ids),
        services=frozen_mapping(by_service),
    )


def _short_id(service_id: str, taken: dict[str, str]) -> str:
    length = 6
    candidate = short_id_for(service_id, length)
    while candidate in taken and taken[candidate] != service_id:
        length += 2
        candidate = short_id_for(service_id, length)
    return candidate
