"""Dispatch of inbound chat events to sandboxed services.

Every entry point swallows the failure of its own invocation: errors are
logged with their cause and the user only ever sees a generic reply.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Mapping, Protocol

from sqlalchemy.engine import Engine

from switchboard.config import Settings, get_settings
from switchboard.datasets.cache import DatasetCache
from switchboard.errors import (
    AuthorizationError,
    ConfigResolutionError,
    SandboxError,
    StateConflictError,
    SwitchboardError,
)
from switchboard.flows.directives import apply_directive
from switchboard.flows.store import FlowSnapshot, FlowStateStore
from switchboard.models.events import BaseEvent, CallbackEvent, CommandEvent, MessageEvent, ScheduledEvent
from switchboard.models.routes import CommandRoute, PeriodicRoute, RoutingSnapshot, ServiceRoute
from switchboard.models.wire import (
    Button,
    EditResult,
    ErrorResult,
    ExecutionContext,
    ExecutionPayload,
    ReplyResult,
)
from switchboard.remote.client import BOT_CONFIGS
from switchboard.routing.callback import CallbackFormatError, encode_callback, parse_callback
from switchboard.routing.limits import ChatLimiter
from switchboard.routing.snapshot import SnapshotBuilder, normalize_command
from switchboard.sandbox.capabilities import load_service_env, resolve_grant
from switchboard.sandbox.executor import ExecutionEntry, SandboxExecutor
from switchboard.services.artifacts import ArtifactResolver
from switchboard.storage.chats import set_chat_config_url, touch_chat

logger = logging.getLogger(__name__)

ADMIN_COMMANDS = frozenset({"sb_use", "sb_reset", "sb_reload"})


class Transport(Protocol):
    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        buttons: list[list[dict[str, str]]] | None = None,
        reply_to: int | None = None,
    ) -> int | None: ...

    async def edit_message(
        self,
        chat_id: str,
        message_id: int,
        text: str,
        *,
        buttons: list[list[dict[str, str]]] | None = None,
    ) -> None: ...

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None: ...

    async def is_chat_admin(self, chat_id: str, user_id: str) -> bool: ...


class DispatchRouter:
    def __init__(
        self,
        *,
        snapshots: SnapshotBuilder,
        executor: SandboxExecutor,
        datasets: DatasetCache,
        flows: FlowStateStore,
        transport: Transport,
        artifacts: ArtifactResolver,
        settings: Settings | None = None,
        limiter: ChatLimiter | None = None,
        engine: Engine | None = None,
        service_env_loader: Callable[[], Mapping[str, Mapping[str, str]]] | None = None,
    ) -> None:
        self.snapshots = snapshots
        self.executor = executor
        self.datasets = datasets
        self.flows = flows
        self.transport = transport
        self.artifacts = artifacts
        self.settings = settings or get_settings()
        self.limiter = limiter or ChatLimiter(
            concurrency=self.settings.listener_concurrency,
            rate_per_minute=self.settings.listener_rate_per_minute,
        )
        self._engine = engine
        self._service_env_loader = service_env_loader or (lambda: load_service_env(self.settings.service_env_path))

    async def handle_command(self, event: CommandEvent) -> None:
        await self._seen(event)
        name = normalize_command(event.command)
        try:
            if name in ADMIN_COMMANDS:
                await self._handle_admin_command(name, event)
                return
            snapshot = await self.snapshots.get(event.chat_id)
            route = snapshot.commands.get(name)
            if route is None:
                raise AuthorizationError(f"unknown command /{name}", chat_id=event.chat_id, user_id=event.user_id)
            if not route.expose:
                raise AuthorizationError(f"command /{name} is not exposed", chat_id=event.chat_id, user_id=event.user_id)
            if route.admin_only and not await self._is_admin(event):
                raise AuthorizationError(f"command /{name} is admin-only", chat_id=event.chat_id, user_id=event.user_id)
            await self._run(snapshot, route, replace(event, command=name))
        except StateConflictError as exc:
            logger.warning("command /%s chat=%s lost flow race: %s", name, event.chat_id, exc)
            await self._reply(event, self.settings.retry_later_text)
        except SwitchboardError as exc:
            self._log_failure("command", event, exc)
            await self._reply(event, self.settings.generic_error_text)
        except Exception:
            logger.exception("command /%s chat=%s failed", name, event.chat_id)
            await self._reply(event, self.settings.generic_error_text)

    async def handle_callback(self, event: CallbackEvent) -> None:
        await self._seen(event)
        answer: str | None = None
        try:
            parsed = parse_callback(event.data)
            snapshot = await self.snapshots.get(event.chat_id)
            service_id = snapshot.short_ids.get(parsed.short_id)
            route = snapshot.route_for_service(service_id) if service_id else None
            if route is None:
                raise AuthorizationError(
                    f"unknown callback target {parsed.short_id}", chat_id=event.chat_id, user_id=event.user_id
                )
            if isinstance(route, CommandRoute) and route.admin_only and not await self._is_admin(event):
                raise AuthorizationError(
                    f"callback for {route.service_id} is admin-only", chat_id=event.chat_id, user_id=event.user_id
                )
            await self._run(snapshot, route, replace(event, params=dict(parsed.params)))
        except CallbackFormatError as exc:
            logger.info("malformed callback chat=%s data=%r: %s", event.chat_id, event.data, exc)
            answer = self.settings.generic_error_text
        except StateConflictError as exc:
            logger.warning("callback chat=%s lost flow race: %s", event.chat_id, exc)
            answer = self.settings.retry_later_text
        except SwitchboardError as exc:
            self._log_failure("callback", event, exc)
            answer = self.settings.generic_error_text
        except Exception:
            logger.exception("callback chat=%s data=%r failed", event.chat_id, event.data)
            answer = self.settings.generic_error_text
        finally:
            if event.callback_id:
                await self._answer(event.callback_id, answer)

    async def handle_message(self, event: MessageEvent) -> int:
        """Fan a plain message out to the chat's listeners; returns how many ran."""
        await self._seen(event)
        try:
            snapshot = await self.snapshots.get(event.chat_id)
        except SwitchboardError as exc:
            self._log_failure("message", event, exc)
            return 0
        if not snapshot.listeners:
            return 0

        admitted: list[ServiceRoute] = []
        for route in snapshot.listeners:
            if not self.limiter.try_acquire(event.chat_id):
                logger.warning(
                    "listener %s dropped for chat=%s: concurrency or rate limit reached",
                    route.service_id,
                    event.chat_id,
                )
                continue
            admitted.append(route)
        outcomes = await asyncio.gather(*(self._run_listener(snapshot, route, event) for route in admitted))
        return sum(1 for ok in outcomes if ok)

    async def handle_scheduled(self, chat_id: str, route: PeriodicRoute, fired_at: datetime) -> bool:
        """Run one periodic invocation; returns False on any failure."""
        event = ScheduledEvent(chat_id=chat_id, schedule=route.schedule, fired_at=fired_at.isoformat())
        try:
            snapshot = await self.snapshots.get(chat_id)
            result = await self._run(snapshot, route, event)
        except SwitchboardError as exc:
            self._log_failure("scheduled", event, exc)
            return False
        except Exception:
            logger.exception("scheduled run chat=%s service=%s failed", chat_id, route.service_id)
            return False
        return not isinstance(result, ErrorResult)

    async def handle_membership_change(self, chat_id: str) -> None:
        self.snapshots.invalidate(chat_id)

    async def _handle_admin_command(self, name: str, event: CommandEvent) -> None:
        if not await self._is_admin(event):
            raise AuthorizationError(f"/{name} requires a chat admin", chat_id=event.chat_id, user_id=event.user_id)
        if name == "sb_use":
            ref = event.args.strip()
            if not ref:
                await self._reply(event, "Usage: /sb_use <config-url-or-id>")
                return
            try:
                config_url = self.snapshots.remote.document_url(BOT_CONFIGS, ref)
                await self.snapshots.build(event.chat_id, config_url)
            except (ValueError, ConfigResolutionError) as exc:
                logger.warning("chat %s: /sb_use %s rejected: %s", event.chat_id, ref, exc)
                await self._reply(event, "That config could not be loaded; keeping the current one.")
                return
            await asyncio.to_thread(set_chat_config_url, event.chat_id, config_url, engine=self._engine)
            self.snapshots.invalidate(event.chat_id)
            await self._reply(event, f"Chat config set to {config_url}")
        elif name == "sb_reset":
            await asyncio.to_thread(set_chat_config_url, event.chat_id, None, engine=self._engine)
            self.snapshots.invalidate(event.chat_id)
            await self._reply(event, "Chat config reset to the default.")
        else:
            self.snapshots.invalidate(event.chat_id)
            await self._reply(event, "Chat config will be reloaded.")

    async def _run_listener(self, snapshot: RoutingSnapshot, route: ServiceRoute, event: MessageEvent) -> bool:
        try:
            await self._run(snapshot, route, event)
            return True
        except StateConflictError as exc:
            logger.warning("listener %s chat=%s lost flow race: %s", route.service_id, event.chat_id, exc)
        except SwitchboardError as exc:
            self._log_failure("listener", event, exc)
            await self._send(event.chat_id, self.settings.generic_error_text)
        except Exception:
            logger.exception("listener %s chat=%s failed", route.service_id, event.chat_id)
            await self._send(event.chat_id, self.settings.generic_error_text)
        finally:
            self.limiter.release(event.chat_id)
        return False

    async def _run(self, snapshot: RoutingSnapshot, route: ServiceRoute, event: BaseEvent) -> Any:
        flow = await self.flows.read(snapshot.chat_id, route.service_id)
        datasets = await self.datasets.resolve_datasets(route.service, route.overrides)
        grant = resolve_grant(
            route.service_id,
            route.capabilities,
            self.settings,
            service_env=self._service_env_loader(),
        )
        artifact = await self.artifacts.resolve(route.service)
        payload = ExecutionPayload(
            event=event.payload(),
            context=self._context(snapshot, route, event, datasets, flow),
        )
        result = await self.executor.execute(ExecutionEntry(route.service_id, artifact), grant, payload)

        if result.state is not None:
            await apply_directive(
                self.flows,
                chat_id=snapshot.chat_id,
                service_id=route.service_id,
                directive=result.state,
                expected_version=flow.version if flow is not None else None,
                base_state=flow.state if flow is not None else None,
                ttl_seconds=self.settings.flow_ttl_seconds,
                max_retries=self.settings.flow_conflict_retries,
            )
        await self._deliver(route, event, result)
        return result

    def _context(
        self,
        snapshot: RoutingSnapshot,
        route: ServiceRoute,
        event: BaseEvent,
        datasets: dict[str, Any],
        flow: FlowSnapshot | None,
    ) -> ExecutionContext:
        config = dict(route.merged_config)
        chat_config = snapshot.chat_config
        return ExecutionContext(
            chat_id=snapshot.chat_id,
            service_id=route.service_id,
            user_id=event.user_id,
            config=config,
            datasets=datasets,
            locale=config.get("locale") or chat_config.locale,
            timezone=str(config.get("timezone") or chat_config.timezone or "UTC"),
            state=flow.state if flow is not None else None,
            state_version=flow.version if flow is not None else None,
        )

    async def _deliver(self, route: ServiceRoute, event: BaseEvent, result: Any) -> None:
        if isinstance(result, (ReplyResult, EditResult)):
            buttons = self._encode_buttons(route, result.buttons)
            if isinstance(result, EditResult) and isinstance(event, CallbackEvent) and event.message_id is not None:
                await self.transport.edit_message(event.chat_id, event.message_id, result.text, buttons=buttons)
            else:
                await self.transport.send_message(
                    event.chat_id, result.text, buttons=buttons, reply_to=_reply_target(event)
                )
        elif isinstance(result, ErrorResult):
            logger.info("service %s returned error for chat=%s: %s", route.service_id, event.chat_id, result.message)
            await self.transport.send_message(
                event.chat_id, result.message or self.settings.generic_error_text, reply_to=_reply_target(event)
            )

    def _encode_buttons(self, route: ServiceRoute, rows: list[list[Button]]) -> list[list[dict[str, str]]] | None:
        if not rows:
            return None
        encoded: list[list[dict[str, str]]] = []
        for row in rows:
            items: list[dict[str, str]] = []
            for button in row:
                if button.url is not None:
                    items.append({"text": button.text, "url": button.url})
                    continue
                try:
                    data = encode_callback(route.short_id, button.params)
                except CallbackFormatError as exc:
                    raise SandboxError(
                        f"service {route.service_id} returned an unencodable button: {exc}",
                        service_id=route.service_id,
                    ) from exc
                items.append({"text": button.text, "callback_data": data})
            if items:
                encoded.append(items)
        return encoded or None

    async def _is_admin(self, event: BaseEvent) -> bool:
        if event.user_id is None:
            return False
        try:
            return await self.transport.is_chat_admin(event.chat_id, event.user_id)
        except Exception:
            logger.exception("admin check failed chat=%s user=%s", event.chat_id, event.user_id)
            return False

    async def _seen(self, event: BaseEvent) -> None:
        try:
            await asyncio.to_thread(touch_chat, event.chat_id, chat_type=event.chat_type, engine=self._engine)
        except Exception:
            logger.exception("failed to record chat %s", event.chat_id)

    async def _reply(self, event: BaseEvent, text: str) -> None:
        await self._send(event.chat_id, text, reply_to=_reply_target(event))

    async def _send(self, chat_id: str, text: str, *, reply_to: int | None = None) -> None:
        try:
            await self.transport.send_message(chat_id, text, reply_to=reply_to)
        except Exception:
            logger.exception("failed to deliver reply to chat=%s", chat_id)

    async def _answer(self, callback_id: str, text: str | None) -> None:
        try:
            await self.transport.answer_callback(callback_id, text)
        except Exception:
            logger.exception("failed to answer callback %s", callback_id)

    def _log_failure(self, source: str, event: BaseEvent, exc: SwitchboardError) -> None:
        if isinstance(exc, SandboxError):
            logger.error(
                "%s dispatch chat=%s service=%s sandbox failure %s: %s",
                source,
                event.chat_id,
                exc.service_id,
                type(exc).__name__,
                exc,
            )
        elif isinstance(exc, AuthorizationError):
            logger.info("%s dispatch chat=%s user=%s denied: %s", source, event.chat_id, event.user_id, exc)
        else:
            logger.warning("%s dispatch chat=%s failed %s: %s", source, event.chat_id, type(exc).__name__, exc)


def _reply_target(event: BaseEvent) -> int | None:
    return event.message_id if isinstance(event, CommandEvent) else None
