from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from switchboard.models.events import BaseEvent, CallbackEvent, CommandEvent, MembershipEvent, MessageEvent
from switchboard.routing.router import DispatchRouter

logger = logging.getLogger(__name__)

ALLOWED_UPDATES = ["message", "callback_query", "my_chat_member", "chat_member"]
ADMIN_STATUSES = {"creator", "administrator"}


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int_set(value: str | None) -> set[int]:
    if not value:
        return set()
    result: set[int] = set()
    for part in value.split(","):
        item = part.strip()
        if not item:
            continue
        try:
            result.add(int(item))
        except ValueError as exc:
            raise SystemExit(f"invalid integer id: {item}") from exc
    return result


def split_text(text: str, limit: int = 3900) -> list[str]:
    content = text.strip() or "[empty-response]"
    if len(content) <= limit:
        return [content]
    chunks: list[str] = []
    current = content
    while len(current) > limit:
        split_at = current.rfind("\n", 0, limit)
        if split_at < 0:
            split_at = limit
        chunks.append(current[:split_at].strip())
        current = current[split_at:].strip()
    if current:
        chunks.append(current)
    return chunks


@dataclass
class TelegramSettings:
    bot_token: str
    bot_username: str
    telegram_api_base_url: str
    poll_timeout_seconds: int
    poll_interval_seconds: float
    error_backoff_seconds: float
    owner_user_ids: set[int]
    allowed_chat_ids: set[int]
    drop_pending_updates_on_start: bool
    webhook_secret: str

    @classmethod
    def from_env(cls) -> "TelegramSettings":
        token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
        if not token:
            raise SystemExit("TELEGRAM_BOT_TOKEN is required")
        return cls(
            bot_token=token,
            bot_username=os.getenv("TELEGRAM_BOT_USERNAME", "").strip().lstrip("@").lower(),
            telegram_api_base_url=os.getenv("TELEGRAM_API_BASE_URL", "https://api.telegram.org").rstrip("/"),
            poll_timeout_seconds=int(os.getenv("TELEGRAM_POLL_TIMEOUT_SECONDS", "20")),
            poll_interval_seconds=float(os.getenv("TELEGRAM_POLL_INTERVAL_SECONDS", "0.2")),
            error_backoff_seconds=float(os.getenv("TELEGRAM_ERROR_BACKOFF_SECONDS", "2")),
            owner_user_ids=_parse_int_set(os.getenv("TELEGRAM_OWNER_IDS")),
            allowed_chat_ids=_parse_int_set(os.getenv("TELEGRAM_ALLOWED_CHAT_IDS")),
            drop_pending_updates_on_start=_parse_bool(os.getenv("TELEGRAM_DROP_PENDING_ON_START"), True),
            webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET", "").strip(),
        )


class TelegramTransport:
    """Bot API calls the router needs, over one shared async client."""

    def __init__(self, settings: TelegramSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.settings.telegram_api_base_url, timeout=30.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None

    def _telegram_path(self, method: str) -> str:
        return f"/bot{self.settings.bot_token}/{method}"

    async def call(self, method: str, payload: dict[str, Any], *, timeout: float | None = None) -> Any:
        kwargs: dict[str, Any] = {"json": payload}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await self.client.post(self._telegram_path(method), **kwargs)
        response.raise_for_status()
        body = response.json()
        if not body.get("ok"):
            raise RuntimeError(f"telegram {method} failed: {body}")
        return body.get("result")

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        buttons: list[list[dict[str, str]]] | None = None,
        reply_to: int | None = None,
    ) -> int | None:
        chunks = split_text(text)
        message_id: int | None = None
        for index, chunk in enumerate(chunks):
            payload: dict[str, Any] = {"chat_id": chat_id, "text": chunk}
            if index == 0 and reply_to is not None:
                payload["reply_to_message_id"] = reply_to
                payload["allow_sending_without_reply"] = True
            if index == len(chunks) - 1 and buttons:
                payload["reply_markup"] = {"inline_keyboard": buttons}
            result = await self.call("sendMessage", payload)
            if isinstance(result, dict) and "message_id" in result:
                message_id = int(result["message_id"])
        return message_id

    async def edit_message(
        self,
        chat_id: str,
        message_id: int,
        text: str,
        *,
        buttons: list[list[dict[str, str]]] | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": split_text(text)[0],
            "reply_markup": {"inline_keyboard": buttons or []},
        }
        await self.call("editMessageText", payload)

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        await self.call("answerCallbackQuery", payload)

    async def is_chat_admin(self, chat_id: str, user_id: str) -> bool:
        if chat_id == user_id:
            return True
        try:
            if int(user_id) in self.settings.owner_user_ids:
                return True
        except ValueError:
            return False
        member = await self.call("getChatMember", {"chat_id": chat_id, "user_id": user_id})
        return isinstance(member, dict) and member.get("status") in ADMIN_STATUSES


class TelegramGateway:
    def __init__(self, settings: TelegramSettings, router: DispatchRouter, transport: TelegramTransport):
        self.settings = settings
        self.router = router
        self.transport = transport
        self.offset: int | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    async def run(self) -> None:
        logger.info("telegram gateway started")
        if self.settings.drop_pending_updates_on_start:
            updates = await self._get_updates(timeout=0, limit=100)
            if updates:
                self.offset = max(int(item["update_id"]) for item in updates) + 1
        while True:
            try:
                updates = await self._get_updates(timeout=self.settings.poll_timeout_seconds, offset=self.offset)
                for update in updates:
                    self.offset = int(update["update_id"]) + 1
                    self.submit(update)
                await asyncio.sleep(self.settings.poll_interval_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - network guarded loop
                logger.warning("telegram gateway error: %s", exc)
                await asyncio.sleep(self.settings.error_backoff_seconds)

    def submit(self, update: dict[str, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(self.handle_update(update))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _get_updates(
        self,
        *,
        timeout: int,
        limit: int = 100,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {
            "timeout": timeout,
            "limit": limit,
            "allowed_updates": ALLOWED_UPDATES,
        }
        if offset is not None:
            payload["offset"] = offset
        result = await self.transport.call("getUpdates", payload, timeout=timeout + 10.0)
        if not isinstance(result, list):
            raise RuntimeError("telegram getUpdates returned non-list result")
        return [item for item in result if isinstance(item, dict)]

    async def handle_update(self, update: dict[str, Any]) -> None:
        event = self.event_from_update(update)
        if event is None:
            return
        try:
            if isinstance(event, MembershipEvent):
                await self.router.handle_membership_change(event.chat_id)
            elif isinstance(event, CommandEvent):
                await self.router.handle_command(event)
            elif isinstance(event, CallbackEvent):
                await self.router.handle_callback(event)
            elif isinstance(event, MessageEvent):
                await self.router.handle_message(event)
        except Exception:
            logger.exception("telegram update %s failed", update.get("update_id"))

    def event_from_update(self, update: dict[str, Any]) -> BaseEvent | None:
        for key in ("my_chat_member", "chat_member"):
            change = update.get(key)
            if isinstance(change, dict):
                chat = change.get("chat")
                if isinstance(chat, dict) and "id" in chat:
                    return MembershipEvent(chat_id=str(chat["id"]), chat_type=str(chat.get("type", "group")), change=key)
                return None

        query = update.get("callback_query")
        if isinstance(query, dict):
            return self._callback_event(query)

        message = update.get("message")
        if not isinstance(message, dict):
            return None
        chat = message.get("chat")
        if not isinstance(chat, dict) or "id" not in chat:
            return None
        chat_id = int(chat["id"])
        if self.settings.allowed_chat_ids and chat_id not in self.settings.allowed_chat_ids:
            return None
        chat_type = str(chat.get("type", "group"))
        if message.get("new_chat_members") or message.get("left_chat_member"):
            return MembershipEvent(chat_id=str(chat_id), chat_type=chat_type, change="members")

        from_user = message.get("from")
        if not isinstance(from_user, dict) or bool(from_user.get("is_bot")):
            return None
        user_id = str(from_user["id"]) if "id" in from_user else None
        text = message.get("text")
        if not isinstance(text, str) or not text.strip():
            return None
        message_id = int(message["message_id"]) if "message_id" in message else None

        stripped = text.strip()
        if stripped.startswith("/"):
            token, _, args = stripped.partition(" ")
            _, at, target = token.partition("@")
            if at and self.settings.bot_username and target.lower() != self.settings.bot_username:
                return None
            return CommandEvent(
                chat_id=str(chat_id),
                user_id=user_id,
                message_id=message_id,
                chat_type=chat_type,
                command=token,
                args=args.strip(),
                text=stripped,
            )
        return MessageEvent(
            chat_id=str(chat_id),
            user_id=user_id,
            message_id=message_id,
            chat_type=chat_type,
            text=stripped,
        )

    def _callback_event(self, query: dict[str, Any]) -> CallbackEvent | None:
        message = query.get("message")
        from_user = query.get("from")
        if not isinstance(message, dict) or not isinstance(message.get("chat"), dict):
            return None
        chat = message["chat"]
        if "id" not in chat:
            return None
        chat_id = int(chat["id"])
        if self.settings.allowed_chat_ids and chat_id not in self.settings.allowed_chat_ids:
            return None
        return CallbackEvent(
            chat_id=str(chat_id),
            user_id=str(from_user["id"]) if isinstance(from_user, dict) and "id" in from_user else None,
            message_id=int(message["message_id"]) if "message_id" in message else None,
            chat_type=str(chat.get("type", "group")),
            data=str(query.get("data") or ""),
            callback_id=str(query["id"]) if "id" in query else None,
        )
