from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import pytest
from conftest import BASE_URL, ulid

from switchboard.datasets.cache import DatasetCache
from switchboard.datasets.schemas import SchemaRegistry
from switchboard.flows.store import FlowStateStore
from switchboard.models.events import CallbackEvent, CommandEvent, MessageEvent
from switchboard.routing.callback import parse_callback
from switchboard.routing.limits import ChatLimiter
from switchboard.routing.router import DispatchRouter
from switchboard.routing.snapshot import SnapshotBuilder
from switchboard.sandbox.executor import InMemoryExecutor
from switchboard.services.artifacts import ArtifactResolver
from switchboard.storage.chats import get_chat_config_url

CHAT_CONFIG_ID = ulid(100)
OTHER_CONFIG_ID = ulid(101)
LINKS_DATASET_ID = ulid(50)

SERVICES: dict[str, dict[str, Any]] = {
    ulid(1): {
        "id": "links",
        "kind": "single_command",
        "default_config": {"command": "links", "datasets": {"links": {"id": LINKS_DATASET_ID, "schema": "links.v1"}}},
    },
    ulid(2): {"id": "quiz", "kind": "command_flow", "default_config": {"command": "quiz"}},
    ulid(3): {"id": "echo-a", "kind": "listener"},
    ulid(4): {"id": "echo-b", "kind": "listener"},
    ulid(5): {"id": "slow", "kind": "single_command", "capabilities": {"timeoutMs": 50}, "default_config": {"command": "slow"}},
    ulid(6): {"id": "digest", "kind": "periodic_command", "default_config": {"schedule": "0 9 * * *"}},
    ulid(7): {"id": "oops", "kind": "single_command", "default_config": {"command": "oops"}},
}

LINKS = {
    "title": "Community Links",
    "categories": [
        {"name": "General", "links": [{"label": "Home", "url": "https://example.org"}]},
        {"name": "Community", "links": [{"label": "Forum", "url": "https://forum.example.org"}]},
    ],
}


class RecordingTransport:
    def __init__(self, admins: set[str] | None = None) -> None:
        self.admins = admins or set()
        self.sent: list[dict[str, Any]] = []
        self.edited: list[dict[str, Any]] = []
        self.answered: list[tuple[str, str | None]] = []

    async def send_message(self, chat_id, text, *, buttons=None, reply_to=None):
        self.sent.append({"chat_id": chat_id, "text": text, "buttons": buttons, "reply_to": reply_to})
        return len(self.sent)

    async def edit_message(self, chat_id, message_id, text, *, buttons=None):
        self.edited.append({"chat_id": chat_id, "message_id": message_id, "text": text, "buttons": buttons})

    async def answer_callback(self, callback_id, text=None):
        self.answered.append((callback_id, text))

    async def is_chat_admin(self, chat_id, user_id):
        return user_id in self.admins


def links_service(payload: dict[str, Any]) -> dict[str, Any]:
    dataset = payload["context"]["datasets"]["links"]
    names = ", ".join(category["name"] for category in dataset["categories"])
    return {"type": "reply", "text": f"{dataset['title']}: {names}"}


def quiz_service(payload: dict[str, Any]) -> dict[str, Any]:
    event = payload["event"]
    if event["type"] == "command":
        return {
            "type": "reply",
            "text": "Pick one",
            "buttons": [[{"text": "A", "params": {"answer": "a"}}, {"text": "Docs", "url": "https://example.org"}]],
            "state": {"op": "replace", "value": {"step": 1}},
        }
    return {
        "type": "edit",
        "text": f"You picked {event['params']['answer']}",
        "state": {"op": "merge", "value": {"answer": event["params"]["answer"]}},
    }


async def slow_service(payload: dict[str, Any]) -> dict[str, Any]:
    await asyncio.sleep(5)
    return {"type": "none"}


def echo_service(payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": "none"}


def digest_service(payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": "reply", "text": f"digest at {payload['event']['fired_at']}"}


def oops_service(payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": "error", "message": "Nothing to show today."}


@pytest.fixture
def published(server) -> None:
    for ref, body in SERVICES.items():
        document = {"source": {"type": "package", "name": body["id"], "version": "1.0.0"}, **body}
        server.put("service-configs", ref, document)
        server.put_url(f"{BASE_URL}/packages/{body['id']}/1.0.0/service.py", "print('unused')\n")
    server.put("datasets", LINKS_DATASET_ID, LINKS)
    server.put(
        "bot-configs",
        CHAT_CONFIG_ID,
        {
            "id": "main",
            "services": [
                {"service": ulid(1)},
                {"service": ulid(2), "admin_only": True},
                {"service": ulid(5)},
                {"service": ulid(7)},
            ],
            "listeners": [{"service": ulid(3)}, {"service": ulid(4)}],
            "periodic": [{"service": ulid(6)}],
        },
    )
    server.put("bot-configs", OTHER_CONFIG_ID, {"id": "other", "services": [{"service": ulid(1)}]})


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport(admins={"admin"})


@pytest.fixture
def executor() -> InMemoryExecutor:
    return InMemoryExecutor(
        {
            "links": links_service,
            "quiz": quiz_service,
            "slow": slow_service,
            "echo-a": echo_service,
            "echo-b": echo_service,
            "digest": digest_service,
            "oops": oops_service,
        }
    )


@pytest.fixture
def router(settings, remote, engine, published, transport, executor) -> DispatchRouter:
    settings = replace(settings, default_config_url=CHAT_CONFIG_ID)
    return DispatchRouter(
        snapshots=SnapshotBuilder(remote, settings, engine=engine),
        executor=executor,
        datasets=DatasetCache(remote, SchemaRegistry(), settings, engine=engine),
        flows=FlowStateStore(engine=engine),
        transport=transport,
        artifacts=ArtifactResolver(remote, settings, engine=engine),
        settings=settings,
        engine=engine,
    )


def _command(text: str, *, user_id: str = "member", message_id: int = 42) -> CommandEvent:
    name, _, args = text.partition(" ")
    return CommandEvent(chat_id="chat-1", user_id=user_id, message_id=message_id, command=name, args=args, text=text)


@pytest.mark.asyncio
async def test_links_command_replies_with_dataset_categories(router, transport, executor) -> None:
    await router.handle_command(_command("/links@SwitchboardBot"))

    assert transport.sent == [
        {"chat_id": "chat-1", "text": "Community Links: General, Community", "buttons": None, "reply_to": 42}
    ]
    _, grant, payload = executor.calls[0]
    assert payload["event"]["command"] == "links"
    assert payload["context"]["state"] is None
    assert grant.network_hosts == frozenset()


@pytest.mark.asyncio
async def test_unknown_command_gets_generic_reply(router, transport, executor) -> None:
    await router.handle_command(_command("/nope"))
    assert [item["text"] for item in transport.sent] == [router.settings.generic_error_text]
    assert executor.calls == []


@pytest.mark.asyncio
async def test_admin_only_command_is_refused_for_members(router, transport, executor) -> None:
    await router.handle_command(_command("/quiz"))
    assert transport.sent[-1]["text"] == router.settings.generic_error_text
    assert executor.calls == []

    await router.handle_command(_command("/quiz", user_id="admin"))
    assert transport.sent[-1]["text"] == "Pick one"


@pytest.mark.asyncio
async def test_callback_round_trip_updates_flow_state(router, transport) -> None:
    await router.handle_command(_command("/quiz", user_id="admin"))
    buttons = transport.sent[-1]["buttons"]
    assert buttons[0][1] == {"text": "Docs", "url": "https://example.org"}
    data = buttons[0][0]["callback_data"]
    parsed = parse_callback(data)
    assert parsed.params == {"answer": "a"}
    assert router.snapshots.cached("chat-1").short_ids[parsed.short_id] == "quiz"

    await router.handle_callback(
        CallbackEvent(chat_id="chat-1", user_id="admin", message_id=7, data=data, callback_id="cb-1")
    )

    assert transport.edited == [{"chat_id": "chat-1", "message_id": 7, "text": "You picked a", "buttons": None}]
    assert transport.answered == [("cb-1", None)]
    flow = await router.flows.read("chat-1", "quiz")
    assert flow is not None
    assert flow.version == 2
    assert flow.state == {"step": 1, "answer": "a"}


@pytest.mark.asyncio
async def test_malformed_or_unknown_callback_is_answered_with_error(router, transport, executor) -> None:
    await router.handle_callback(CallbackEvent(chat_id="chat-1", user_id="admin", data="garbage", callback_id="cb-1"))
    await router.handle_callback(
        CallbackEvent(chat_id="chat-1", user_id="admin", data="svc:zzzzzz|a:1", callback_id="cb-2")
    )
    assert transport.answered == [
        ("cb-1", router.settings.generic_error_text),
        ("cb-2", router.settings.generic_error_text),
    ]
    assert executor.calls == []


@pytest.mark.asyncio
async def test_sandbox_timeout_gets_generic_reply(router, transport) -> None:
    await router.handle_command(_command("/slow"))
    assert [item["text"] for item in transport.sent] == [router.settings.generic_error_text]


@pytest.mark.asyncio
async def test_error_result_is_shown_to_the_user(router, transport) -> None:
    await router.handle_command(_command("/oops"))
    assert transport.sent[-1]["text"] == "Nothing to show today."


@pytest.mark.asyncio
async def test_listeners_respect_per_chat_limit(router, executor) -> None:
    assert await router.handle_message(MessageEvent(chat_id="chat-1", user_id="u1", text="hello")) == 2

    router.limiter = ChatLimiter(concurrency=1, rate_per_minute=60)
    assert await router.handle_message(MessageEvent(chat_id="chat-1", user_id="u1", text="hello")) == 1
    assert router.limiter.active("chat-1") == 0

    ran = [entry.service_id for entry, _, _ in executor.calls]
    assert ran.count("echo-a") == 2
    assert ran.count("echo-b") == 1


@pytest.mark.asyncio
async def test_scheduled_invocation_posts_to_chat(router, transport) -> None:
    snapshot = await router.snapshots.get("chat-1")
    fired_at = datetime(2024, 7, 1, 7, 0, tzinfo=timezone.utc)
    assert await router.handle_scheduled("chat-1", snapshot.periodic[0], fired_at) is True
    assert transport.sent[-1]["text"] == f"digest at {fired_at.isoformat()}"
    assert transport.sent[-1]["reply_to"] is None


@pytest.mark.asyncio
async def test_sb_use_switches_config_for_admins_only(router, transport, engine) -> None:
    await router.handle_command(_command(f"/sb_use {OTHER_CONFIG_ID}"))
    assert transport.sent[-1]["text"] == router.settings.generic_error_text
    assert get_chat_config_url("chat-1", engine=engine) is None

    await router.handle_command(_command(f"/sb_use {ulid(999)}", user_id="admin"))
    assert get_chat_config_url("chat-1", engine=engine) is None

    await router.handle_command(_command(f"/sb_use {OTHER_CONFIG_ID}", user_id="admin"))
    expected = f"{BASE_URL}/bot-configs/{OTHER_CONFIG_ID}.json"
    assert get_chat_config_url("chat-1", engine=engine) == expected
    assert set((await router.snapshots.get("chat-1")).commands) == {"links"}

    await router.handle_command(_command("/sb_reset", user_id="admin"))
    assert get_chat_config_url("chat-1", engine=engine) is None
    assert "quiz" in (await router.snapshots.get("chat-1")).commands
