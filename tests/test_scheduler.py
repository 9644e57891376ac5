from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from switchboard.flows.store import FlowStateStore
from switchboard.models.config import ChatConfig, ServiceConfig
from switchboard.routing.snapshot import assemble_snapshot
from switchboard.scheduler.cron import compile_schedule, is_due, next_fire_times
from switchboard.scheduler.runtime import PeriodicScheduler
from switchboard.storage.chats import touch_chat


def at(hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2024, 7, 1, hour, minute, second, tzinfo=timezone.utc)


def _periodic(service_id: str, schedule: str, tz: str | None = None) -> ServiceConfig:
    config: dict[str, object] = {"schedule": schedule}
    if tz:
        config["timezone"] = tz
    return ServiceConfig.model_validate(
        {
            "id": service_id,
            "kind": "periodic_command",
            "source": {"type": "package", "name": service_id, "version": "1.0.0"},
            "default_config": config,
        }
    )


class StaticSnapshots:
    def __init__(self, services: dict[str, ServiceConfig], chat_timezone: str = "UTC") -> None:
        self.services = services
        self.chat_config = ChatConfig.model_validate(
            {"id": "c", "timezone": chat_timezone, "periodic": [{"service": ref} for ref in services]}
        )

    async def get(self, chat_id: str):
        return assemble_snapshot(chat_id, "url", self.chat_config, self.services)


class StubRouter:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, datetime]] = []
        self.outcome = True
        self.gate: asyncio.Event | None = None

    async def handle_scheduled(self, chat_id, route, fired_at) -> bool:
        self.calls.append((chat_id, route.service_id, fired_at))
        if self.gate is not None:
            await self.gate.wait()
        return self.outcome


@pytest.fixture
def router() -> StubRouter:
    return StubRouter()


def _scheduler(router, snapshots, settings, engine) -> PeriodicScheduler:
    return PeriodicScheduler(
        router,
        snapshots,
        FlowStateStore(engine=engine),
        replace(settings, scheduler_backoff_base_seconds=300),
        engine=engine,
        jitter=lambda low, high: 0.0,
    )


def test_schedule_is_evaluated_in_its_timezone() -> None:
    assert is_due("0 9 * * *", "Europe/Zurich", at(7, 0)) is True
    assert is_due("0 9 * * *", "Europe/Zurich", at(7, 0, 42)) is True
    assert is_due("0 9 * * *", "Europe/Zurich", at(7, 1)) is False
    assert is_due("0 9 * * *", "Europe/Zurich", at(8, 0)) is False
    assert is_due("*/15 * * * *", "UTC", at(7, 45)) is True


def test_invalid_schedules_are_rejected() -> None:
    for expr, tz in (("0 9 * *", "UTC"), ("61 * * * *", "UTC"), ("0 9 * * *", "Mars/Olympus")):
        with pytest.raises(ValueError):
            compile_schedule(expr, tz)


def test_next_fire_times_lists_upcoming_minutes() -> None:
    fires = next_fire_times("*/20 * * * *", "UTC", at(7, 5), count=3)
    assert [fire.astimezone(timezone.utc) for fire in fires] == [at(7, 20), at(7, 40), at(8, 0)]


@pytest.mark.asyncio
async def test_tick_launches_only_due_pairs(router, settings, engine) -> None:
    touch_chat("chat-1", engine=engine)
    touch_chat("chat-2", engine=engine)
    snapshots = StaticSnapshots(
        {"r1": _periodic("morning", "0 9 * * *"), "r2": _periodic("quarter", "*/15 * * * *")},
        chat_timezone="Europe/Zurich",
    )
    scheduler = _scheduler(router, snapshots, settings, engine)

    result = await scheduler.run_tick(at(7, 0, 30))
    await scheduler.drain()

    assert result["tick"] == at(7, 0).isoformat()
    assert sorted(result["launched"]) == ["chat-1:morning", "chat-1:quarter", "chat-2:morning", "chat-2:quarter"]
    assert {fired for _, _, fired in router.calls} == {at(7, 0)}

    result = await scheduler.run_tick(at(7, 5))
    assert result["launched"] == []


@pytest.mark.asyncio
async def test_running_pair_skips_tick_without_replay(router, settings, engine) -> None:
    touch_chat("chat-1", engine=engine)
    scheduler = _scheduler(router, StaticSnapshots({"r": _periodic("poll", "* * * * *")}), settings, engine)
    router.gate = asyncio.Event()

    first = await scheduler.run_tick(at(7, 0))
    await asyncio.sleep(0)
    second = await scheduler.run_tick(at(7, 1))
    third = await scheduler.run_tick(at(7, 2))

    assert first["launched"] == ["chat-1:poll"]
    assert second["skipped"] == ["chat-1:poll"]
    assert third["skipped"] == ["chat-1:poll"]
    assert scheduler.status()["running"] == ["chat-1:poll"]

    router.gate.set()
    await scheduler.drain()
    fourth = await scheduler.run_tick(at(7, 3))
    await scheduler.drain()

    assert fourth["launched"] == ["chat-1:poll"]
    assert [fired for _, _, fired in router.calls] == [at(7, 0), at(7, 3)]


@pytest.mark.asyncio
async def test_consecutive_failures_back_off_until_success(router, settings, engine) -> None:
    touch_chat("chat-1", engine=engine)
    scheduler = _scheduler(router, StaticSnapshots({"r": _periodic("poll", "* * * * *")}), settings, engine)
    router.outcome = False

    for minute in (0, 1):
        assert (await scheduler.run_tick(at(7, minute)))["launched"] == ["chat-1:poll"]
        await scheduler.drain()

    suppressed = await scheduler.run_tick(at(7, 2))
    assert suppressed["suppressed"] == ["chat-1:poll"]
    assert scheduler.status()["suppressed"]["chat-1:poll"]["failures"] == 2

    router.outcome = True
    resumed = await scheduler.run_tick(at(7, 1) + timedelta(seconds=300))
    await scheduler.drain()
    assert resumed["launched"] == ["chat-1:poll"]
    assert scheduler.status()["suppressed"] == {}


@pytest.mark.asyncio
async def test_tick_purges_expired_flow_state(router, settings, engine) -> None:
    flows = FlowStateStore(engine=engine)
    flows.write_sync("chat-1", "quiz", None, {"step": 1}, ttl_seconds=0)
    scheduler = _scheduler(router, StaticSnapshots({}), settings, engine)

    result = await scheduler.run_tick(at(7, 0))

    assert result["purged_flows"] == 1
    assert result["launched"] == []


@pytest.mark.asyncio
async def test_backoff_is_dropped_once_pair_leaves_the_config(router, settings, engine) -> None:
    touch_chat("chat-1", engine=engine)
    scheduler = _scheduler(router, StaticSnapshots({"r": _periodic("poll", "* * * * *")}), settings, engine)
    router.outcome = False

    for minute in (0, 1):
        await scheduler.run_tick(at(7, minute))
        await scheduler.drain()
    assert scheduler.status()["suppressed"]["chat-1:poll"]["failures"] == 2

    scheduler.snapshots = StaticSnapshots({})
    await scheduler.run_tick(at(7, 2))

    assert scheduler.status()["suppressed"] == {}
