from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.engine import Engine

from switchboard.config import Settings, get_settings
from switchboard.flows.store import FlowStateStore
from switchboard.models.routes import PeriodicRoute
from switchboard.routing.router import DispatchRouter
from switchboard.routing.snapshot import SnapshotBuilder
from switchboard.scheduler.cron import floor_minute, is_due
from switchboard.storage.chats import list_chat_ids

logger = logging.getLogger(__name__)

TICK_JOB_ID = "switchboard:tick"


@dataclass
class PairBackoff:
    failures: int = 0
    suppressed_until: float = 0.0


class PeriodicScheduler:
    """Minute ticker that dispatches due periodic services through the router.

    A (chat, service) pair still running from an earlier tick is skipped, and
    a tick nobody was awake for is never replayed.
    """

    def __init__(
        self,
        router: DispatchRouter,
        snapshots: SnapshotBuilder,
        flows: FlowStateStore,
        settings: Settings | None = None,
        *,
        engine: Engine | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.router = router
        self.snapshots = snapshots
        self.flows = flows
        self.settings = settings or get_settings()
        self._engine = engine
        self._sleep = sleep
        self._jitter = jitter
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False
        self._running: set[tuple[str, str]] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._backoff: dict[tuple[str, str], PairBackoff] = {}
        self._last_tick: dict[str, Any] | None = None

    async def start(self) -> None:
        self._started = True
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._tick_job,
            trigger=CronTrigger(second=0, timezone=timezone.utc),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        self._scheduler.start()

    async def stop(self) -> None:
        scheduler = self._scheduler
        self._scheduler = None
        self._started = False
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def status(self) -> dict[str, Any]:
        scheduler_running = bool(self._scheduler and self._scheduler.running)
        job = self._scheduler.get_job(TICK_JOB_ID) if self._scheduler else None
        return {
            "started": self._started,
            "scheduler_running": scheduler_running,
            "next_tick_at": job.next_run_time.isoformat() if job and job.next_run_time else None,
            "running": sorted(f"{chat}:{service}" for chat, service in self._running),
            "suppressed": {
                f"{chat}:{service}": {"failures": item.failures, "suppressed_until": item.suppressed_until}
                for (chat, service), item in sorted(self._backoff.items())
            },
            "last_tick": self._last_tick,
        }

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_tick(self, now: datetime | None = None) -> dict[str, Any]:
        tick = floor_minute(now or datetime.now(timezone.utc))
        launched: list[str] = []
        skipped: list[str] = []
        suppressed: list[str] = []

        chat_ids = await asyncio.to_thread(list_chat_ids, engine=self._engine)
        present: set[tuple[str, str]] = set()
        unreadable: set[str] = set()
        for chat_id in chat_ids:
            try:
                snapshot = await self.snapshots.get(chat_id)
            except Exception as exc:
                logger.warning("scheduler: no snapshot for chat=%s: %s", chat_id, exc)
                unreadable.add(chat_id)
                continue
            for route in snapshot.periodic:
                present.add((chat_id, route.service_id))
                if not self._due(route, tick):
                    continue
                key = (chat_id, route.service_id)
                label = f"{chat_id}:{route.service_id}"
                if key in self._running:
                    logger.info("scheduler: %s still running, tick %s skipped", label, tick.isoformat())
                    skipped.append(label)
                    continue
                backoff = self._backoff.get(key)
                if backoff is not None and backoff.suppressed_until > tick.timestamp():
                    suppressed.append(label)
                    continue
                self._running.add(key)
                task = asyncio.create_task(self._run_pair(key, route, tick))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                launched.append(label)

        self._prune_backoff(present, unreadable)

        try:
            purged = await self.flows.purge_expired()
        except Exception:
            logger.exception("scheduler: purging expired flow state failed")
            purged = 0

        self._last_tick = {
            "tick": tick.isoformat(),
            "launched": launched,
            "skipped": skipped,
            "suppressed": suppressed,
            "purged_flows": purged,
        }
        return self._last_tick

    def _prune_backoff(self, present: set[tuple[str, str]], unreadable: set[str]) -> None:
        stale = [
            key
            for key in self._backoff
            if key not in present and key[0] not in unreadable and key not in self._running
        ]
        for key in stale:
            del self._backoff[key]

    async def _tick_job(self) -> None:
        try:
            await self.run_tick()
        except Exception:
            logger.exception("scheduler tick failed")

    def _due(self, route: PeriodicRoute, tick: datetime) -> bool:
        try:
            return is_due(route.schedule, route.timezone, tick)
        except ValueError as exc:
            logger.warning("scheduler: bad schedule for %s: %s", route.service_id, exc)
            return False

    async def _run_pair(self, key: tuple[str, str], route: PeriodicRoute, tick: datetime) -> None:
        chat_id, service_id = key
        ok = False
        try:
            delay = self._jitter(0.0, max(0.0, self.settings.scheduler_jitter_seconds))
            if delay > 0:
                await self._sleep(delay)
            ok = await self.router.handle_scheduled(chat_id, route, tick)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("scheduler: run failed chat=%s service=%s", chat_id, service_id)
        finally:
            self._running.discard(key)
        self._record(key, ok, tick)

    def _record(self, key: tuple[str, str], ok: bool, tick: datetime) -> None:
        if ok:
            self._backoff.pop(key, None)
            return
        state = self._backoff.setdefault(key, PairBackoff())
        state.failures += 1
        threshold = self.settings.scheduler_backoff_threshold
        if state.failures >= threshold:
            delay = min(
                self.settings.scheduler_backoff_base_seconds * 2 ** (state.failures - threshold),
                self.settings.scheduler_backoff_max_seconds,
            )
            state.suppressed_until = tick.timestamp() + delay
            logger.warning(
                "scheduler: %s:%s failed %d times in a row, suppressed for %ss",
                key[0],
                key[1],
                state.failures,
                delay,
            )
