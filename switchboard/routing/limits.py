from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

SWEEP_INTERVAL_SECONDS = 60.0


@dataclass
class TokenBucket:
    capacity: float
    refill_per_second: float
    tokens: float
    updated_at: float

    def take(self, now: float) -> bool:
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_second)
        self.updated_at = now
        if self.tokens < 1.0:
            return False
        self.tokens -= 1.0
        return True

    def is_full(self, now: float) -> bool:
        return self.tokens + max(0.0, now - self.updated_at) * self.refill_per_second >= self.capacity


class ChatLimiter:
    """Per-chat ceiling on concurrent listener sandboxes plus a rate cap.

    Both limits are hard: a caller that cannot acquire a slot right away is
    refused, nothing is queued. Buckets that have refilled completely carry no
    state and are swept.
    """

    def __init__(
        self,
        *,
        concurrency: int,
        rate_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.concurrency = max(1, concurrency)
        self.rate_per_minute = max(1, rate_per_minute)
        self._clock = clock
        self._active: dict[str, int] = {}
        self._buckets: dict[str, TokenBucket] = {}
        self._swept_at = clock()

    def active(self, chat_id: str) -> int:
        return self._active.get(chat_id, 0)

    def tracked_chats(self) -> int:
        return len(self._buckets)

    def try_acquire(self, chat_id: str) -> bool:
        if self.active(chat_id) >= self.concurrency:
            return False
        now = self._clock()
        if now - self._swept_at >= SWEEP_INTERVAL_SECONDS:
            self.sweep(now)
        bucket = self._buckets.get(chat_id)
        if bucket is None:
            bucket = TokenBucket(
                capacity=float(self.rate_per_minute),
                refill_per_second=self.rate_per_minute / 60.0,
                tokens=float(self.rate_per_minute),
                updated_at=now,
            )
            self._buckets[chat_id] = bucket
        if not bucket.take(now):
            return False
        self._active[chat_id] = self.active(chat_id) + 1
        return True

    def release(self, chat_id: str) -> None:
        remaining = self.active(chat_id) - 1
        if remaining > 0:
            self._active[chat_id] = remaining
        else:
            self._active.pop(chat_id, None)

    def sweep(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        self._swept_at = now
        idle = [
            chat_id
            for chat_id, bucket in self._buckets.items()
            if chat_id not in self._active and bucket.is_full(now)
        ]
        for chat_id in idle:
            del self._buckets[chat_id]
        return len(idle)
