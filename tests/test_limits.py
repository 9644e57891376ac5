from __future__ import annotations

from switchboard.routing.limits import ChatLimiter, TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_token_bucket_refills_at_its_rate() -> None:
    bucket = TokenBucket(capacity=2.0, refill_per_second=0.5, tokens=2.0, updated_at=0.0)

    assert bucket.take(0.0) is True
    assert bucket.take(0.0) is True
    assert bucket.take(1.0) is False
    assert bucket.take(2.5) is True
    assert bucket.is_full(2.5) is False
    assert bucket.is_full(10.0) is True


def test_listener_rate_cap_refuses_until_refilled() -> None:
    clock = FakeClock()
    limiter = ChatLimiter(concurrency=10, rate_per_minute=3, clock=clock)

    for _ in range(3):
        assert limiter.try_acquire("chat-1") is True
        limiter.release("chat-1")
    assert limiter.try_acquire("chat-1") is False
    assert limiter.try_acquire("chat-2") is True
    limiter.release("chat-2")

    clock.now += 30
    assert limiter.try_acquire("chat-1") is True
    limiter.release("chat-1")
    assert limiter.try_acquire("chat-1") is False


def test_concurrency_ceiling_is_checked_before_the_rate() -> None:
    clock = FakeClock()
    limiter = ChatLimiter(concurrency=1, rate_per_minute=60, clock=clock)

    assert limiter.try_acquire("chat-1") is True
    assert limiter.try_acquire("chat-1") is False
    limiter.release("chat-1")
    assert limiter.active("chat-1") == 0
    assert limiter.try_acquire("chat-1") is True


def test_idle_full_buckets_are_swept() -> None:
    clock = FakeClock()
    limiter = ChatLimiter(concurrency=2, rate_per_minute=6, clock=clock)
    for chat_id in ("chat-1", "chat-2", "chat-3"):
        assert limiter.try_acquire(chat_id) is True
    limiter.release("chat-1")
    limiter.release("chat-2")
    assert limiter.tracked_chats() == 3

    clock.now += 61
    assert limiter.try_acquire("chat-4") is True

    # chat-3 still holds a slot; chat-4 was just created
    assert limiter.tracked_chats() == 2
    assert limiter.sweep() == 0
