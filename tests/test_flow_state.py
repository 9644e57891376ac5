from __future__ import annotations

import asyncio

import pytest

from switchboard.errors import StateConflictError
from switchboard.flows.directives import apply_directive, deep_merge
from switchboard.flows.store import FlowStateStore
from switchboard.models.wire import StateDirective


def test_first_write_creates_version_one(engine) -> None:
    store = FlowStateStore(engine=engine)
    snapshot = store.write_sync("chat-1", "quiz", None, {"step": 1})
    assert snapshot.version == 1
    assert store.read_sync("chat-1", "quiz").state == {"step": 1}


def test_stale_write_is_rejected_without_mutation(engine) -> None:
    store = FlowStateStore(engine=engine)
    store.write_sync("chat-1", "quiz", None, {"step": 1})
    store.write_sync("chat-1", "quiz", 1, {"step": 2})

    for stale in (None, 1, 5):
        with pytest.raises(StateConflictError):
            store.write_sync("chat-1", "quiz", stale, {"step": 99})
        current = store.read_sync("chat-1", "quiz")
        assert current.version == 2
        assert current.state == {"step": 2}


def test_keys_do_not_interfere(engine) -> None:
    store = FlowStateStore(engine=engine)
    store.write_sync("chat-1", "quiz", None, "a")
    store.write_sync("chat-2", "quiz", None, "b")
    store.write_sync("chat-1", "poll", None, "c")
    assert store.read_sync("chat-1", "quiz").state == "a"
    assert store.read_sync("chat-2", "quiz").state == "b"
    assert store.read_sync("chat-1", "poll").state == "c"


def test_expired_rows_read_as_absent_and_are_replaced(engine) -> None:
    store = FlowStateStore(engine=engine)
    store.write_sync("chat-1", "quiz", None, {"step": 3}, ttl_seconds=0)
    assert store.read_sync("chat-1", "quiz") is None
    with pytest.raises(StateConflictError):
        store.write_sync("chat-1", "quiz", 1, {"step": 4})
    fresh = store.write_sync("chat-1", "quiz", None, {"step": 1})
    assert fresh.version == 1
    assert store.read_sync("chat-1", "quiz").state == {"step": 1}


def test_clear_and_purge(engine) -> None:
    store = FlowStateStore(engine=engine)
    store.write_sync("chat-1", "quiz", None, {"step": 1})
    store.write_sync("chat-1", "old", None, {"step": 1}, ttl_seconds=0)
    assert store.purge_expired_sync() == 1
    assert store.clear_sync("chat-1", "quiz") is True
    assert store.clear_sync("chat-1", "quiz") is False
    assert store.read_sync("chat-1", "quiz") is None


def test_deep_merge_recurses_into_objects_and_replaces_the_rest() -> None:
    current = {"answers": {"q1": "a", "q2": "b"}, "tags": [1, 2], "score": 1, "meta": {"x": 1}}
    partial = {"answers": {"q2": "c", "q3": "d"}, "tags": [3], "score": None, "meta": "flat"}
    merged = deep_merge(current, partial)
    assert merged == {
        "answers": {"q1": "a", "q2": "c", "q3": "d"},
        "tags": [3],
        "score": None,
        "meta": "flat",
    }
    assert current["answers"] == {"q1": "a", "q2": "b"}
    assert deep_merge(None, {"a": 1}) == {"a": 1}


@pytest.mark.asyncio
async def test_apply_directive_replace_merge_and_clear(engine) -> None:
    store = FlowStateStore(engine=engine)
    first = await apply_directive(
        store,
        chat_id="chat-1",
        service_id="quiz",
        directive=StateDirective(op="replace", value={"step": 1, "answers": {}}),
        expected_version=None,
    )
    assert first is not None and first.version == 1

    merged = await apply_directive(
        store,
        chat_id="chat-1",
        service_id="quiz",
        directive=StateDirective(op="merge", value={"answers": {"q1": "a"}}),
        expected_version=first.version,
        base_state=first.state,
    )
    assert merged is not None
    assert merged.version == 2
    assert merged.state == {"step": 1, "answers": {"q1": "a"}}

    cleared = await apply_directive(
        store,
        chat_id="chat-1",
        service_id="quiz",
        directive=StateDirective(op="clear"),
        expected_version=merged.version,
    )
    assert cleared is None
    assert await store.read("chat-1", "quiz") is None


@pytest.mark.asyncio
async def test_two_taps_on_same_version_end_at_version_three(engine) -> None:
    store = FlowStateStore(engine=engine)
    await store.write("chat-1", "quiz", None, {"taps": []})
    seen = await store.read("chat-1", "quiz")
    assert seen is not None and seen.version == 1

    first = await apply_directive(
        store,
        chat_id="chat-1",
        service_id="quiz",
        directive=StateDirective(op="merge", value={"first": True}),
        expected_version=seen.version,
        base_state=seen.state,
        retry_delay=(0.0, 0.0),
    )
    assert first is not None and first.version == 2

    second = await apply_directive(
        store,
        chat_id="chat-1",
        service_id="quiz",
        directive=StateDirective(op="merge", value={"second": True}),
        expected_version=seen.version,
        base_state=seen.state,
        retry_delay=(0.0, 0.0),
    )
    assert second is not None
    assert second.version == 3
    assert second.state == {"taps": [], "first": True, "second": True}


@pytest.mark.asyncio
async def test_concurrent_writers_on_one_version_have_a_single_winner(engine) -> None:
    store = FlowStateStore(engine=engine)
    await store.write("chat-1", "quiz", None, {"n": 0})

    outcomes = await asyncio.gather(
        *(store.write("chat-1", "quiz", 1, {"n": index}) for index in range(1, 6)),
        return_exceptions=True,
    )
    winners = [item for item in outcomes if not isinstance(item, Exception)]
    losers = [item for item in outcomes if isinstance(item, StateConflictError)]
    assert len(winners) == 1
    assert len(losers) == 4
    current = await store.read("chat-1", "quiz")
    assert current is not None
    assert current.version == 2
    assert current.state == winners[0].state


@pytest.mark.asyncio
async def test_conflict_retries_are_bounded(engine) -> None:
    class AlwaysConflicting(FlowStateStore):
        async def write(self, chat_id, service_id, expected_version, next_state, ttl_seconds=None):
            raise StateConflictError(chat_id=chat_id, service_id=service_id, expected_version=expected_version)

    store = AlwaysConflicting(engine=engine)
    with pytest.raises(StateConflictError):
        await apply_directive(
            store,
            chat_id="chat-1",
            service_id="quiz",
            directive=StateDirective(op="replace", value=1),
            expected_version=None,
            max_retries=2,
            retry_delay=(0.0, 0.0),
        )
