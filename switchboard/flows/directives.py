from __future__ import annotations

import asyncio
import copy
import logging
import random
from typing import Any

from switchboard.errors import StateConflictError
from switchboard.flows.store import FlowSnapshot, FlowStateStore
from switchboard.models.wire import StateDirective

logger = logging.getLogger(__name__)


def deep_merge(current: Any, partial: Any) -> Any:
    """Recursively merge ``partial`` into ``current``.

    Objects merge key by key; anything else (scalars, lists, type changes)
    takes the new value.
    """
    if not isinstance(current, dict) or not isinstance(partial, dict):
        return copy.deepcopy(partial)
    merged = copy.deepcopy(current)
    for key, value in partial.items():
        merged[key] = deep_merge(merged[key], value) if key in merged else copy.deepcopy(value)
    return merged


async def apply_directive(
    store: FlowStateStore,
    *,
    chat_id: str,
    service_id: str,
    directive: StateDirective,
    expected_version: int | None,
    base_state: Any = None,
    ttl_seconds: int | None = None,
    max_retries: int = 3,
    retry_delay: tuple[float, float] = (0.02, 0.12),
) -> FlowSnapshot | None:
    """Apply a service's state directive with bounded read-merge-write retries.

    The first attempt uses the state and version the service was invoked
    with. After a conflict the state is re-read and the directive recomputed
    against it.
    Returns the stored snapshot, or ``None`` after ``clear``.
    """
    if directive.op == "clear":
        await store.clear(chat_id, service_id)
        return None

    version = expected_version
    current = base_state
    attempts = max(0, max_retries) + 1
    for attempt in range(attempts):
        next_state = deep_merge(current, directive.value) if directive.op == "merge" else directive.value
        try:
            return await store.write(chat_id, service_id, version, next_state, ttl_seconds)
        except StateConflictError:
            if attempt + 1 >= attempts:
                raise
            logger.info(
                "flow conflict chat=%s service=%s version=%s attempt=%s; retrying",
                chat_id,
                service_id,
                version,
                attempt + 1,
            )
            await asyncio.sleep(random.uniform(*retry_delay))
            snapshot = await store.read(chat_id, service_id)
            version = snapshot.version if snapshot is not None else None
            current = snapshot.state if snapshot is not None else None
    raise StateConflictError(chat_id=chat_id, service_id=service_id, expected_version=version)
