"""Versioned flow state keyed by (chat, service).

The guarded write is the one correctness-critical primitive: a single
conditional statement per key, so two writers holding the same version can
never both succeed.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from switchboard.errors import StateConflictError
from switchboard.storage.db import get_session, now_ts
from switchboard.storage.models import FlowState


@dataclass(frozen=True)
class FlowSnapshot:
    chat_id: str
    service_id: str
    state: Any
    version: int
    updated_at: int
    expires_at: int


class FlowStateStore:
    def __init__(self, *, engine: Engine | None = None, default_ttl_seconds: int = 24 * 3600) -> None:
        self._engine = engine
        self.default_ttl_seconds = default_ttl_seconds

    async def read(self, chat_id: str, service_id: str) -> FlowSnapshot | None:
        return await asyncio.to_thread(self.read_sync, chat_id, service_id)

    async def write(
        self,
        chat_id: str,
        service_id: str,
        expected_version: int | None,
        next_state: Any,
        ttl_seconds: int | None = None,
    ) -> FlowSnapshot:
        return await asyncio.to_thread(
            self.write_sync, chat_id, service_id, expected_version, next_state, ttl_seconds
        )

    async def clear(self, chat_id: str, service_id: str) -> bool:
        return await asyncio.to_thread(self.clear_sync, chat_id, service_id)

    async def purge_expired(self) -> int:
        return await asyncio.to_thread(self.purge_expired_sync)

    def read_sync(self, chat_id: str, service_id: str) -> FlowSnapshot | None:
        with get_session(self._engine) as session:
            row = session.exec(
                select(FlowState).where(FlowState.chat_id == chat_id, FlowState.service_id == service_id)
            ).first()
            if row is None or row.expires_at <= now_ts():
                return None
            return _snapshot(row)

    def write_sync(
        self,
        chat_id: str,
        service_id: str,
        expected_version: int | None,
        next_state: Any,
        ttl_seconds: int | None = None,
    ) -> FlowSnapshot:
        """Store ``next_state`` iff the stored version equals ``expected_version``.

        ``expected_version=None`` means "no live row": an expired row is
        replaced, a live one is a conflict. On success the version becomes
        ``expected_version + 1`` (or 1 for a new row).
        """
        ts = now_ts()
        expires_at = ts + (self.default_ttl_seconds if ttl_seconds is None else ttl_seconds) * 1000
        state_json = json.dumps(next_state, ensure_ascii=False)

        with get_session(self._engine) as session:
            if expected_version is None:
                session.exec(
                    delete(FlowState).where(
                        FlowState.chat_id == chat_id,
                        FlowState.service_id == service_id,
                        FlowState.expires_at <= ts,
                    )
                )
                session.add(
                    FlowState(
                        chat_id=chat_id,
                        service_id=service_id,
                        state_json=state_json,
                        version=1,
                        updated_at=ts,
                        expires_at=expires_at,
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise StateConflictError(chat_id=chat_id, service_id=service_id, expected_version=None) from None
                new_version = 1
            else:
                result = session.exec(
                    update(FlowState)
                    .where(
                        FlowState.chat_id == chat_id,
                        FlowState.service_id == service_id,
                        FlowState.version == expected_version,
                        FlowState.expires_at > ts,
                    )
                    .values(
                        state_json=state_json,
                        version=expected_version + 1,
                        updated_at=ts,
                        expires_at=expires_at,
                    )
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise StateConflictError(
                        chat_id=chat_id, service_id=service_id, expected_version=expected_version
                    )
                session.commit()
                new_version = expected_version + 1

        return FlowSnapshot(
            chat_id=chat_id,
            service_id=service_id,
            state=json.loads(state_json),
            version=new_version,
            updated_at=ts,
            expires_at=expires_at,
        )

    def clear_sync(self, chat_id: str, service_id: str) -> bool:
        with get_session(self._engine) as session:
            result = session.exec(
                delete(FlowState).where(FlowState.chat_id == chat_id, FlowState.service_id == service_id)
            )
            session.commit()
            return bool(result.rowcount)

    def purge_expired_sync(self) -> int:
        with get_session(self._engine) as session:
            result = session.exec(delete(FlowState).where(FlowState.expires_at <= now_ts()))
            session.commit()
            return int(result.rowcount or 0)


def _snapshot(row: FlowState) -> FlowSnapshot:
    return FlowSnapshot(
        chat_id=row.chat_id,
        service_id=row.service_id,
        state=json.loads(row.state_json),
        version=row.version,
        updated_at=row.updated_at,
        expires_at=row.expires_at,
    )
