from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlmodel import select

from switchboard.storage.db import get_session, now_ts
from switchboard.storage.models import ChatRecord


def touch_chat(chat_id: str, *, chat_type: str = "group", engine: Engine | None = None) -> ChatRecord:
    ts = now_ts()
    with get_session(engine) as session:
        item = session.exec(select(ChatRecord).where(ChatRecord.chat_id == chat_id)).first()
        if item is None:
            item = ChatRecord(
                chat_id=chat_id,
                config_url=None,
                chat_type=chat_type,
                created_at=ts,
                updated_at=ts,
                last_seen_at=ts,
            )
        else:
            item.chat_type = chat_type or item.chat_type
            item.last_seen_at = ts
        session.add(item)
        session.commit()
        session.refresh(item)
        return item


def get_chat(chat_id: str, *, engine: Engine | None = None) -> ChatRecord | None:
    with get_session(engine) as session:
        return session.exec(select(ChatRecord).where(ChatRecord.chat_id == chat_id)).first()


def get_chat_config_url(chat_id: str, *, engine: Engine | None = None) -> str | None:
    item = get_chat(chat_id, engine=engine)
    return item.config_url if item is not None else None


def set_chat_config_url(chat_id: str, config_url: str | None, *, engine: Engine | None = None) -> ChatRecord:
    ts = now_ts()
    with get_session(engine) as session:
        item = session.exec(select(ChatRecord).where(ChatRecord.chat_id == chat_id)).first()
        if item is None:
            item = ChatRecord(chat_id=chat_id, created_at=ts, updated_at=ts, last_seen_at=ts)
        item.config_url = config_url
        item.updated_at = ts
        session.add(item)
        session.commit()
        session.refresh(item)
        return item


def list_chat_ids(*, limit: int = 10000, engine: Engine | None = None) -> list[str]:
    with get_session(engine) as session:
        stmt = select(ChatRecord.chat_id).order_by(ChatRecord.chat_id).limit(max(1, limit))
        return list(session.exec(stmt))
