from __future__ import annotations

import time
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from switchboard.config import get_settings
from switchboard.storage import models  # noqa: F401


def now_ts() -> int:
    return int(time.time() * 1000)


def make_engine(db_path: Path) -> Engine:
    return create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


settings = get_settings()
engine = make_engine(settings.db_path)


def init_db(target: Engine | None = None) -> None:
    if target is None:
        settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(target or engine)


def get_session(target: Engine | None = None) -> Session:
    return Session(target or engine)
