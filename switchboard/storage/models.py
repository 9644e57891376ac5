from __future__ import annotations

from typing import Optional

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel


class ChatRecord(SQLModel, table=True):
    __tablename__ = "chats"

    chat_id: str = Field(primary_key=True)
    config_url: Optional[str] = None
    chat_type: str = Field(default="group")
    created_at: int
    updated_at: int
    last_seen_at: int = Field(index=True)


class ResolvedArtifact(SQLModel, table=True):
    __tablename__ = "resolved_artifacts"

    source_key: str = Field(primary_key=True)
    url: str
    local_path: str
    sha256: str = Field(index=True)
    fetched_at: int


class DatasetCacheEntry(SQLModel, table=True):
    __tablename__ = "dataset_cache"

    url: str = Field(primary_key=True)
    body_json: str = Field(sa_column=Column("body_json", Text, nullable=False))
    etag: Optional[str] = None
    schema_name: str = Field(index=True)
    fetched_at: int
    ttl_seconds: int


class FlowState(SQLModel, table=True):
    __tablename__ = "flow_states"

    chat_id: str = Field(primary_key=True)
    service_id: str = Field(primary_key=True)
    state_json: str = Field(sa_column=Column("state_json", Text, nullable=False))
    version: int = Field(default=1)
    updated_at: int
    expires_at: int = Field(index=True)
