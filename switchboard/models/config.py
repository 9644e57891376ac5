"""Remote configuration documents.

Chat and service configs are validated once when loaded. Service configs are a
closed variant over ``kind``; anything else is rejected at load time rather
than discovered during dispatch.
"""

from __future__ import annotations

import hashlib
import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

ServiceKind = Literal["single_command", "command_flow", "listener", "periodic_command"]
COMMAND_KINDS = frozenset({"single_command", "command_flow"})

_NAME_PATTERN = r"^[A-Za-z0-9_.\-]{1,64}$"
_VALIDATION_CACHE_LIMIT = 512
_service_cache: dict[str, "ServiceConfig"] = {}
_chat_cache: dict[str, "ChatConfig"] = {}


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Capabilities(_Frozen):
    """Declared permissions of a service. A missing field grants nothing."""

    allow_network: bool = Field(default=False, alias="allowNetwork")
    network_allowlist: tuple[str, ...] = Field(default=(), alias="networkAllowlist")
    timeout_ms: int | None = Field(default=None, alias="timeoutMs", ge=1)
    env: tuple[str, ...] = ()
    read: tuple[str, ...] = ()
    write: tuple[str, ...] = ()

    @field_validator("network_allowlist")
    @classmethod
    def _normalize_hosts(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        hosts: list[str] = []
        for item in value:
            host = str(item).strip().lower().rstrip(".")
            if host and host not in hosts:
                hosts.append(host)
        return tuple(hosts)


class PackageSource(_Frozen):
    type: Literal["package"]
    name: str = Field(pattern=_NAME_PATTERN)
    # exact versions only; ranges would not pin an immutable artifact
    version: str = Field(pattern=r"^\d+\.\d+\.\d+([\-+][0-9A-Za-z.\-]+)?$")


class GitSource(_Frozen):
    type: Literal["git"]
    repo: str = Field(pattern=r"^https://[^\s@]+$")
    commit: str = Field(pattern=r"^[0-9a-f]{40}$")
    path: str = Field(min_length=1)

    @field_validator("path")
    @classmethod
    def _relative_path(cls, value: str) -> str:
        cleaned = value.strip().lstrip("/")
        if not cleaned or ".." in cleaned.split("/"):
            raise ValueError("path must be relative to the repository root")
        return cleaned


class UrlSource(_Frozen):
    type: Literal["url"]
    url: str = Field(pattern=r"^https?://\S+$")
    sha256: str = Field(pattern=r"^[0-9a-f]{64}$")


ServiceSource = Annotated[Union[PackageSource, GitSource, UrlSource], Field(discriminator="type")]


class DatasetRef(_Frozen):
    url: str | None = None
    id: str | None = None
    schema_name: str = Field(alias="schema", min_length=1)
    ttl_seconds: int | None = Field(default=None, ge=0)


class ServiceConfig(_Frozen):
    id: str = Field(min_length=1)
    name: str | None = None
    kind: ServiceKind
    source: ServiceSource
    capabilities: Capabilities = Field(default_factory=Capabilities)
    default_config: dict[str, Any] = Field(default_factory=dict)


class ServiceBinding(_Frozen):
    service: str = Field(min_length=1)
    overrides: dict[str, Any] = Field(default_factory=dict)
    expose: bool = True
    admin_only: bool = False
    command: str | None = None


class ListenerBinding(_Frozen):
    service: str = Field(min_length=1)
    overrides: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class PeriodicBinding(_Frozen):
    service: str = Field(min_length=1)
    overrides: dict[str, Any] = Field(default_factory=dict)
    schedule: str | None = None
    enabled: bool = True


class ChatConfig(_Frozen):
    id: str = Field(min_length=1)
    timezone: str | None = None
    locale: str | None = None
    services: tuple[ServiceBinding, ...] = ()
    listeners: tuple[ListenerBinding, ...] = ()
    periodic: tuple[PeriodicBinding, ...] = ()

    def service_refs(self) -> list[str]:
        refs: list[str] = []
        for binding in (*self.services, *self.listeners, *self.periodic):
            if binding.service not in refs:
                refs.append(binding.service)
        return refs


def content_hash(raw: bytes | str) -> str:
    data = raw.encode("utf-8") if isinstance(raw, str) else raw
    return hashlib.sha256(data).hexdigest()


def parse_service_config(raw: bytes | str) -> ServiceConfig:
    """Validate a service config document, reusing prior results for identical content."""
    return _parse_cached(raw, ServiceConfig, _service_cache)


def parse_chat_config(raw: bytes | str) -> ChatConfig:
    return _parse_cached(raw, ChatConfig, _chat_cache)


def _parse_cached(raw: bytes | str, model: type[_Frozen], cache: dict[str, Any]) -> Any:
    digest = content_hash(raw)
    cached = cache.get(digest)
    if cached is not None:
        return cached
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"document is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("document must be a JSON object")
    try:
        parsed = model.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"invalid {model.__name__}: {exc.error_count()} error(s): {exc.errors()[0]['msg']}") from exc
    if len(cache) >= _VALIDATION_CACHE_LIMIT:
        cache.clear()
    cache[digest] = parsed
    return parsed


def merge_config(default_config: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Shallow merge: top-level override keys replace the default's value."""
    merged = dict(default_config)
    merged.update(overrides)
    return merged
