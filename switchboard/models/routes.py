from __future__ import annotations

import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from switchboard.models.config import Capabilities, ChatConfig, ServiceConfig


@dataclass(frozen=True)
class ServiceRoute:
    service_id: str
    short_id: str
    kind: str
    capabilities: Capabilities
    merged_config: Mapping[str, Any]
    overrides: Mapping[str, Any]
    service: ServiceConfig


@dataclass(frozen=True)
class CommandRoute(ServiceRoute):
    command: str = ""
    expose: bool = True
    admin_only: bool = False


@dataclass(frozen=True)
class ListenerRoute(ServiceRoute):
    pass


@dataclass(frozen=True)
class PeriodicRoute(ServiceRoute):
    schedule: str = ""
    timezone: str = "UTC"


@dataclass(frozen=True)
class RoutingSnapshot:
    """Per-chat routing table derived from a chat config and its service configs."""

    chat_id: str
    config_url: str
    chat_config: ChatConfig
    commands: Mapping[str, CommandRoute]
    listeners: tuple[ListenerRoute, ...]
    periodic: tuple[PeriodicRoute, ...]
    short_ids: Mapping[str, str]
    services: Mapping[str, ServiceRoute]
    built_at: float = field(default_factory=time.time)

    def route_for_service(self, service_id: str) -> ServiceRoute | None:
        return self.services.get(service_id)

    def summary(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "config_url": self.config_url,
            "built_at": self.built_at,
            "commands": {
                name: {
                    "service_id": route.service_id,
                    "kind": route.kind,
                    "expose": route.expose,
                    "admin_only": route.admin_only,
                }
                for name, route in sorted(self.commands.items())
            },
            "listeners": [route.service_id for route in self.listeners],
            "periodic": [
                {"service_id": route.service_id, "schedule": route.schedule, "timezone": route.timezone}
                for route in self.periodic
            ],
        }


def frozen_mapping(value: dict[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value))
