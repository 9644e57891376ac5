"""Turn a service's declared capabilities into the grant for one execution.

Everything defaults to deny. Environment values never come from the parent
process environment: they are looked up in the operator's service-env file,
and only for names the service declared. Filesystem paths are confined to the
service's own directory under ``service_data_dir``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Mapping

from switchboard.config import Settings
from switchboard.models.config import Capabilities

logger = logging.getLogger(__name__)

ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]{0,63}$")
RESERVED_ENV_PREFIXES = ("PYTHON", "LD_", "DYLD_", "SWITCHBOARD_")
RESERVED_ENV_NAMES = {"PATH", "HOME", "SHELL", "IFS"}
# exact host names or IP literals; connects are checked against resolved addresses
HOST_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,62})(\.[a-z0-9]([a-z0-9\-]{0,62}))*$|^[0-9a-f:.]+$")


@dataclass(frozen=True)
class ExecutionGrant:
    service_id: str
    timeout_seconds: float
    network_hosts: frozenset[str] = frozenset()
    env: Mapping[str, str] = field(default_factory=dict)
    read_paths: tuple[str, ...] = ()
    write_paths: tuple[str, ...] = ()

    @property
    def network_enabled(self) -> bool:
        return bool(self.network_hosts)

    def to_bootstrap(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "hosts": sorted(self.network_hosts),
            "read": list(self.read_paths),
            "write": list(self.write_paths),
        }


def resolve_grant(
    service_id: str,
    capabilities: Capabilities,
    settings: Settings,
    *,
    service_env: Mapping[str, Mapping[str, str]] | None = None,
) -> ExecutionGrant:
    hosts = _resolve_hosts(service_id, capabilities)
    timeout_ms = capabilities.timeout_ms or settings.sandbox_default_timeout_ms
    timeout_ms = max(1, min(timeout_ms, settings.sandbox_max_timeout_ms))
    env = _resolve_env(service_id, capabilities.env, service_env or {})
    root = service_root(settings, service_id)
    write_paths = _confine(service_id, root, capabilities.write)
    read_paths = tuple(dict.fromkeys(_confine(service_id, root, capabilities.read) + write_paths))
    return ExecutionGrant(
        service_id=service_id,
        timeout_seconds=timeout_ms / 1000.0,
        network_hosts=hosts,
        env=env,
        read_paths=read_paths,
        write_paths=write_paths,
    )


def service_root(settings: Settings, service_id: str) -> Path:
    safe = re.sub(r"[^A-Za-z0-9_.\-]", "_", service_id).strip(".") or "service"
    return settings.service_data_dir / safe


def load_service_env(path: Path) -> dict[str, dict[str, str]]:
    """Operator-provided env values: ``{"*": {...}, "<service_id>": {...}}``."""
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("ignoring unreadable service env file %s", path)
        return {}
    if not isinstance(payload, dict):
        return {}
    result: dict[str, dict[str, str]] = {}
    for scope, values in payload.items():
        if not isinstance(values, dict):
            continue
        result[str(scope)] = {str(k): str(v) for k, v in values.items() if isinstance(v, (str, int, float))}
    return result


def _resolve_hosts(service_id: str, capabilities: Capabilities) -> frozenset[str]:
    if not capabilities.allow_network:
        return frozenset()
    hosts: set[str] = set()
    for item in capabilities.network_allowlist:
        if HOST_PATTERN.match(item):
            hosts.add(item)
        else:
            logger.warning("service %s declares invalid network host %r; ignored", service_id, item)
    # declared-but-empty allowlist means no network at all
    return frozenset(hosts)


def _resolve_env(
    service_id: str,
    names: tuple[str, ...],
    service_env: Mapping[str, Mapping[str, str]],
) -> dict[str, str]:
    scoped = service_env.get(service_id, {})
    shared = service_env.get("*", {})
    env: dict[str, str] = {}
    for name in names:
        if not ENV_NAME_PATTERN.match(name) or name in RESERVED_ENV_NAMES or name.startswith(RESERVED_ENV_PREFIXES):
            logger.warning("service %s requested reserved or invalid env var %r; ignored", service_id, name)
            continue
        if name in scoped:
            env[name] = scoped[name]
        elif name in shared:
            env[name] = shared[name]
    return env


def _confine(service_id: str, root: Path, declared: tuple[str, ...]) -> tuple[str, ...]:
    paths: list[str] = []
    for item in declared:
        relative = PurePosixPath(str(item).strip())
        if not relative.parts or relative.is_absolute() or ".." in relative.parts:
            logger.warning("service %s declares path %r outside its data root; ignored", service_id, item)
            continue
        resolved = str(root / relative)
        if resolved not in paths:
            paths.append(resolved)
    return tuple(paths)
