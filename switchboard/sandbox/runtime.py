"""Operator execution settings: isolation mode plus container limits.

Kept as a small JSON file beside the database and re-read on every
invocation, so ``switchboard sandbox set`` takes effect without a restart.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

EXECUTION_MODES = ("auto", "local", "sandbox")
DEFAULT_DOCKER_IMAGE = "python:3.12-alpine"
# field -> (env var, default, min, max)
LIMIT_FIELDS: dict[str, tuple[str, int, int, int]] = {
    "memory_mb": ("SWITCHBOARD_SANDBOX_MEMORY_MB", 128, 16, 4096),
    "pids_limit": ("SWITCHBOARD_SANDBOX_PIDS_LIMIT", 32, 4, 1024),
}


def get_execution_config_path() -> Path:
    explicit = os.getenv("SWITCHBOARD_EXECUTION_CONFIG_PATH", "").strip()
    if explicit:
        return Path(explicit).expanduser().resolve()
    return Path(os.getenv("SWITCHBOARD_DATA_DIR", "./data")).expanduser().resolve() / "execution-config.json"


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def default_execution_config() -> dict[str, Any]:
    mode = os.getenv("SWITCHBOARD_EXECUTION_MODE", "auto").strip().lower()
    config: dict[str, Any] = {
        "mode": mode if mode in EXECUTION_MODES else "auto",
        "docker_image": os.getenv("SWITCHBOARD_SANDBOX_DOCKER_IMAGE", "").strip() or DEFAULT_DOCKER_IMAGE,
        "python_executable": os.getenv("SWITCHBOARD_SANDBOX_PYTHON", "").strip(),
    }
    for key, (env_name, default, low, high) in LIMIT_FIELDS.items():
        raw = os.getenv(env_name, "").strip()
        config[key] = _clamp(int(raw), low, high) if raw.lstrip("-").isdigit() else default
    return config


def normalize_execution_config(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Overlay known, well-typed fields from ``raw`` on the environment defaults."""
    config = default_execution_config()
    if not isinstance(raw, dict):
        return config

    mode = str(raw.get("mode", "")).strip().lower()
    if mode in EXECUTION_MODES:
        config["mode"] = mode
    for key in ("docker_image", "python_executable"):
        value = raw.get(key)
        if isinstance(value, str) and (value.strip() or key == "python_executable"):
            config[key] = value.strip()
    for key, (_, _, low, high) in LIMIT_FIELDS.items():
        if _is_int(raw.get(key)):
            config[key] = _clamp(raw[key], low, high)
    return config


def load_execution_config(path: Path | None = None) -> dict[str, Any]:
    target = path or get_execution_config_path()
    try:
        payload = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        payload = None
    return normalize_execution_config(payload)


def save_execution_config(config: dict[str, Any], path: Path | None = None) -> Path:
    target = path or get_execution_config_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(normalize_execution_config(config), indent=2) + "\n", encoding="utf-8")
    return target
