from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    data_dir: Path
    db_path: Path
    artifacts_dir: Path
    service_data_dir: Path
    schemas_dir: Path | None
    remote_base_url: str
    default_config_url: str
    package_registry_url: str
    git_raw_url_template: str
    request_timeout_seconds: float
    max_retries: int
    snapshot_ttl_seconds: float
    sandbox_default_timeout_ms: int
    sandbox_max_timeout_ms: int
    sandbox_max_output_bytes: int
    service_env_path: Path
    flow_ttl_seconds: int
    flow_conflict_retries: int
    listener_concurrency: int
    listener_rate_per_minute: int
    scheduler_jitter_seconds: float
    scheduler_backoff_threshold: int
    scheduler_backoff_base_seconds: int
    scheduler_backoff_max_seconds: int
    dataset_default_ttl_seconds: int
    generic_error_text: str
    retry_later_text: str


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if value:
        return Path(value).expanduser().resolve()
    return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = Path(os.getenv("SWITCHBOARD_DATA_DIR", "./data")).expanduser().resolve()
    remote_base_url = os.getenv("SWITCHBOARD_REMOTE_BASE_URL", "https://config.switchboard.invalid/v1").rstrip("/")
    schemas_dir = os.getenv("SWITCHBOARD_SCHEMAS_DIR")

    return Settings(
        data_dir=data_dir,
        db_path=_env_path("SWITCHBOARD_DB_PATH", data_dir / "switchboard.db"),
        artifacts_dir=_env_path("SWITCHBOARD_ARTIFACTS_DIR", data_dir / "artifacts"),
        service_data_dir=_env_path("SWITCHBOARD_SERVICE_DATA_DIR", data_dir / "service-data"),
        schemas_dir=Path(schemas_dir).expanduser().resolve() if schemas_dir else None,
        remote_base_url=remote_base_url,
        default_config_url=os.getenv("SWITCHBOARD_DEFAULT_CONFIG_URL", "").strip(),
        package_registry_url=os.getenv(
            "SWITCHBOARD_PACKAGE_REGISTRY_URL", f"{remote_base_url}/packages"
        ).rstrip("/"),
        git_raw_url_template=os.getenv(
            "SWITCHBOARD_GIT_RAW_URL_TEMPLATE",
            "https://raw.githubusercontent.com/{owner}/{repo}/{commit}/{path}",
        ),
        request_timeout_seconds=float(os.getenv("SWITCHBOARD_REQUEST_TIMEOUT_SECONDS", "10")),
        max_retries=int(os.getenv("SWITCHBOARD_MAX_RETRIES", "2")),
        snapshot_ttl_seconds=float(os.getenv("SWITCHBOARD_SNAPSHOT_TTL_SECONDS", "60")),
        sandbox_default_timeout_ms=int(os.getenv("SWITCHBOARD_SANDBOX_TIMEOUT_MS", "5000")),
        sandbox_max_timeout_ms=int(os.getenv("SWITCHBOARD_SANDBOX_MAX_TIMEOUT_MS", "30000")),
        sandbox_max_output_bytes=int(os.getenv("SWITCHBOARD_SANDBOX_MAX_OUTPUT_BYTES", str(256 * 1024))),
        service_env_path=_env_path("SWITCHBOARD_SERVICE_ENV_PATH", data_dir / "service-env.json"),
        flow_ttl_seconds=int(os.getenv("SWITCHBOARD_FLOW_TTL_SECONDS", str(24 * 3600))),
        flow_conflict_retries=int(os.getenv("SWITCHBOARD_FLOW_CONFLICT_RETRIES", "3")),
        listener_concurrency=int(os.getenv("SWITCHBOARD_LISTENER_CONCURRENCY", "4")),
        listener_rate_per_minute=int(os.getenv("SWITCHBOARD_LISTENER_RATE_PER_MINUTE", "60")),
        scheduler_jitter_seconds=float(os.getenv("SWITCHBOARD_SCHEDULER_JITTER_SECONDS", "10")),
        scheduler_backoff_threshold=int(os.getenv("SWITCHBOARD_SCHEDULER_BACKOFF_THRESHOLD", "2")),
        scheduler_backoff_base_seconds=int(os.getenv("SWITCHBOARD_SCHEDULER_BACKOFF_BASE_SECONDS", "60")),
        scheduler_backoff_max_seconds=int(os.getenv("SWITCHBOARD_SCHEDULER_BACKOFF_MAX_SECONDS", "3600")),
        dataset_default_ttl_seconds=int(os.getenv("SWITCHBOARD_DATASET_TTL_SECONDS", "900")),
        generic_error_text=os.getenv("SWITCHBOARD_GENERIC_ERROR_TEXT", "Sorry, that did not work."),
        retry_later_text=os.getenv("SWITCHBOARD_RETRY_LATER_TEXT", "Busy right now, please try again."),
    )
