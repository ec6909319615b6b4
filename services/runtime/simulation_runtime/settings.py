from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    data_root: Path
    api_base_url: str = "http://localhost:8000/api"
    access_token: str | None = None
    request_timeout_s: float = 30.0
    poll_interval_s: float = 2.0
    reconnect_base_delay_s: float = 5.0
    reconnect_max_delay_s: float = 60.0
    max_reconnect_attempts: int = 10
    poll_failure_threshold: int = 5
    cache_max_entries: int = 128
    cache_ttl_s: float = 300.0
    playback_total_frames: int = 100
    playback_fps: int = 30

    @property
    def history_db_path(self) -> Path:
        return self.data_root / "history.sqlite3"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def load_settings() -> Settings:
    env_root = os.environ.get("SIM_DATA_ROOT")
    if env_root:
        root = Path(env_root).expanduser().resolve()
    else:
        root = Path.home() / ".simulation_runtime"
    return Settings(
        data_root=root,
        api_base_url=os.environ.get("SIM_API_BASE_URL", "http://localhost:8000/api").rstrip("/"),
        access_token=os.environ.get("SIM_ACCESS_TOKEN") or None,
        request_timeout_s=_env_float("SIM_REQUEST_TIMEOUT_S", 30.0),
        poll_interval_s=_env_float("SIM_POLL_INTERVAL_S", 2.0),
        reconnect_base_delay_s=_env_float("SIM_RECONNECT_BASE_DELAY_S", 5.0),
        reconnect_max_delay_s=_env_float("SIM_RECONNECT_MAX_DELAY_S", 60.0),
        max_reconnect_attempts=_env_int("SIM_MAX_RECONNECT_ATTEMPTS", 10),
        cache_max_entries=_env_int("SIM_CACHE_MAX_ENTRIES", 128),
        cache_ttl_s=_env_float("SIM_CACHE_TTL_S", 300.0),
    )
