from __future__ import annotations

from pathlib import Path

from simulation_runtime.settings import load_settings
from simulation_runtime.utils import format_duration, stable_hash


def test_load_settings_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("SIM_DATA_ROOT", str(tmp_path))
    monkeypatch.setenv("SIM_API_BASE_URL", "https://sims.example/api/")
    monkeypatch.setenv("SIM_ACCESS_TOKEN", "abc")
    monkeypatch.setenv("SIM_POLL_INTERVAL_S", "0.5")
    monkeypatch.setenv("SIM_CACHE_MAX_ENTRIES", "7")

    settings = load_settings()

    assert settings.data_root == tmp_path.resolve()
    assert settings.api_base_url == "https://sims.example/api"
    assert settings.access_token == "abc"
    assert settings.poll_interval_s == 0.5
    assert settings.cache_max_entries == 7
    assert settings.history_db_path == tmp_path.resolve() / "history.sqlite3"


def test_load_settings_defaults(monkeypatch):
    for name in ("SIM_DATA_ROOT", "SIM_API_BASE_URL", "SIM_ACCESS_TOKEN", "SIM_POLL_INTERVAL_S"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.data_root == Path.home() / ".simulation_runtime"
    assert settings.access_token is None
    assert settings.poll_interval_s == 2.0


def test_format_duration():
    assert format_duration(-3) == "0s"
    assert format_duration(59) == "59s"
    assert format_duration(61) == "1m 1s"
    assert format_duration(3725) == "1h 2m 5s"


def test_stable_hash_ignores_key_order():
    assert stable_hash({"a": 1, "b": [1, 2]}) == stable_hash({"b": [1, 2], "a": 1})
    assert stable_hash({"a": 1}) != stable_hash({"a": 2})
