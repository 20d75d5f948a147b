from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from edgeworker.config import EdgeWorkerSettings, get_settings


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    for name in (
        "EDGE_CONFIG_PATH",
        "EDGE_PROXY_URL",
        "EDGE_STATE_PATH",
        "EDGE_CALLBACK_PORT",
        "EDGE_LOG_LEVEL",
        "EDGE_RECONNECT_INITIAL_DELAY",
        "EDGE_RECONNECT_MAX_DELAY",
        "EDGE_ARCHIVE_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults() -> None:
    settings = EdgeWorkerSettings()

    assert settings.callback_port == 3456
    assert settings.log_level == "INFO"
    assert settings.reconnect_initial_delay == 1.0
    assert settings.reconnect_max_delay == 60.0
    assert settings.ingress_read_timeout == 90.0
    assert settings.proxy_url is None
    assert settings.archive_path is None


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EDGE_CALLBACK_PORT", "0")
    monkeypatch.setenv("EDGE_LOG_LEVEL", "debug")
    monkeypatch.setenv("EDGE_PROXY_URL", "https://proxy.example.com")

    settings = EdgeWorkerSettings()

    assert settings.callback_port == 0
    assert settings.log_level == "DEBUG"
    assert settings.proxy_url == "https://proxy.example.com"


def test_invalid_log_level_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EDGE_LOG_LEVEL", "verbose")

    with pytest.raises(ValidationError):
        EdgeWorkerSettings()


def test_backoff_bounds_validated(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EDGE_RECONNECT_INITIAL_DELAY", "10")
    monkeypatch.setenv("EDGE_RECONNECT_MAX_DELAY", "5")

    with pytest.raises(ValidationError):
        EdgeWorkerSettings()


def test_get_settings_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("EDGE_STATE_PATH", "state/worker.json")
    monkeypatch.setenv("EDGE_ARCHIVE_PATH", "archive")

    settings = get_settings()

    assert settings.state_path.is_absolute()
    assert settings.state_path == (tmp_path / "state" / "worker.json").resolve()
    assert settings.archive_path == (tmp_path / "archive").resolve()
    assert get_settings() is settings
