from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from edgeworker import app
from edgeworker.config import EdgeWorkerSettings
from edgeworker.repositories import EdgeWorkerConfig, RepositoryLoadError


def make_settings(tmp_path: Path) -> EdgeWorkerSettings:
    settings = EdgeWorkerSettings()
    settings.config_path = tmp_path / "edgeworker.yaml"
    settings.state_path = tmp_path / "state.json"
    settings.callback_port = 0
    settings.proxy_url = None
    settings.archive_path = None
    return settings


def test_create_worker_loads_repositories(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    settings.config_path.write_text(
        "proxy_url: https://proxy.example.com\n"
        "repositories:\n"
        "  - id: ceedar\n"
        "    name: Ceedar\n"
        "    token: t\n"
        "    workspace_id: w\n"
        "    team_keys: [CEE]\n"
        "    repository_path: /srv/ceedar\n"
        "    workspace_base_dir: /srv/ws\n",
        encoding="utf-8",
    )

    worker = app.create_worker(settings)

    assert [repository.id for repository in worker.repositories] == ["ceedar"]
    assert worker.ingress is not None
    assert worker.ingress.url == "https://proxy.example.com/events/stream"


def test_create_worker_propagates_config_errors(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    settings.config_path.write_text("- id: broken\n", encoding="utf-8")

    with pytest.raises(RepositoryLoadError):
        app.create_worker(settings)


def test_run_starts_and_stops_worker(tmp_path: Path) -> None:
    worker = app.create_worker(make_settings(tmp_path), config=EdgeWorkerConfig())

    async def scenario():
        stop_event = asyncio.Event()
        stop_event.set()
        await app.run(worker, stop_event)

    asyncio.run(scenario())

    assert not worker.callback_server.running
    assert (tmp_path / "state.json").exists()


def test_open_archive_without_path_is_disabled() -> None:
    assert app._open_archive(None) is None
