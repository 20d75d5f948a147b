"""Process entry point for the edge worker."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from . import __version__
from .config import EdgeWorkerSettings, get_settings
from .repositories import EdgeWorkerConfig, RepositoryLoadError, load_config
from .storage import ChromaStore, ChromaUnavailableError
from .worker import EdgeWorker, EdgeWorkerHandlers

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the edge worker."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _open_archive(path: Path | None) -> ChromaStore | None:
    if path is None:
        return None
    try:
        store = ChromaStore(path)
        store.ping()
    except ChromaUnavailableError as exc:
        logger.warning("Activity archive unavailable", extra={"path": str(path), "error": str(exc)})
        return None
    return store


def create_worker(
    settings: Optional[EdgeWorkerSettings] = None,
    config: Optional[EdgeWorkerConfig] = None,
    handlers: Optional[EdgeWorkerHandlers] = None,
) -> EdgeWorker:
    """Build an ``EdgeWorker`` from settings, loading repositories from disk when needed."""

    settings = settings or get_settings()
    if config is None:
        config = load_config([settings.config_path], proxy_url=settings.proxy_url)
    if not config.repositories:
        logger.warning("No repositories configured", extra={"config_path": str(settings.config_path)})

    return EdgeWorker(
        config,
        settings=settings,
        handlers=handlers,
        archive=_open_archive(settings.archive_path),
    )


async def run(worker: EdgeWorker, stop_event: asyncio.Event | None = None) -> None:
    """Start ``worker``, wait for SIGINT/SIGTERM (or ``stop_event``), then stop it."""

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler(*_: object) -> None:
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, RuntimeError):
            pass

    await worker.start()
    try:
        await stop_event.wait()
    finally:
        await worker.stop()


def main() -> None:
    """Entry point for running the edge worker via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        worker = create_worker(settings)
    except RepositoryLoadError as exc:
        logger.error("Invalid repository configuration", extra={"error": str(exc)})
        raise SystemExit(2) from exc

    logger.info(
        "Launching edge worker",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "repositories": len(worker.repositories),
            "proxy_url": worker.config.proxy_url,
        },
    )
    try:
        asyncio.run(run(worker))
    except ConnectionError as exc:
        logger.error("Could not connect to event stream", extra={"error": str(exc)})
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
