"""Top-level coordinator wiring ingress, routing, sessions, and runners."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Sequence

from aiohttp import web

from .callbacks import SharedCallbackServer
from .config import EdgeWorkerSettings, get_settings
from .events import EventKind, InboundEvent, IssueRef
from .ingress import ExponentialBackoff, NdjsonClient
from .repositories import EdgeWorkerConfig, RepositoryConfig
from .routing import resolve_repository
from .runner import AgentRunner, CodexAgentRunner, RunnerError, RunnerHandle, RunnerResult
from .runner.utils import build_prompt
from .sessions import (
    DuplicateSessionError,
    SerializedState,
    SessionEntry,
    SessionManager,
    SessionManagerError,
)
from .storage import ChromaStore, PersistenceIOError, SnapshotStore
from .tracker import IssueContext, IssueTracker, LinearIssueTracker, TrackerError

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


@dataclass(slots=True)
class EdgeWorkerHandlers:
    """Caller-supplied lifecycle callbacks; each may be sync or async."""

    on_session_start: Handler | None = None
    on_session_complete: Handler | None = None
    on_error: Handler | None = None
    on_oauth_callback: Handler | None = None


class EdgeWorker:
    """Consume inbound events and drive one agent session per routed event."""

    def __init__(
        self,
        config: EdgeWorkerConfig,
        *,
        settings: EdgeWorkerSettings | None = None,
        handlers: EdgeWorkerHandlers | None = None,
        session_manager: SessionManager | None = None,
        snapshot_store: SnapshotStore | None = None,
        ingress: NdjsonClient | None = None,
        callback_server: SharedCallbackServer | None = None,
        runner: AgentRunner | None = None,
        tracker_factory: Callable[[RepositoryConfig], IssueTracker] | None = None,
        archive: ChromaStore | None = None,
    ) -> None:
        self.config = config
        self.settings = settings or get_settings()
        self.handlers = handlers or EdgeWorkerHandlers()
        self._sessions = session_manager or SessionManager(
            retention=timedelta(hours=self.settings.session_retention_hours)
        )
        self._store = snapshot_store or SnapshotStore(self.settings.state_path)
        self._callback_server = callback_server or SharedCallbackServer(
            self.settings.callback_host, self.settings.callback_port
        )
        self._ingress = ingress if ingress is not None else self._default_ingress()
        self._runner = runner
        self._tracker_factory = tracker_factory or (lambda repo: LinearIssueTracker(repo.token))
        self._trackers: dict[str, IssueTracker] = {}
        self._archive = archive
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._save_task: asyncio.Task[None] | None = None
        self._dirty = False
        self._started = False

    def _default_ingress(self) -> NdjsonClient | None:
        if not self.config.proxy_url:
            logger.warning("No proxy_url configured; event stream disabled")
            return None
        return NdjsonClient(
            f"{self.config.proxy_url.rstrip('/')}/events/stream",
            token=self.settings.ingress_token,
            backoff=ExponentialBackoff(
                self.settings.reconnect_initial_delay, self.settings.reconnect_max_delay
            ),
            read_timeout=self.settings.ingress_read_timeout,
        )

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def callback_server(self) -> SharedCallbackServer:
        return self._callback_server

    @property
    def ingress(self) -> NdjsonClient | None:
        return self._ingress

    @property
    def repositories(self) -> list[RepositoryConfig]:
        return list(self.config.repositories)

    def _get_runner(self) -> AgentRunner:
        if self._runner is None:
            codex_path = Path(self.settings.codex_path) if self.settings.codex_path else None
            self._runner = CodexAgentRunner(codex_path)
        return self._runner

    def _get_tracker(self, repository: RepositoryConfig) -> IssueTracker:
        tracker = self._trackers.get(repository.id)
        if tracker is None:
            tracker = self._trackers[repository.id] = self._tracker_factory(repository)
        return tracker

    # Routing

    def find_repository_for_event(
        self,
        event: InboundEvent,
        repositories: Sequence[RepositoryConfig] | None = None,
    ) -> RepositoryConfig | None:
        return resolve_repository(
            event, self.config.repositories if repositories is None else repositories
        )

    @staticmethod
    def workspace_for(repository: RepositoryConfig, issue: IssueRef | None) -> str:
        """Per-issue workspace when one has been prepared, else the repository itself."""

        if issue is not None:
            candidate = Path(repository.workspace_base_dir) / issue.identifier
            if candidate.is_dir():
                return str(candidate)
        return repository.repository_path

    # Lifecycle

    async def start(self) -> None:
        if self._started:
            return
        snapshot = await self._load_snapshot()
        if snapshot is not None:
            self._sessions.restore_state(snapshot)
        self._sessions.on_change = self._schedule_save
        self._sessions.evict_expired()

        self._register_routes()
        await self._callback_server.start()

        if self._ingress is not None:
            self._ingress.on_event(self.handle_event)
            try:
                await self._ingress.connect()
            except ConnectionError:
                await self._ingress.disconnect()
                await self._callback_server.stop()
                raise
        self._started = True
        logger.info(
            "Edge worker started",
            extra={
                "repositories": [repository.id for repository in self.config.repositories],
                "sessions": len(self._sessions),
            },
        )

    async def stop(self) -> None:
        if self._ingress is not None:
            await self._ingress.disconnect()

        watchers = list(self._watchers.values())
        self._watchers.clear()
        for task in watchers:
            task.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)

        await self._stop_runners()

        if self._save_task is not None and not self._save_task.done():
            await asyncio.gather(self._save_task, return_exceptions=True)
        await self.persist_state()

        await self._callback_server.stop()
        for tracker in self._trackers.values():
            close = getattr(tracker, "close", None)
            if close is not None:
                await close()
        self._trackers.clear()
        self._started = False
        logger.info("Edge worker stopped")

    async def _stop_runners(self) -> None:
        runners = list(self._sessions.active_runners())
        if not runners:
            return
        runner = self._get_runner()
        timeout = self.settings.runner_stop_timeout
        results = await asyncio.gather(
            *(runner.stop(handle, timeout=timeout) for _, handle in runners),
            return_exceptions=True,
        )
        for (session_id, _), result in zip(runners, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to stop runner",
                    extra={"session_id": session_id, "error": str(result)},
                )

    # Persistence

    async def _load_snapshot(self) -> SerializedState | None:
        try:
            return await asyncio.to_thread(self._store.load)
        except PersistenceIOError as exc:
            logger.error("Failed to load state; starting cold", extra={"error": str(exc)})
            return None

    def _schedule_save(self, session_id: str | None = None) -> None:
        self._dirty = True
        if self._save_task is not None and not self._save_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._save_task = loop.create_task(self._flush_saves(), name="edge-state-save")

    async def _flush_saves(self) -> None:
        while self._dirty:
            self._dirty = False
            await self.persist_state()

    async def persist_state(self) -> bool:
        state = self._sessions.serialize_state()
        try:
            await asyncio.to_thread(self._store.save, state)
        except PersistenceIOError as exc:
            logger.error("Failed to persist state", extra={"error": str(exc)})
            return False
        return True

    # Event handling

    async def handle_event(self, event: InboundEvent) -> str | None:
        try:
            if event.kind is EventKind.SESSION_CREATED:
                return await self._handle_session_created(event)
            if event.kind is EventKind.SESSION_PROMPTED:
                return await self._handle_session_prompted(event)
            logger.debug("Ignoring event", extra={"kind": event.kind.value})
            return None
        except SessionManagerError as exc:
            logger.error(
                "Session bookkeeping error",
                extra={"session_id": event.session_id, "error": str(exc)},
            )
            await self._call_handler(self.handlers.on_error, exc, event)
            raise

    async def _handle_session_created(self, event: InboundEvent) -> str | None:
        repository = self.find_repository_for_event(event)
        if repository is None:
            logger.warning(
                "No repository matched event; dropping",
                extra={
                    "session_id": event.session_id,
                    "workspace_id": event.workspace_id,
                    "issue": event.issue.identifier if event.issue else None,
                },
            )
            return None

        session_id = event.session_id
        if session_id is None:
            return None
        try:
            await self._sessions.create_session(session_id, repository.id, event.issue)
        except DuplicateSessionError:
            logger.info("Ignoring redelivered session", extra={"session_id": session_id})
            return None
        if event.issue is not None:
            self._sessions.remember_issue_repository(event.issue.id, repository.id)
        self._archive_state(session_id)

        handle: RunnerHandle | None = None
        try:
            context = await self._issue_context(repository, event.issue, session_id)
            prompt = build_prompt(repository, context)
            await self._sessions.record_entry(session_id, SessionEntry(kind="prompt", content=prompt))

            workspace = self.workspace_for(repository, event.issue)
            handle = await self._get_runner().start(
                workspace,
                prompt,
                {
                    "session_id": session_id,
                    "repository_id": repository.id,
                    "issue_id": event.issue.id if event.issue else None,
                    "base_branch": repository.base_branch,
                },
            )
            await self._sessions.attach_runner(session_id, handle)
        except Exception as exc:
            if isinstance(exc, RunnerError):
                reason = f"runner failed to start: {exc}"
            else:
                reason = f"session setup failed: {exc!r}"
            logger.error(
                "Failed to start session",
                extra={"session_id": session_id, "repository_id": repository.id, "error": reason},
            )
            if handle is not None:
                try:
                    await self._get_runner().stop(handle, timeout=self.settings.runner_stop_timeout)
                except Exception:
                    logger.exception("Failed to stop runner", extra={"session_id": session_id})
            session = self._sessions.get_session(session_id)
            if session is not None and not session.state.terminal:
                await self._sessions.cancel_session(session_id, reason=reason)
                self._archive_state(session_id)
            await self._call_handler(self.handlers.on_error, exc, event)
            return None

        self._archive_state(session_id)
        self._watchers[session_id] = asyncio.create_task(
            self._watch_runner(session_id, repository, handle),
            name=f"runner-{session_id}",
        )
        await self._post_activity(
            repository, session_id, f"Started working on {context.identifier}"
        )
        await self._call_handler(self.handlers.on_session_start, session_id, repository, event)
        return session_id

    async def _handle_session_prompted(self, event: InboundEvent) -> str | None:
        session_id = event.session_id
        session = self._sessions.get_session(session_id) if session_id else None
        if session is None:
            logger.warning("Prompt for unknown session; dropping", extra={"session_id": session_id})
            return None
        await self._sessions.record_entry(
            session.id,
            SessionEntry(kind="prompt", content=event.prompt or "", metadata={"source": "user"}),
        )
        self._archive_entry(session.id, "prompt", event.prompt or "")
        return session.id

    async def _issue_context(
        self,
        repository: RepositoryConfig,
        issue: IssueRef | None,
        session_id: str,
    ) -> IssueContext:
        if issue is None:
            return IssueContext(identifier=session_id)
        try:
            return await self._get_tracker(repository).fetch_issue_context(issue.id)
        except TrackerError as exc:
            logger.warning(
                "Falling back to webhook issue data",
                extra={"issue": issue.identifier, "error": str(exc)},
            )
            return IssueContext(identifier=issue.identifier, title=issue.title, team=issue.team_key)

    async def _watch_runner(
        self,
        session_id: str,
        repository: RepositoryConfig,
        handle: RunnerHandle,
    ) -> None:
        try:
            result: RunnerResult = await handle.wait()
            session = self._sessions.get_session(session_id)
            if session is None or session.runner is not handle:
                return
            await self._sessions.record_entry(
                session_id,
                SessionEntry(
                    kind="result",
                    content=result.stdout[-4000:],
                    metadata={"returncode": result.returncode},
                ),
            )
            session = await self._sessions.complete_session(
                session_id, "completed" if result.ok else "failed"
            )
            self._archive_state(session_id)
            await self._post_activity(
                repository, session_id, f"Session {session.state.value} (exit {result.returncode})"
            )
            await self._call_handler(
                self.handlers.on_session_complete, session_id, repository, result
            )
            self._sessions.evict_expired()
        finally:
            if self._watchers.get(session_id) is asyncio.current_task():
                self._watchers.pop(session_id, None)

    async def cancel_session(self, session_id: str, reason: str = "cancelled") -> None:
        """Cancel a live session and stop its runner within the configured timeout."""

        handle = await self._sessions.cancel_session(session_id, reason)
        self._archive_state(session_id)
        watcher = self._watchers.pop(session_id, None)
        if watcher is not None:
            watcher.cancel()
        if handle is not None:
            await self._get_runner().stop(handle, timeout=self.settings.runner_stop_timeout)

    async def _post_activity(self, repository: RepositoryConfig, session_id: str, content: str) -> None:
        try:
            posted = await self._get_tracker(repository).post_activity(session_id, content)
        except TrackerError as exc:
            logger.warning(
                "Activity post failed", extra={"session_id": session_id, "error": str(exc)}
            )
            return
        if not posted:
            logger.debug("Activity post not acknowledged", extra={"session_id": session_id})

    async def _call_handler(self, handler: Handler | None, *args: Any) -> None:
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Lifecycle handler failed", extra={"handler": getattr(handler, "__name__", None)})

    # Activity archive

    def _archive_state(self, session_id: str) -> None:
        if self._archive is None:
            return
        session = self._sessions.get_session(session_id) or self._sessions.get_archived_session(
            session_id
        )
        if session is None:
            return
        try:
            self._archive.record_session_state(
                session_id=session_id,
                repository_id=session.repository_id,
                state=session.state.value,
                issue_identifier=session.issue.identifier if session.issue else None,
                metadata={"outcome": session.outcome} if session.outcome else None,
            )
        except Exception as exc:  # archive is best effort
            logger.warning("Archive write failed", extra={"session_id": session_id, "error": str(exc)})

    def _archive_entry(self, session_id: str, kind: str, content: str) -> None:
        if self._archive is None:
            return
        try:
            self._archive.record_activity(session_id, kind, content)
        except Exception as exc:  # archive is best effort
            logger.warning("Archive write failed", extra={"session_id": session_id, "error": str(exc)})

    # Callback routes

    def _register_routes(self) -> None:
        server = self._callback_server
        server.register_callback_handler("/status", self._status_handler)
        for repository in self.config.repositories:
            server.register_callback_handler(
                f"/callback/{repository.id}", self._oauth_handler_for(repository)
            )

    def _oauth_handler_for(self, repository: RepositoryConfig):
        async def handle_oauth(request: web.Request) -> web.Response:
            params = dict(request.query)
            if "code" not in params:
                return web.json_response({"ok": False, "error": "missing code"}, status=400)
            logger.info("OAuth callback received", extra={"repository_id": repository.id})
            await self._call_handler(self.handlers.on_oauth_callback, repository, params)
            return web.json_response({"ok": True, "repository": repository.id})

        return handle_oauth

    async def _status_handler(self, request: web.Request) -> web.Response:
        counts: dict[str, int] = {}
        for session in self._sessions.list_sessions():
            counts[session.state.value] = counts.get(session.state.value, 0) + 1
        return web.json_response(
            {
                "ingress_connected": bool(self._ingress and self._ingress.is_connected()),
                "repositories": [repository.id for repository in self.config.repositories],
                "sessions": {"count": len(self._sessions), "by_state": counts},
            }
        )


__all__ = ["EdgeWorker", "EdgeWorkerHandlers"]
