"""Lifecycle authority for agent sessions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator

from ..events import IssueRef
from .models import SerializedState, Session, SessionEntry, SessionState

logger = logging.getLogger(__name__)


class SessionManagerError(RuntimeError):
    """Base class for session manager errors."""


class DuplicateSessionError(SessionManagerError):
    """Raised when a source-assigned session id has already been seen."""


class UnknownSessionError(SessionManagerError):
    """Raised when an operation names a session that does not exist."""


class InvalidTransitionError(SessionManagerError):
    """Raised when a state transition is not allowed from the current state."""


COMPLETED_OUTCOMES = {"completed", "success", "succeeded"}


class SessionManager:
    """Owns the session collection and serializes mutations per session id.

    Mutating operations are coroutines guarded by an ``asyncio.Lock`` per
    session id, so operations on different sessions never wait on each other.
    Lookups are plain synchronous reads.
    """

    def __init__(
        self,
        *,
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] | None = None,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._archived: dict[str, Session] = {}
        self._issue_repositories: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._retention = retention
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._on_change = on_change

    @property
    def on_change(self) -> Callable[[str], None] | None:
        return self._on_change

    @on_change.setter
    def on_change(self, callback: Callable[[str], None] | None) -> None:
        self._on_change = callback

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _require(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise UnknownSessionError(f"Session '{session_id}' not found") from None

    def _changed(self, session_id: str) -> None:
        if self._on_change is not None:
            self._on_change(session_id)

    # Mutations

    async def create_session(
        self,
        session_id: str,
        repository_id: str,
        issue: IssueRef | None,
    ) -> str:
        async with self._lock_for(session_id):
            if session_id in self._sessions or session_id in self._archived:
                raise DuplicateSessionError(f"Session '{session_id}' already exists")
            now = self._clock()
            self._sessions[session_id] = Session(
                id=session_id,
                repository_id=repository_id,
                issue=issue,
                created_at=now,
                updated_at=now,
            )
        logger.info(
            "Created session",
            extra={"session_id": session_id, "repository_id": repository_id},
        )
        self._changed(session_id)
        return session_id

    async def attach_runner(self, session_id: str, runner: Any) -> None:
        async with self._lock_for(session_id):
            session = self._require(session_id)
            if session.state is not SessionState.CREATED:
                raise InvalidTransitionError(
                    f"Cannot attach runner to session '{session_id}' in state {session.state.value}"
                )
            session.runner = runner
            session.state = SessionState.RUNNING
            session.updated_at = self._clock()
        self._changed(session_id)

    async def record_entry(self, session_id: str, entry: SessionEntry) -> None:
        async with self._lock_for(session_id):
            session = self._require(session_id)
            session.entries.append(entry)
            session.updated_at = self._clock()
        self._changed(session_id)

    async def complete_session(self, session_id: str, outcome: str = "completed") -> Session:
        async with self._lock_for(session_id):
            session = self._require(session_id)
            if session.state is not SessionState.RUNNING:
                raise InvalidTransitionError(
                    f"Cannot complete session '{session_id}' in state {session.state.value}"
                )
            normalized = outcome.strip().lower()
            session.state = (
                SessionState.COMPLETED if normalized in COMPLETED_OUTCOMES else SessionState.FAILED
            )
            session.outcome = normalized
            session.runner = None
            session.ended_at = session.updated_at = self._clock()
        logger.info(
            "Session finished",
            extra={"session_id": session_id, "state": session.state.value, "outcome": normalized},
        )
        self._changed(session_id)
        return session

    async def cancel_session(self, session_id: str, reason: str = "cancelled") -> Any:
        """Fail a live session, archive it, and return its runner handle for stopping."""

        async with self._lock_for(session_id):
            session = self._require(session_id)
            if session.state.terminal:
                raise InvalidTransitionError(
                    f"Cannot cancel session '{session_id}' in state {session.state.value}"
                )
            runner = session.runner
            session.runner = None
            session.state = SessionState.FAILED
            session.outcome = "cancelled"
            session.ended_at = session.updated_at = self._clock()
            session.entries.append(
                SessionEntry(kind="cancelled", content=reason, created_at=session.ended_at)
            )
            self._archive(session_id)
        logger.info("Cancelled session", extra={"session_id": session_id, "reason": reason})
        self._changed(session_id)
        return runner

    def _archive(self, session_id: str) -> None:
        session = self._sessions.pop(session_id)
        self._archived[session_id] = session
        self._locks.pop(session_id, None)

    def evict_expired(self, now: datetime | None = None) -> list[str]:
        """Move terminal sessions older than the retention window into the archive."""

        now = now or self._clock()
        evicted: list[str] = []
        for session_id, session in list(self._sessions.items()):
            if not session.state.terminal:
                continue
            lock = self._locks.get(session_id)
            if lock is not None and lock.locked():
                continue
            finished = session.ended_at or session.updated_at or session.created_at
            if finished + self._retention <= now:
                self._archive(session_id)
                evicted.append(session_id)
        if evicted:
            logger.debug("Evicted expired sessions", extra={"session_ids": evicted})
            self._changed(evicted[-1])
        return evicted

    # Routing cache

    def remember_issue_repository(self, issue_id: str, repository_id: str) -> None:
        self._issue_repositories[issue_id] = repository_id

    def repository_for_issue(self, issue_id: str) -> str | None:
        return self._issue_repositories.get(issue_id)

    # Lookups

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_archived_session(self, session_id: str) -> Session | None:
        return self._archived.get(session_id)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions or session_id in self._archived

    def list_sessions(self, state: SessionState | None = None) -> list[Session]:
        sessions = list(self._sessions.values())
        if state is not None:
            sessions = [session for session in sessions if session.state is state]
        return sessions

    def find_session_for_issue(self, issue_id: str) -> Session | None:
        """Return the most recently created live session for an issue."""

        matches = [
            session
            for session in self._sessions.values()
            if session.issue is not None and session.issue.id == issue_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda session: session.created_at)

    def active_runners(self) -> Iterator[tuple[str, Any]]:
        for session_id, session in self._sessions.items():
            if session.runner is not None:
                yield session_id, session.runner

    def __len__(self) -> int:
        return len(self._sessions)

    # Snapshot

    def serialize_state(self) -> SerializedState:
        return SerializedState(
            saved_at=self._clock(),
            sessions={sid: session.to_record() for sid, session in self._sessions.items()},
            archived={sid: session.to_record() for sid, session in self._archived.items()},
            issue_repositories=dict(self._issue_repositories),
        )

    def restore_state(self, snapshot: SerializedState) -> None:
        """Replace the session collection with ``snapshot``.

        Runner handles never survive a restart: sessions that were running, or
        created but never handed a runner, become ``STALLED`` and wait for
        external resumption.
        """

        self._sessions = {}
        self._archived = {}
        self._locks = {}
        stalled: list[str] = []
        for session_id, record in snapshot.sessions.items():
            session = Session.from_record(record)
            if session.state in (SessionState.CREATED, SessionState.RUNNING):
                session.state = SessionState.STALLED
                stalled.append(session_id)
            self._sessions[session_id] = session
        for session_id, record in snapshot.archived.items():
            self._archived[session_id] = Session.from_record(record)
        self._issue_repositories = dict(snapshot.issue_repositories)

        logger.info(
            "Restored session state",
            extra={
                "sessions": len(self._sessions),
                "archived": len(self._archived),
                "stalled": stalled,
            },
        )


__all__ = [
    "COMPLETED_OUTCOMES",
    "DuplicateSessionError",
    "InvalidTransitionError",
    "SessionManager",
    "SessionManagerError",
    "UnknownSessionError",
]
