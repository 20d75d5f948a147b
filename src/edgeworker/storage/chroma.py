"""Optional Chroma archive that mirrors session activity for later audits.

The archive is append-only. Every lifecycle change and user prompt becomes
one document keyed by session id, ordered by a per-session sequence number
that continues across restarts.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from .models import ArchivedActivity, SessionStateRecord

STATE_KIND = "session_state"
_STATE_FIELDS = ("session_id", "repository_id", "issue_identifier", "state")


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class ArchiveCollection(Protocol):
    """The two collection calls the archive relies on."""

    def add(self, *, documents: list[str], metadatas: list[dict[str, Any]], ids: list[str]) -> None:
        ...

    def get(self, *, where: dict[str, Any] | None = None, limit: int | None = None) -> dict[str, list[Any]]:
        ...


class ArchiveClient(Protocol):
    def get_or_create_collection(self, name: str) -> ArchiveCollection:
        ...


def _persistent_client(path: Path) -> ArchiveClient:
    try:
        import chromadb
    except ImportError as exc:  # pragma: no cover - depends on environment
        raise ChromaUnavailableError(
            "chromadb package is not installed; install edgeworker with the archive extra"
        ) from exc
    return chromadb.PersistentClient(path=str(path))


def _flatten(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma only stores scalar metadata values.
    flat: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        flat[key] = value if isinstance(value, (str, int, float, bool)) else json.dumps(value, default=str)
    return flat


class ChromaStore:
    """Session activity archive backed by a persistent Chroma collection."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "edge_sessions",
        client_factory: Callable[[], ArchiveClient] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or (lambda: _persistent_client(self._path))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: ArchiveCollection | None = None
        self._sequences: dict[str, int] = {}

    @property
    def path(self) -> Path:
        return self._path

    @property
    def collection(self) -> ArchiveCollection:
        if self._collection is None:
            self._collection = self._client_factory().get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Open the collection, raising :class:`ChromaUnavailableError` if Chroma is missing."""

        self.collection
        return True

    def _next_sequence(self, session_id: str) -> int:
        if session_id not in self._sequences:
            existing = self.collection.get(where={"session_id": session_id})
            self._sequences[session_id] = len(existing.get("ids") or [])
        self._sequences[session_id] += 1
        return self._sequences[session_id]

    def record_activity(
        self,
        session_id: str,
        kind: str,
        body: Any,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> ArchivedActivity:
        sequence = self._next_sequence(session_id)
        recorded_at = self._clock()
        document = body if isinstance(body, str) else json.dumps(body, default=str)
        stored = _flatten(metadata or {})
        stored.update(
            session_id=session_id,
            kind=kind,
            recorded_at=recorded_at.isoformat(),
            sequence=sequence,
        )
        activity_id = f"{session_id}:{sequence}:{uuid.uuid4().hex[:8]}"
        self.collection.add(documents=[document], metadatas=[stored], ids=[activity_id])
        return ArchivedActivity(
            id=activity_id,
            session_id=session_id,
            kind=kind,
            document=document,
            metadata=stored,
            recorded_at=recorded_at,
            sequence=sequence,
        )

    def _query(self, where: dict[str, Any] | None) -> list[ArchivedActivity]:
        result = self.collection.get(where=where)
        activities = []
        for activity_id, document, metadata in zip(
            result.get("ids") or [], result.get("documents") or [], result.get("metadatas") or []
        ):
            metadata = dict(metadata or {})
            raw_time = metadata.get("recorded_at")
            activities.append(
                ArchivedActivity(
                    id=activity_id,
                    session_id=str(metadata.get("session_id", "")),
                    kind=str(metadata.get("kind", "")),
                    document=document,
                    metadata=metadata,
                    recorded_at=datetime.fromisoformat(raw_time) if isinstance(raw_time, str) else self._clock(),
                    sequence=int(metadata.get("sequence", 0)),
                )
            )
        activities.sort(key=lambda activity: (activity.recorded_at, activity.sequence))
        return activities

    def session_history(self, session_id: str, *, limit: int | None = None) -> list[ArchivedActivity]:
        """Return a session's activities oldest first; ``limit`` keeps only the latest N."""

        history = sorted(self._query({"session_id": session_id}), key=lambda activity: activity.sequence)
        if limit:
            history = history[-limit:]
        return history

    def record_session_state(
        self,
        *,
        session_id: str,
        repository_id: str,
        state: str,
        issue_identifier: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SessionStateRecord:
        extra = dict(metadata or {})
        activity = self.record_activity(
            session_id,
            STATE_KIND,
            {
                "session_id": session_id,
                "repository_id": repository_id,
                "issue_identifier": issue_identifier,
                "state": state,
                **extra,
            },
            metadata={"repository_id": repository_id, "issue_identifier": issue_identifier, "state": state},
        )
        return SessionStateRecord(
            session_id=session_id,
            repository_id=repository_id,
            issue_identifier=issue_identifier,
            state=state,
            recorded_at=activity.recorded_at,
            metadata=extra,
        )

    def list_session_states(self, repository_id: str | None = None) -> list[SessionStateRecord]:
        records = []
        for activity in self._query({"kind": STATE_KIND}):
            if repository_id and activity.metadata.get("repository_id") != repository_id:
                continue
            payload = json.loads(activity.document)
            records.append(
                SessionStateRecord(
                    session_id=payload["session_id"],
                    repository_id=payload["repository_id"],
                    issue_identifier=payload.get("issue_identifier"),
                    state=payload.get("state", "unknown"),
                    recorded_at=activity.recorded_at,
                    metadata={key: value for key, value in payload.items() if key not in _STATE_FIELDS},
                )
            )
        return records

    def search(
        self,
        query: str | None = None,
        *,
        kind: str | None = None,
        limit: int | None = None,
    ) -> list[ArchivedActivity]:
        """Case-insensitive substring search over documents and metadata values."""

        activities = self._query({"kind": kind} if kind else None)
        if query:
            needle = query.lower()
            activities = [
                activity
                for activity in activities
                if needle in activity.document.lower()
                or any(needle in str(value).lower() for value in activity.metadata.values())
            ]
        return activities[:limit] if limit else activities


__all__ = ["ArchiveClient", "ArchiveCollection", "ChromaStore", "ChromaUnavailableError", "STATE_KIND"]
