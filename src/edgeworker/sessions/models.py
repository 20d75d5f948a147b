"""Session data models and the persisted snapshot schema."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..events import IssueRef

SNAPSHOT_VERSION = 1


class SessionState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"

    @property
    def terminal(self) -> bool:
        return self in {SessionState.COMPLETED, SessionState.FAILED, SessionState.STALLED}


class EntryRecord(BaseModel):
    kind: str
    content: str
    created_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionRecord(BaseModel):
    """Serialized form of a :class:`Session`; never carries a runner handle."""

    id: str
    repository_id: str
    issue: IssueRef | None = None
    state: SessionState
    created_at: datetime
    updated_at: datetime
    ended_at: datetime | None = None
    outcome: str | None = None
    entries: list[EntryRecord] = Field(default_factory=list)


class SerializedState(BaseModel):
    """Point-in-time snapshot of orchestration state."""

    version: int = SNAPSHOT_VERSION
    saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sessions: dict[str, SessionRecord] = Field(default_factory=dict)
    archived: dict[str, SessionRecord] = Field(default_factory=dict)
    issue_repositories: dict[str, str] = Field(default_factory=dict)


@dataclass(slots=True)
class SessionEntry:
    """One activity or log record appended to a session."""

    kind: str
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> EntryRecord:
        return EntryRecord(
            kind=self.kind,
            content=self.content,
            created_at=self.created_at,
            metadata=dict(self.metadata),
        )

    @classmethod
    def from_record(cls, record: EntryRecord) -> "SessionEntry":
        return cls(
            kind=record.kind,
            content=record.content,
            created_at=record.created_at,
            metadata=dict(record.metadata),
        )


@dataclass(slots=True)
class Session:
    """One orchestrated agent run tied to a single issue event."""

    id: str
    repository_id: str
    issue: IssueRef | None
    created_at: datetime
    state: SessionState = SessionState.CREATED
    updated_at: datetime | None = None
    ended_at: datetime | None = None
    outcome: str | None = None
    runner: Any = None
    entries: list[SessionEntry] = field(default_factory=list)

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            id=self.id,
            repository_id=self.repository_id,
            issue=self.issue,
            state=self.state,
            created_at=self.created_at,
            updated_at=self.updated_at or self.created_at,
            ended_at=self.ended_at,
            outcome=self.outcome,
            entries=[entry.to_record() for entry in self.entries],
        )

    @classmethod
    def from_record(cls, record: SessionRecord) -> "Session":
        return cls(
            id=record.id,
            repository_id=record.repository_id,
            issue=record.issue,
            created_at=record.created_at,
            state=record.state,
            updated_at=record.updated_at,
            ended_at=record.ended_at,
            outcome=record.outcome,
            runner=None,
            entries=[SessionEntry.from_record(entry) for entry in record.entries],
        )


__all__ = [
    "EntryRecord",
    "SNAPSHOT_VERSION",
    "SerializedState",
    "Session",
    "SessionEntry",
    "SessionRecord",
    "SessionState",
]
