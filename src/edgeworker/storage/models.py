"""Records returned by the activity archive."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class ArchivedActivity:
    """One archived document for a session."""

    id: str
    session_id: str
    kind: str
    document: str
    metadata: dict[str, Any]
    recorded_at: datetime
    sequence: int


@dataclass(slots=True)
class SessionStateRecord:
    session_id: str
    repository_id: str
    issue_identifier: str | None
    state: str
    recorded_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


__all__ = ["ArchivedActivity", "SessionStateRecord"]
