"""Session lifecycle management."""

from .manager import (
    DuplicateSessionError,
    InvalidTransitionError,
    SessionManager,
    SessionManagerError,
    UnknownSessionError,
)
from .models import SerializedState, Session, SessionEntry, SessionRecord, SessionState

__all__ = [
    "DuplicateSessionError",
    "InvalidTransitionError",
    "SerializedState",
    "Session",
    "SessionEntry",
    "SessionManager",
    "SessionManagerError",
    "SessionRecord",
    "SessionState",
    "UnknownSessionError",
]
