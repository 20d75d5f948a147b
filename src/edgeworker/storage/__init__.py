"""Storage abstractions for the edge worker."""

from .chroma import ChromaStore, ChromaUnavailableError
from .models import ArchivedActivity, SessionStateRecord
from .snapshot import PersistenceIOError, SnapshotStore

__all__ = [
    "ArchivedActivity",
    "ChromaStore",
    "ChromaUnavailableError",
    "PersistenceIOError",
    "SessionStateRecord",
    "SnapshotStore",
]
