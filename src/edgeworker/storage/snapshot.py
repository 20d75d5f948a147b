"""Crash-safe snapshot persistence for orchestration state."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from ..sessions.models import SerializedState

logger = logging.getLogger(__name__)


class PersistenceIOError(RuntimeError):
    """Raised when a snapshot cannot be read or written."""


class SnapshotStore:
    """Load and save a single JSON snapshot file with atomic replace."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def temp_path(self) -> Path:
        return self._path.with_name(f"{self._path.name}.tmp")

    def load(self) -> SerializedState | None:
        """Return the committed snapshot, or ``None`` when none exists yet."""

        if not self._path.exists():
            return None
        try:
            raw = self._path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise PersistenceIOError(f"Snapshot {self._path} is not valid UTF-8: {exc}") from exc
        except OSError as exc:
            raise PersistenceIOError(f"Failed to read snapshot {self._path}: {exc}") from exc
        try:
            return SerializedState.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise PersistenceIOError(f"Snapshot {self._path} is corrupt: {exc}") from exc

    def save(self, state: SerializedState) -> None:
        """Write ``state`` to a temporary file, fsync it, then rename over the target."""

        payload = state.model_dump_json(indent=2)
        tmp_path = self.temp_path
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        except OSError as exc:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:  # pragma: no cover - best effort cleanup
                pass
            raise PersistenceIOError(f"Failed to write snapshot {self._path}: {exc}") from exc
        logger.debug(
            "Saved snapshot",
            extra={"path": str(self._path), "sessions": len(state.sessions)},
        )


__all__ = ["PersistenceIOError", "SnapshotStore"]
