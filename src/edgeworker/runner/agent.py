"""Async coding-agent runners driven by the orchestrator."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, Sequence
from uuid import uuid4

from .utils import sanitize_environment

logger = logging.getLogger(__name__)


class RunnerError(RuntimeError):
    """Base class for agent runner errors."""


class RunnerNotFoundError(RunnerError):
    """Raised when the agent CLI executable cannot be located."""


@dataclass(slots=True)
class RunnerResult:
    """Holds the outcome of an agent run."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(slots=True, eq=False)
class RunnerHandle:
    """Opaque reference to a live agent run."""

    id: str
    workspace_path: str
    completion: "asyncio.Future[RunnerResult]"
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    process: asyncio.subprocess.Process | None = None

    @property
    def done(self) -> bool:
        return self.completion.done()

    async def wait(self) -> RunnerResult:
        return await asyncio.shield(self.completion)


class AgentRunner(Protocol):
    async def start(
        self,
        workspace_path: str,
        prompt: str,
        context: Mapping[str, Any] | None = None,
    ) -> RunnerHandle:
        ...

    async def stop(self, handle: RunnerHandle, *, timeout: float = 10.0) -> None:
        ...


class CodexAgentRunner:
    """Run ``codex exec`` in a repository workspace as a background subprocess."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        flags: Sequence[str] | None = None,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._flags = list(flags or [])

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise RunnerNotFoundError(f"Codex executable not found at {candidate}")

        binary = shutil.which("codex")
        if binary is None:
            raise RunnerNotFoundError("Codex CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def _command(self, prompt: str) -> list[str]:
        return [str(self._executable_path), *self._flags, "exec", prompt]

    async def start(
        self,
        workspace_path: str,
        prompt: str,
        context: Mapping[str, Any] | None = None,
    ) -> RunnerHandle:
        cmd = self._command(prompt)
        extra_env = {"EDGE_SESSION_CONTEXT": json.dumps(dict(context or {}), default=str)}
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=workspace_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(extra_env),
            )
        except OSError as exc:
            raise RunnerError(f"Failed to start agent in {workspace_path}: {exc}") from exc

        completion = asyncio.ensure_future(self._collect(process, tuple(cmd)))
        handle = RunnerHandle(
            id=f"run-{uuid4().hex[:12]}",
            workspace_path=workspace_path,
            completion=completion,
            process=process,
        )
        logger.info(
            "Started agent runner",
            extra={"runner_id": handle.id, "pid": process.pid, "workspace": workspace_path},
        )
        return handle

    @staticmethod
    async def _collect(process: asyncio.subprocess.Process, args: tuple[str, ...]) -> RunnerResult:
        stdout_bytes, stderr_bytes = await process.communicate()
        return RunnerResult(
            args=args,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def stop(self, handle: RunnerHandle, *, timeout: float = 10.0) -> None:
        """Terminate the run, escalating to kill once ``timeout`` elapses."""

        process = handle.process
        if process is None or process.returncode is not None:
            return
        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(asyncio.shield(handle.completion), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Agent runner ignored SIGTERM; killing",
                extra={"runner_id": handle.id, "timeout": timeout},
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await asyncio.shield(handle.completion)


class FakeAgentRunner:
    """Test double that simulates agent runs without spawning processes."""

    def __init__(self, results: Iterable[RunnerResult] | None = None) -> None:
        self._results = list(results or [])
        self.started: list[dict[str, Any]] = []
        self.stopped: list[str] = []
        self.handles: dict[str, RunnerHandle] = {}

    async def start(
        self,
        workspace_path: str,
        prompt: str,
        context: Mapping[str, Any] | None = None,
    ) -> RunnerHandle:
        loop = asyncio.get_running_loop()
        handle = RunnerHandle(
            id=f"fake-{len(self.started) + 1}",
            workspace_path=workspace_path,
            completion=loop.create_future(),
        )
        self.started.append(
            {"workspace_path": workspace_path, "prompt": prompt, "context": dict(context or {})}
        )
        self.handles[handle.id] = handle
        if self._results:
            handle.completion.set_result(self._results.pop(0))
        return handle

    def finish(self, handle_id: str, returncode: int = 0, stdout: str = "") -> None:
        handle = self.handles[handle_id]
        if not handle.completion.done():
            handle.completion.set_result(
                RunnerResult(args=("fake",), returncode=returncode, stdout=stdout, stderr="")
            )

    async def stop(self, handle: RunnerHandle, *, timeout: float = 10.0) -> None:
        self.stopped.append(handle.id)
        if not handle.completion.done():
            handle.completion.set_result(
                RunnerResult(args=("fake",), returncode=-signal.SIGTERM, stdout="", stderr="stopped")
            )

