from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path

import pytest

from edgeworker.repositories import RepositoryConfig
from edgeworker.runner import (
    CodexAgentRunner,
    FakeAgentRunner,
    RunnerError,
    RunnerNotFoundError,
    RunnerResult,
)
from edgeworker.runner.utils import build_prompt, sanitize_environment
from edgeworker.tracker import IssueContext


def make_script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "codex"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_codex_runner_executes_in_workspace(tmp_path: Path) -> None:
    script = make_script(tmp_path, 'echo "$@"\npwd\necho "$EDGE_SESSION_CONTEXT"\n')
    workspace = tmp_path / "workspace"
    workspace.mkdir()

    async def scenario():
        runner = CodexAgentRunner(script, flags=["--model", "gpt"])
        handle = await runner.start(str(workspace), "fix the bug", {"session_id": "s-1"})
        return await handle.wait()

    result = asyncio.run(scenario())

    assert result.ok
    lines = result.stdout.strip().splitlines()
    assert lines[0] == "--model gpt exec fix the bug"
    assert Path(lines[1]).resolve() == workspace.resolve()
    assert json.loads(lines[2]) == {"session_id": "s-1"}


def test_codex_runner_reports_failure(tmp_path: Path) -> None:
    script = make_script(tmp_path, "echo oops >&2\nexit 3\n")

    async def scenario():
        handle = await CodexAgentRunner(script).start(str(tmp_path), "prompt")
        return await handle.wait()

    result = asyncio.run(scenario())

    assert not result.ok
    assert result.returncode == 3
    assert "oops" in result.stderr


def test_codex_runner_stop_terminates(tmp_path: Path) -> None:
    script = make_script(tmp_path, "exec sleep 30\n")

    async def scenario():
        runner = CodexAgentRunner(script)
        handle = await runner.start(str(tmp_path), "prompt")
        await runner.stop(handle, timeout=5)
        return handle

    handle = asyncio.run(scenario())

    assert handle.done
    assert handle.completion.result().returncode == -signal.SIGTERM


def test_codex_runner_missing_workspace_raises(tmp_path: Path) -> None:
    script = make_script(tmp_path, "exit 0\n")

    async def scenario():
        await CodexAgentRunner(script).start(str(tmp_path / "missing"), "prompt")

    with pytest.raises(RunnerError):
        asyncio.run(scenario())


def test_codex_not_found(tmp_path: Path) -> None:
    with pytest.raises(RunnerNotFoundError):
        CodexAgentRunner(tmp_path / "missing")


def test_fake_runner_records_and_finishes() -> None:
    fake = FakeAgentRunner([RunnerResult(args=("exec",), returncode=0, stdout="ok", stderr="")])

    async def scenario():
        first = await fake.start("/tmp/ws", "first prompt", {"session_id": "a"})
        second = await fake.start("/tmp/ws", "second prompt")
        assert first.done
        assert not second.done
        fake.finish(second.id, returncode=1, stdout="bad")
        return await first.wait(), await second.wait()

    first, second = asyncio.run(scenario())

    assert first.stdout == "ok"
    assert second.returncode == 1
    assert [call["prompt"] for call in fake.started] == ["first prompt", "second prompt"]
    assert fake.started[0]["context"] == {"session_id": "a"}


def test_fake_runner_stop_resolves_handle() -> None:
    fake = FakeAgentRunner()

    async def scenario():
        handle = await fake.start("/tmp/ws", "prompt")
        await fake.stop(handle)
        return await handle.wait()

    result = asyncio.run(scenario())

    assert result.returncode == -signal.SIGTERM
    assert fake.stopped == ["fake-1"]


def test_sanitize_environment_strips_interpreter_and_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    monkeypatch.setenv("LINEAR_API_TOKEN", "secret")
    monkeypatch.setenv("EDGE_INGRESS_TOKEN", "secret")
    monkeypatch.setenv("HOME_SAFE_VALUE", "kept")

    env = sanitize_environment({"EXTRA": "1"})

    assert "PYTHONPATH" not in env
    assert "LINEAR_API_TOKEN" not in env
    assert "EDGE_INGRESS_TOKEN" not in env
    assert env["HOME_SAFE_VALUE"] == "kept"
    assert env["EXTRA"] == "1"


def test_build_prompt_includes_issue_context() -> None:
    repository = RepositoryConfig(
        id="ceedar",
        name="Ceedar",
        token="t",
        workspace_id="w",
        repository_path="/srv/ceedar",
        workspace_base_dir="/srv/ws",
        base_branch="develop",
    )
    issue = IssueContext(
        identifier="CEE-7",
        title="Broken login",
        labels=["bug", "auth"],
        state="Todo",
        description="  Users cannot log in.  ",
    )

    prompt = build_prompt(repository, issue, instructions=["Open a pull request"])

    assert prompt.startswith("You are working on issue CEE-7: Broken login")
    assert "Repository: Ceedar (base branch develop)" in prompt
    assert "Labels: bug, auth" in prompt
    assert "Description:\nUsers cannot log in." in prompt
    assert prompt.endswith("Instructions:\n- Open a pull request")


def test_build_prompt_minimal() -> None:
    repository = RepositoryConfig(
        id="r", name="Repo", token="t", workspace_id="w", repository_path="/r", workspace_base_dir="/w"
    )

    prompt = build_prompt(repository, IssueContext(identifier="R-1"))

    assert prompt == "You are working on issue R-1\n\nRepository: Repo (base branch main)"
