"""Coding-agent runner abstractions."""

from .agent import (
    AgentRunner,
    CodexAgentRunner,
    FakeAgentRunner,
    RunnerError,
    RunnerHandle,
    RunnerNotFoundError,
    RunnerResult,
)

__all__ = [
    "AgentRunner",
    "CodexAgentRunner",
    "FakeAgentRunner",
    "RunnerError",
    "RunnerHandle",
    "RunnerNotFoundError",
    "RunnerResult",
]
