"""Utility helpers for agent runners."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Iterable, Mapping

if TYPE_CHECKING:
    from ..repositories import RepositoryConfig
    from ..tracker import IssueContext

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "EDGE_INGRESS_TOKEN",
}
_SECRET_PREFIXES = ("LINEAR_",)


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return an environment for agent subprocesses without interpreter or tracker secrets."""

    env = {
        key: value
        for key, value in os.environ.items()
        if key not in _SANITIZED_VARS and not key.startswith(_SECRET_PREFIXES)
    }
    if additional:
        env.update(additional)
    return env


def build_prompt(
    repository: "RepositoryConfig",
    issue: "IssueContext",
    *,
    instructions: Iterable[str] | None = None,
) -> str:
    """Assemble the initial agent prompt for an issue."""

    header = f"You are working on issue {issue.identifier}"
    if issue.title:
        header += f": {issue.title}"
    sections = [
        header,
        f"Repository: {repository.name} (base branch {repository.base_branch})",
    ]
    if issue.state:
        sections.append(f"Issue state: {issue.state}")
    if issue.labels:
        sections.append("Labels: " + ", ".join(issue.labels))
    if issue.description:
        sections.append("Description:\n" + issue.description.strip())
    extra = "\n".join(f"- {line}" for line in (instructions or []))
    if extra:
        sections.append("Instructions:\n" + extra)
    return "\n\n".join(sections)
