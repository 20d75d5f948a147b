"""Map inbound events to the repository configuration that owns them."""

from __future__ import annotations

import re
from typing import Sequence

from .events import InboundEvent
from .repositories import RepositoryConfig

_IDENTIFIER_RE = re.compile(r"^([A-Za-z]+)-(\d+)$")


def parse_team_key(identifier: str | None) -> str | None:
    """Extract ``TEAM`` from an issue identifier like ``TEAM-123``.

    Returns ``None`` for anything that does not look like an identifier.
    """

    if not identifier:
        return None
    match = _IDENTIFIER_RE.match(identifier.strip())
    if match is None:
        return None
    return match.group(1).upper()


def _match_team(team_key: str, repositories: Sequence[RepositoryConfig]) -> RepositoryConfig | None:
    for repository in repositories:
        if repository.owns_team(team_key):
            return repository
    return None


def resolve_repository(
    event: InboundEvent,
    repositories: Sequence[RepositoryConfig],
) -> RepositoryConfig | None:
    """Return the repository that should handle ``event``, or ``None``.

    Rules, first match wins: explicit team key, team key parsed from the
    issue identifier, then the first repository sharing the event's
    workspace id. The identifier is only consulted when the explicit key
    matched nothing.
    """

    issue = event.issue
    if issue is not None:
        explicit_key = issue.team_key
        if explicit_key:
            repository = _match_team(explicit_key, repositories)
            if repository is not None:
                return repository

        derived_key = parse_team_key(issue.identifier)
        if derived_key and derived_key != explicit_key:
            repository = _match_team(derived_key, repositories)
            if repository is not None:
                return repository

    if event.workspace_id:
        for repository in repositories:
            if repository.workspace_id == event.workspace_id:
                return repository

    return None


__all__ = ["parse_team_key", "resolve_repository"]
