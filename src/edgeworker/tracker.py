"""Issue tracker client used for issue context and activity posts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

logger = logging.getLogger(__name__)

LINEAR_GRAPHQL_URL = "https://api.linear.app/graphql"

_ISSUE_QUERY = """
query EdgeIssue($id: String!) {
  issue(id: $id) {
    identifier
    title
    description
    state { name }
    team { key name }
    labels { nodes { name } }
  }
}
"""

_ACTIVITY_MUTATION = """
mutation EdgeActivity($input: AgentActivityCreateInput!) {
  agentActivityCreate(input: $input) { success }
}
"""


class TrackerError(RuntimeError):
    """Raised when the issue tracker rejects or fails a request."""


@dataclass(slots=True)
class IssueContext:
    identifier: str
    title: str | None = None
    team: str | None = None
    labels: list[str] = field(default_factory=list)
    state: str | None = None
    description: str | None = None


class IssueTracker(Protocol):
    async def fetch_issue_context(self, issue_id: str) -> IssueContext:
        ...

    async def post_activity(self, session_id: str, content: str) -> bool:
        ...


class LinearIssueTracker:
    """GraphQL client scoped to one repository's API token."""

    def __init__(
        self,
        token: str,
        *,
        endpoint: str = LINEAR_GRAPHQL_URL,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._token = token
        self._endpoint = endpoint
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        client = await self._client()
        try:
            async with client.post(
                self._endpoint,
                json={"query": query, "variables": variables},
                headers={"Authorization": self._token, "Content-Type": "application/json"},
                timeout=self._timeout,
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise TrackerError(f"Tracker returned HTTP {response.status}: {text[:200]}")
                payload = await response.json()
        except asyncio.TimeoutError as exc:
            raise TrackerError(f"Tracker request timed out after {self._timeout.total}s") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise TrackerError(f"Tracker request failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise TrackerError("Tracker returned a non-object response")

        errors = payload.get("errors")
        if errors:
            message = "; ".join(str(error.get("message", error)) for error in errors)
            raise TrackerError(f"Tracker returned errors: {message}")
        return payload.get("data") or {}

    async def fetch_issue_context(self, issue_id: str) -> IssueContext:
        data = await self._execute(_ISSUE_QUERY, {"id": issue_id})
        issue = data.get("issue")
        if not issue:
            raise TrackerError(f"Issue '{issue_id}' not found")
        return IssueContext(
            identifier=issue.get("identifier") or issue_id,
            title=issue.get("title"),
            team=(issue.get("team") or {}).get("key"),
            labels=[node.get("name") for node in (issue.get("labels") or {}).get("nodes", [])],
            state=(issue.get("state") or {}).get("name"),
            description=issue.get("description"),
        )

    async def post_activity(self, session_id: str, content: str) -> bool:
        try:
            data = await self._execute(
                _ACTIVITY_MUTATION,
                {
                    "input": {
                        "agentSessionId": session_id,
                        "content": {"type": "thought", "body": content},
                    }
                },
            )
        except TrackerError as exc:
            logger.warning(
                "Failed to post activity",
                extra={"session_id": session_id, "error": str(exc)},
            )
            return False
        return bool((data.get("agentActivityCreate") or {}).get("success"))

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


__all__ = [
    "IssueContext",
    "IssueTracker",
    "LINEAR_GRAPHQL_URL",
    "LinearIssueTracker",
    "TrackerError",
]
