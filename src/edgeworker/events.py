"""Inbound event models and the ingress-boundary decoder.

Webhook payloads arrive from the stream proxy either bare or wrapped as
``{"type": "webhook", "data": {...}}``. :func:`parse_event` resolves the
event kind once, so downstream code dispatches on :class:`EventKind` instead
of inspecting payload shapes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class EventParseError(ValueError):
    """Raised when an inbound payload cannot be normalized into an event."""


class EventKind(str, Enum):
    SESSION_CREATED = "session_created"
    SESSION_PROMPTED = "session_prompted"
    UNKNOWN = "unknown"


_ACTION_KINDS = {
    "agentSessionCreated": EventKind.SESSION_CREATED,
    "agentSessionPrompted": EventKind.SESSION_PROMPTED,
}

_IGNORED_TYPES = {"heartbeat", "ping", "connected"}


class TeamRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str | None = None
    name: str | None = None


class IssueRef(BaseModel):
    """Reference to the issue a session works on."""

    model_config = ConfigDict(frozen=True)

    id: str
    identifier: str = Field(..., description="Human identifier of the form <TEAM>-<NUMBER>.")
    title: str | None = None
    team: TeamRef | None = None

    @property
    def team_key(self) -> str | None:
        if self.team is None or not self.team.key:
            return None
        return self.team.key.strip().upper() or None


class InboundEvent(BaseModel):
    """Normalized webhook payload delivered to the orchestrator."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    created_at: datetime | None = None
    workspace_id: str | None = None
    session_id: str | None = None
    issue: IssueRef | None = None
    prompt: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


def _unwrap(payload: dict[str, Any]) -> dict[str, Any] | None:
    event_type = payload.get("type")
    if event_type in _IGNORED_TYPES:
        return None
    if event_type == "webhook" and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload


def _prompt_body(webhook: dict[str, Any]) -> str | None:
    activity = webhook.get("agentActivity") or {}
    content = activity.get("content") or {}
    body = content.get("body") if isinstance(content, dict) else None
    return body if isinstance(body, str) else None


def parse_event(payload: Any) -> InboundEvent | None:
    """Normalize a decoded stream record.

    Returns ``None`` for keep-alive records. Raises :class:`EventParseError`
    when a session payload is missing required fields.
    """

    if not isinstance(payload, dict):
        raise EventParseError(f"Expected a JSON object, got {type(payload).__name__}")

    webhook = _unwrap(payload)
    if webhook is None:
        return None

    kind = _ACTION_KINDS.get(str(webhook.get("action")), EventKind.UNKNOWN)
    if kind is EventKind.UNKNOWN:
        return InboundEvent(
            kind=kind,
            workspace_id=webhook.get("organizationId"),
            raw=webhook,
        )

    session = webhook.get("agentSession")
    if not isinstance(session, dict) or not session.get("id"):
        raise EventParseError(f"{webhook.get('action')} payload is missing agentSession.id")

    issue_payload = session.get("issue")
    try:
        issue = IssueRef.model_validate(issue_payload) if issue_payload else None
        return InboundEvent(
            kind=kind,
            created_at=webhook.get("createdAt"),
            workspace_id=webhook.get("organizationId"),
            session_id=str(session["id"]),
            issue=issue,
            prompt=_prompt_body(webhook),
            raw=webhook,
        )
    except ValidationError as exc:
        raise EventParseError(f"Invalid {webhook.get('action')} payload: {exc}") from exc


__all__ = [
    "EventKind",
    "EventParseError",
    "InboundEvent",
    "IssueRef",
    "TeamRef",
    "parse_event",
]
