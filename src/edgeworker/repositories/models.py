"""Repository (tenant) configuration models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RepositoryConfig(BaseModel):
    """One tenant served by the edge worker: credentials, workspace, and team ownership."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the repository configuration.")
    name: str = Field(..., description="Display name for logs and activity posts.")
    token: str = Field(..., repr=False, description="Issue tracker API token for this tenant.")
    workspace_id: str = Field(
        ...,
        description="Organization-level identity on the issue tracker; may be shared.",
    )
    workspace_name: str | None = Field(default=None, description="Human-friendly workspace name.")
    team_keys: tuple[str, ...] = Field(
        default=(),
        description="Ordered team keys owned by this repository, e.g. ('CEE',).",
    )
    repository_path: str = Field(..., description="Path to the local working copy.")
    workspace_base_dir: str = Field(
        ..., description="Directory under which per-issue workspaces are created."
    )
    base_branch: str = Field(default="main", description="Branch new work is based on.")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata passed through to runners and handlers.",
    )

    @field_validator("id", "workspace_id")
    @classmethod
    def _require_non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Repository id and workspace_id must not be empty")
        return normalized

    @field_validator("team_keys", mode="before")
    @classmethod
    def _normalize_team_keys(cls, value: Any):  # type: ignore[override]
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            raise TypeError("team_keys must be a sequence of strings")
        keys: list[str] = []
        for item in value:
            key = str(item).strip().upper()
            if key and key not in keys:
                keys.append(key)
        return tuple(keys)

    def owns_team(self, team_key: str) -> bool:
        return team_key.strip().upper() in self.team_keys


class EdgeWorkerConfig(BaseModel):
    """Top-level configuration: ingress endpoint plus the ordered tenant list."""

    proxy_url: str | None = Field(default=None, description="Base URL of the event stream proxy.")
    repositories: list[RepositoryConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "EdgeWorkerConfig":
        seen: set[str] = set()
        for repository in self.repositories:
            if repository.id in seen:
                raise ValueError(f"Duplicate repository id '{repository.id}'")
            seen.add(repository.id)
        return self

    def get(self, repository_id: str) -> RepositoryConfig | None:
        for repository in self.repositories:
            if repository.id == repository_id:
                return repository
        return None


__all__ = ["EdgeWorkerConfig", "RepositoryConfig"]
