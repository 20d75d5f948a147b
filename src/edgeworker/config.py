"""Configuration management for the edge worker."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EdgeWorkerSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    config_path: Path = Field(default=Path("edgeworker.yaml"), validation_alias="EDGE_CONFIG_PATH")
    proxy_url: str | None = Field(default=None, validation_alias="EDGE_PROXY_URL")
    ingress_token: str | None = Field(default=None, validation_alias="EDGE_INGRESS_TOKEN")
    state_path: Path = Field(
        default=Path("./state/edge-worker.json"), validation_alias="EDGE_STATE_PATH"
    )
    callback_host: str = Field(default="127.0.0.1", validation_alias="EDGE_CALLBACK_HOST")
    callback_port: int = Field(default=3456, validation_alias="EDGE_CALLBACK_PORT")
    codex_path: str | None = Field(default=None, validation_alias="CODEX_PATH")
    log_level: str = Field(default="INFO", validation_alias="EDGE_LOG_LEVEL")
    reconnect_initial_delay: float = Field(
        default=1.0, validation_alias="EDGE_RECONNECT_INITIAL_DELAY"
    )
    reconnect_max_delay: float = Field(default=60.0, validation_alias="EDGE_RECONNECT_MAX_DELAY")
    ingress_read_timeout: float = Field(default=90.0, validation_alias="EDGE_INGRESS_READ_TIMEOUT")
    runner_stop_timeout: float = Field(default=10.0, validation_alias="EDGE_RUNNER_STOP_TIMEOUT")
    session_retention_hours: float = Field(
        default=24.0, validation_alias="EDGE_SESSION_RETENTION_HOURS"
    )
    archive_path: Path | None = Field(default=None, validation_alias="EDGE_ARCHIVE_PATH")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "EDGE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator(
        "reconnect_initial_delay", "reconnect_max_delay", "ingress_read_timeout", "runner_stop_timeout"
    )
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Delays and timeouts must be > 0")
        return value

    @field_validator("session_retention_hours")
    @classmethod
    def _validate_retention(cls, value: float) -> float:
        if value < 0:
            raise ValueError("EDGE_SESSION_RETENTION_HOURS must be >= 0")
        return value

    @field_validator("callback_port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError("EDGE_CALLBACK_PORT must be between 0 and 65535")
        return value

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "EdgeWorkerSettings":
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            raise ValueError("EDGE_RECONNECT_MAX_DELAY must be >= EDGE_RECONNECT_INITIAL_DELAY")
        return self


@lru_cache(maxsize=1)
def get_settings() -> EdgeWorkerSettings:
    """Return cached settings instance."""

    settings = EdgeWorkerSettings()
    settings.config_path = settings.config_path.expanduser().resolve()
    settings.state_path = settings.state_path.expanduser().resolve()
    if settings.archive_path is not None:
        settings.archive_path = settings.archive_path.expanduser().resolve()
    return settings


__all__ = ["EdgeWorkerSettings", "get_settings"]
