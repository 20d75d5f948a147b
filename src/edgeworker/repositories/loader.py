"""Repository configuration loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from .models import EdgeWorkerConfig, RepositoryConfig


class RepositoryLoadError(RuntimeError):
    """Raised when one or more repository configuration files cannot be parsed."""


class RepositoryLoader:
    """Loads repository configurations from YAML files on disk.

    Each search path may be a single YAML file or a directory of ``*.yml`` /
    ``*.yaml`` files. A document is either a mapping with a ``repositories``
    list (and optionally ``proxy_url``), a list of repository mappings, or a
    single repository mapping.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]
        self._proxy_url: str | None = None

    @property
    def search_paths(self) -> list[Path]:
        """Return the normalized search paths."""

        return list(self._search_paths)

    @property
    def proxy_url(self) -> str | None:
        """Proxy URL declared by the last loaded document that set one."""

        return self._proxy_url

    def _iter_files(self) -> list[Path]:
        files: list[Path] = []
        for base in self._search_paths:
            if base.is_file():
                files.append(base)
            else:
                files.extend(sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")))
        return files

    def _documents(self, document: Any) -> list[Any]:
        if isinstance(document, list):
            return document
        if isinstance(document, dict) and "repositories" in document:
            if document.get("proxy_url"):
                self._proxy_url = str(document["proxy_url"])
            return list(document.get("repositories") or [])
        return [document]

    def load_all(self) -> dict[str, RepositoryConfig]:
        """Load repositories from all configured search paths, preserving file order.

        Later files override earlier ones when repository ids collide.
        """

        if not self._search_paths:
            return {}

        repositories: dict[str, RepositoryConfig] = {}
        errors: list[str] = []

        for path in self._iter_files():
            try:
                document = yaml.safe_load(path.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:  # pragma: no cover - library type
                errors.append(f"Failed to parse YAML in {path}: {exc}")
                continue

            if document is None:
                continue

            for entry in self._documents(document):
                try:
                    repository = RepositoryConfig.model_validate(entry)
                except ValidationError as exc:
                    errors.append(f"Repository validation error in {path}: {exc}")
                    continue
                repositories[repository.id] = repository

        if errors:
            raise RepositoryLoadError("; ".join(errors))

        return repositories

    def get(self, repository_id: str) -> RepositoryConfig:
        """Return a single repository by id."""

        repositories = self.load_all()
        try:
            return repositories[repository_id]
        except KeyError as exc:
            raise RepositoryLoadError(
                f"Repository '{repository_id}' not found in search paths"
            ) from exc


def load_config(
    search_paths: Iterable[Path] | None = None,
    *,
    proxy_url: str | None = None,
) -> EdgeWorkerConfig:
    """Build an ``EdgeWorkerConfig``; an explicit ``proxy_url`` wins over file values."""

    loader = RepositoryLoader(search_paths)
    repositories = loader.load_all()
    try:
        return EdgeWorkerConfig(
            proxy_url=proxy_url or loader.proxy_url,
            repositories=list(repositories.values()),
        )
    except ValidationError as exc:
        raise RepositoryLoadError(str(exc)) from exc


__all__ = ["RepositoryConfig", "RepositoryLoadError", "RepositoryLoader", "load_config"]
