from pathlib import Path
import textwrap

import pytest

from edgeworker.repositories import RepositoryLoadError, RepositoryLoader, load_config


def write_repository(path: Path, *, name: str, repo_id: str = "ceedar", team_keys: str = "[CEE]") -> None:
    path.write_text(
        textwrap.dedent(
            """
            id: {repo_id}
            name: {name}
            token: lin_api_secret
            workspace_id: workspace-ceedar
            team_keys: {team_keys}
            repository_path: /srv/{repo_id}
            workspace_base_dir: /srv/workspaces/{repo_id}
            """
        ).strip().format(name=name, repo_id=repo_id, team_keys=team_keys),
        encoding="utf-8",
    )


def test_loader_merges_paths(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    override = tmp_path / "override"
    override.mkdir()

    write_repository(base / "ceedar.yaml", name="Base Name")
    write_repository(override / "ceedar.yaml", name="Override Name")

    loader = RepositoryLoader([base, override])
    repositories = loader.load_all()

    assert repositories["ceedar"].name == "Override Name"


def test_loader_handles_missing_repositories(tmp_path: Path) -> None:
    loader = RepositoryLoader([tmp_path])
    assert loader.load_all() == {}


def test_loader_ignores_nonexistent_paths(tmp_path: Path) -> None:
    loader = RepositoryLoader([tmp_path / "absent.yaml"])
    assert loader.search_paths == []
    assert loader.load_all() == {}


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    invalid = tmp_path / "invalid"
    invalid.mkdir()
    (invalid / "broken.yaml").write_text("id: \nname: test", encoding="utf-8")

    loader = RepositoryLoader([invalid])

    with pytest.raises(RepositoryLoadError):
        loader.load_all()


def test_team_keys_are_normalized(tmp_path: Path) -> None:
    path = tmp_path / "repo.yml"
    write_repository(path, name="Ceedar", team_keys="[cee, ' Cee ', ops]")

    repository = RepositoryLoader([path]).get("ceedar")

    assert repository.team_keys == ("CEE", "OPS")
    assert repository.owns_team("ops")
    assert "lin_api_secret" not in repr(repository)


def test_load_config_reads_proxy_and_preserves_order(tmp_path: Path) -> None:
    path = tmp_path / "edgeworker.yaml"
    path.write_text(
        textwrap.dedent(
            """
            proxy_url: https://proxy.example.com
            repositories:
              - id: ceedar
                name: Ceedar
                token: t1
                workspace_id: workspace-shared
                team_keys: CEE
                repository_path: /srv/ceedar
                workspace_base_dir: /srv/ws/ceedar
              - id: bookkeeping
                name: Bookkeeping
                token: t2
                workspace_id: workspace-shared
                team_keys: [BOOK]
                repository_path: /srv/bookkeeping
                workspace_base_dir: /srv/ws/bookkeeping
                base_branch: develop
            """
        ),
        encoding="utf-8",
    )

    config = load_config([path])

    assert config.proxy_url == "https://proxy.example.com"
    assert [repo.id for repo in config.repositories] == ["ceedar", "bookkeeping"]
    assert config.repositories[0].team_keys == ("CEE",)
    assert config.get("bookkeeping").base_branch == "develop"
    assert config.get("missing") is None


def test_explicit_proxy_url_wins(tmp_path: Path) -> None:
    path = tmp_path / "edgeworker.yaml"
    path.write_text("proxy_url: https://from-file\nrepositories: []\n", encoding="utf-8")

    config = load_config([path], proxy_url="https://from-env")

    assert config.proxy_url == "https://from-env"
    assert config.repositories == []


def test_get_unknown_repository_raises(tmp_path: Path) -> None:
    write_repository(tmp_path / "ceedar.yaml", name="Ceedar")

    with pytest.raises(RepositoryLoadError):
        RepositoryLoader([tmp_path]).get("missing")
