from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from git_workspace.core import WorkspaceLayout, WorkspaceManager, app

from .utils import git, make_upstream, write_legacy_config


@pytest.fixture(autouse=True)
def isolated_git(tmp_path_factory, monkeypatch):
    """Give every test its own global git config with a known identity."""
    home = tmp_path_factory.mktemp("home")
    gitconfig = home / ".gitconfig"
    gitconfig.write_text(
        "[user]\n"
        "\tname = Workspace Tester\n"
        "\temail = tester@example.com\n"
        "[init]\n"
        "\tdefaultBranch = main\n"
        "[advice]\n"
        "\tdetachedHead = false\n"
    )
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for var in ("WORKSPACE_ROOT", "WORKSPACE_CONFIG", "WORKSPACE_GIT_TIMEOUT", "WORKSPACE_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def upstreams(tmp_path_factory) -> dict[str, Path]:
    """Three upstream repositories: repo-a, repo-b and repo-c."""
    base = tmp_path_factory.mktemp("upstream")
    return {name: make_upstream(base, name) for name in ("repo-a", "repo-b", "repo-c")}


@pytest.fixture
def root(tmp_path) -> Path:
    path = tmp_path / "ws-root"
    path.mkdir()
    return path


@pytest.fixture
def git_root(root) -> Path:
    """A workspace root that is a git repository (without commits)."""
    git("init", "-q", cwd=root)
    return root


@pytest.fixture
def scenario_config(root, upstreams) -> Path:
    """repo-a follows the workspace branch, repo-b develop, repo-c is pinned."""
    return write_legacy_config(
        root,
        [
            "# scenario",
            str(upstreams["repo-a"]),
            f"{upstreams['repo-b']} develop",
            f"{upstreams['repo-c']} main v1.0.0",
        ],
    )


@pytest.fixture
def layout(root) -> WorkspaceLayout:
    return WorkspaceLayout(root=root, legacy_file=root / "workspace.conf")


@pytest.fixture
def manager(layout) -> WorkspaceManager:
    return WorkspaceManager(layout)


@pytest.fixture
def cli(root):
    """Invoke the CLI against ``root`` with a wide terminal."""
    runner = CliRunner()

    def invoke(*args: str, input: str | None = None, use_root: bool = True):
        argv = ["--root", str(root), *args] if use_root else list(args)
        return runner.invoke(
            app, argv, input=input, env={"COLUMNS": "200", "FORCE_COLOR": None, "NO_COLOR": None}
        )

    return invoke
