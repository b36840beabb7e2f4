from __future__ import annotations

import json

import pytest

from git_workspace import __version__

from .utils import commit_file, current_branch, git


@pytest.fixture
def initialized(cli, scenario_config):
    result = cli("init")
    assert result.exit_code == 0, result.output
    return result


def test_version(cli):
    result = cli("--version", use_root=False)
    assert result.exit_code == 0
    assert f"git-workspace {__version__}" in result.output


def test_no_args_shows_help(cli):
    result = cli(use_root=False)
    assert "Workspace Manager" in result.output


def test_init(initialized, root):
    output = initialized.output
    assert "Initializing workspace: main" in output
    assert "Success: 3/3" in output
    assert f"Workspace initialized: {root.resolve() / 'worktrees' / 'main'}" in output
    assert current_branch(root / "worktrees" / "main" / "repo-b") == "develop"


def test_init_again_skips_existing(initialized, cli):
    result = cli("init", "main")
    assert result.exit_code == 0
    assert result.output.count("skipped-exists") == 3


def test_init_partial_failure_exit_code(cli, root, upstreams):
    (root / "workspace.conf").write_text(f"{upstreams['repo-a']}\n{root / 'missing.git'}\n")
    result = cli("init", "--json")
    assert result.exit_code == 1
    data = json.loads(result.stdout)
    assert data["summary"] == {"total": 2, "success": 1, "failed": 1}
    assert [r["outcome"] for r in data["results"]] == ["created", "failed"]


def test_init_rejects_invalid_name(cli, scenario_config):
    result = cli("init", "bad name")
    assert result.exit_code == 1
    assert "Invalid workspace name" in result.output


def test_switch_prints_path(cli, scenario_config, root):
    result = cli("switch", "feature-test")
    assert result.exit_code == 0, result.output
    assert "Switching to workspace: feature-test" in result.output
    assert result.stdout.strip().splitlines()[-1] == str(root.resolve() / "worktrees" / "feature-test")


def test_status(initialized, cli, root):
    (root / "worktrees" / "main" / "repo-a" / "scratch.txt").write_text("x\n")
    result = cli("status")
    assert result.exit_code == 0
    assert "Workspace Status" in result.output
    assert "[modified]" in result.output
    assert "[clean]" in result.output
    assert "[detached-pinned]" in result.output
    assert "v1.0.0" in result.output


def test_status_json(initialized, cli):
    result = cli("status", "--json")
    data = json.loads(result.stdout)
    (workspace,) = data["workspaces"]
    assert workspace["name"] == "main"
    assert workspace["layer"] == "legacy-file"
    states = {r["name"]: r["state"] for r in workspace["repositories"]}
    assert states == {"repo-a": "clean", "repo-b": "clean", "repo-c": "detached-pinned"}


def test_status_without_workspaces(cli):
    result = cli("status")
    assert result.exit_code == 0
    assert "No workspaces found" in result.output


def test_list(initialized, cli):
    result = cli("list")
    assert result.exit_code == 0
    assert "Available Workspaces" in result.output
    assert "main (3 repositories)" in result.output


def test_sync(initialized, cli, upstreams, root):
    commit_file(upstreams["repo-a"], "upstream.txt", "new\n")
    result = cli("sync", "main")
    assert result.exit_code == 0, result.output
    assert "Syncing workspace: main" in result.output
    assert "repo-c is pinned at v1.0.0, skipping" in result.output
    assert (root / "worktrees" / "main" / "repo-a" / "upstream.txt").exists()


def test_sync_conflict_exit_code(initialized, cli, upstreams, root):
    commit_file(root / "worktrees" / "main" / "repo-a", "README.md", "local\n")
    commit_file(upstreams["repo-a"], "README.md", "upstream\n")
    result = cli("sync", "main", "--json")
    assert result.exit_code == 1
    data = json.loads(result.stdout)
    assert data["results"][0]["outcome"] == "conflict"


def test_sync_uses_current_workspace(initialized, cli, root, monkeypatch):
    monkeypatch.chdir(root / "worktrees" / "main" / "repo-b")
    result = cli("sync")
    assert result.exit_code == 0, result.output
    assert "Syncing workspace: main" in result.output


def test_sync_outside_workspace(initialized, cli, root, monkeypatch):
    monkeypatch.chdir(root)
    result = cli("sync")
    assert result.exit_code == 1
    assert "Not in workspace directory" in result.output


def test_sync_unknown_workspace(initialized, cli):
    result = cli("sync", "nope")
    assert result.exit_code == 1
    assert "Workspace not found: nope" in result.output


def test_foreach(initialized, cli, root, monkeypatch):
    monkeypatch.chdir(root / "worktrees" / "main")
    result = cli("foreach", "echo", "hello-$name")
    assert result.exit_code == 0, result.output
    assert "=== repo-a ===" in result.output
    assert "hello-repo-a" in result.output
    assert "hello-repo-c" in result.output


def test_foreach_quiet_passes_options_through(initialized, cli, root, monkeypatch):
    monkeypatch.chdir(root / "worktrees" / "main")
    result = cli("foreach", "-q", "git", "rev-parse", "--abbrev-ref", "HEAD")
    assert result.exit_code == 0, result.output
    assert "===" not in result.output
    assert result.stdout.split() == ["main", "develop", "HEAD"]


def test_foreach_failure_exit_code(initialized, cli, root, monkeypatch):
    monkeypatch.chdir(root / "worktrees" / "main")
    result = cli("foreach", "-q", 'test "$name" = repo-a')
    assert result.exit_code == 1
    assert "2 of 3 commands failed" in result.output


def test_clean(initialized, cli, root):
    result = cli("clean", "main", "--yes")
    assert result.exit_code == 0, result.output
    assert "Workspace removed: main" in result.output
    assert not (root / "worktrees" / "main").exists()
    assert (root / "repos" / "repo-a").is_dir()


def test_clean_aborted(initialized, cli, root):
    result = cli("clean", "main", input="n\n")
    assert "Delete workspace: main?" in result.output
    assert "Aborted" in result.output
    assert (root / "worktrees" / "main" / "repo-a").is_dir()


def test_clean_unknown_workspace(cli):
    result = cli("clean", "nope", "--yes")
    assert result.exit_code == 1
    assert "Workspace not found: nope" in result.output


def test_repair_standalone(cli, scenario_config, root, upstreams):
    standalone = root / "worktrees" / "main" / "repo-a"
    standalone.parent.mkdir(parents=True)
    git("clone", "-q", str(upstreams["repo-a"]), str(standalone), cwd=root)

    result = cli("repair", "main", "repo-a", "--yes")
    assert result.exit_code == 0, result.output
    assert "Attempting to repair repo-a in workspace main" in result.output
    assert "repo-a is a standalone repository, not a worktree" in result.output
    assert (standalone / ".git").is_file()


def test_repair_standalone_declined(cli, scenario_config, root, upstreams):
    standalone = root / "worktrees" / "main" / "repo-a"
    standalone.parent.mkdir(parents=True)
    git("clone", "-q", str(upstreams["repo-a"]), str(standalone), cwd=root)

    result = cli("repair", "main", "repo-a", input="n\n")
    assert "Aborted" in result.output
    assert (standalone / ".git").is_dir()


def test_repair_unconfigured_repository(cli, scenario_config):
    result = cli("repair", "main", "unknown")
    assert result.exit_code == 1
    assert "not configured" in result.output


# =============================================================================
# config
# =============================================================================


def test_config_show_legacy(cli, scenario_config):
    result = cli("config", "show", "main")
    assert result.exit_code == 0
    assert "Legacy configuration (from workspace.conf):" in result.output
    assert "pinned at v1.0.0" in result.output


def test_config_show_empty(cli):
    result = cli("config", "show")
    assert result.exit_code == 0
    assert "No repositories configured" in result.output


def test_config_set_and_show(cli, git_root, scenario_config, upstreams):
    result = cli("config", "set", "feature", str(upstreams["repo-b"]), "develop")
    assert result.exit_code == 0, result.output
    assert f"Set repository config for feature: {upstreams['repo-b']} develop" in result.output

    shown = cli("config", "show", "feature")
    assert "Workspace-specific repositories:" in shown.output
    assert "repo-a" not in shown.output

    # other workspaces keep using the legacy file
    assert "Legacy configuration" in cli("config", "show", "main").output


def test_config_set_default(cli, git_root, upstreams):
    result = cli("config", "set-default", str(upstreams["repo-a"]))
    assert result.exit_code == 0, result.output
    assert "Set default repository config:" in result.output
    shown = cli("config", "show", "anything", "--json")
    data = json.loads(shown.stdout)
    assert data["layer"] == "workspace-default"
    assert [r["branch"] for r in data["repositories"]] == ["anything"]


def test_config_set_requires_git_root(cli, upstreams):
    result = cli("config", "set", "main", str(upstreams["repo-a"]))
    assert result.exit_code == 1
    assert "not a git repository" in result.output


def test_config_set_ref_without_branch(cli, git_root):
    result = cli("config", "set-default", "https://example.com/a.git", "", "v1.0")
    assert result.exit_code == 1
    assert "branch is required" in result.output


def test_config_import(cli, git_root, scenario_config):
    result = cli("config", "import", "main")
    assert result.exit_code == 0, result.output
    assert "Importing configuration from" in result.output
    assert "Import complete: 3 repositories" in result.output
    assert "Workspace-specific repositories:" in cli("config", "show", "main").output


def test_config_import_missing_file(cli, git_root):
    result = cli("config", "import", "main", "nope.conf")
    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_config_help(cli):
    result = cli("config", "help")
    assert result.exit_code == 0
    assert "set-default <url> [branch] [ref]" in result.output
    assert "Precedence" in result.output


def test_init_with_workspace_specific_config(cli, git_root, scenario_config, upstreams):
    assert cli("config", "set", "feature-test", str(upstreams["repo-a"])).exit_code == 0
    result = cli("init", "feature-test")
    assert result.exit_code == 0, result.output
    workspace = git_root / "worktrees" / "feature-test"
    assert [p.name for p in workspace.iterdir()] == ["repo-a"]
    assert current_branch(workspace / "repo-a") == "feature-test"


def test_empty_configuration(cli, root):
    (root / "workspace.conf").write_text("# nothing yet\n")
    result = cli("init")
    assert result.exit_code == 0, result.output
    assert "No repositories configured" in result.output
    workspace = root / "worktrees" / "main"
    assert workspace.is_dir()
    assert list(workspace.iterdir()) == []

    status = cli("status")
    assert status.exit_code == 0
    assert "main: 0 repositories" in status.output
