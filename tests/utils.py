"""Helpers for building git repositories in tests."""

from __future__ import annotations

import subprocess
from pathlib import Path

BRANCHES = ("main", "develop", "feature-test")


def git(*args: str, cwd: Path) -> str:
    """Run git in ``cwd``, fail the test on error and return stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def call_git_addcommit(cwd: Path, paths: list[str] | None = None, *, msg: str | None = None):
    git("add", *(paths or ["."]), cwd=cwd)
    git("commit", "--no-gpg-sign", "-q", "-m", msg or "done by call_git_addcommit()", cwd=cwd)


def commit_file(repo: Path, name: str, content: str, *, branch: str | None = None) -> str:
    """Commit ``name`` with ``content``, optionally on another branch, and return the commit."""
    previous = git("symbolic-ref", "--short", "HEAD", cwd=repo) if branch else None
    if branch:
        git("checkout", "-q", branch, cwd=repo)
    (repo / name).write_text(content)
    call_git_addcommit(repo, [name], msg=f"update {name}")
    commit = git("rev-parse", "HEAD", cwd=repo)
    if previous:
        git("checkout", "-q", previous, cwd=repo)
    return commit


def make_upstream(base: Path, name: str) -> Path:
    """An upstream repository with main, develop and feature-test branches and tag v1.0.0."""
    path = base / name
    path.mkdir(parents=True)
    git("init", "-q", "-b", "main", cwd=path)
    (path / "README.md").write_text(f"# {name}\n")
    call_git_addcommit(path, msg="initial commit")
    git("tag", "v1.0.0", cwd=path)
    for branch in BRANCHES[1:]:
        git("branch", branch, cwd=path)
    commit_file(path, "develop.txt", "develop work\n", branch="develop")
    return path


def write_legacy_config(root: Path, lines: list[str]) -> Path:
    path = root / "workspace.conf"
    path.write_text("\n".join(lines) + "\n")
    return path


def current_branch(checkout: Path) -> str:
    return git("rev-parse", "--abbrev-ref", "HEAD", cwd=checkout)
