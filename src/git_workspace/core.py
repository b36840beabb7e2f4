"""
git-workspace: Reproducible multi-repository workspaces on top of git worktrees.

Every repository is cloned once into ``repos/<name>``; each workspace gets a
lightweight checkout (a git worktree) of it in ``worktrees/<workspace>/<name>``,
on the branch or pinned ref its configuration asks for.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn

from ._version import __version__
from .config import (
    LEGACY_FILE_NAME,
    ConfigStore,
    RepoSpec,
    Resolution,
    resolve,
    validate_workspace_name,
)
from .errors import (
    BackendError,
    ConflictError,
    Locked,
    NetworkError,
    NotInWorkspace,
    PathExists,
    RefNotFound,
    RepositoryNotFound,
    RepoStateError,
    WorkspaceError,
    WorkspaceNotFound,
)
from .formatters import OutputFormatter
from .runner import call_git, call_git_success

lgr = logging.getLogger("git_workspace.manager")

REPOS_DIR = "repos"
WORKTREES_DIR = "worktrees"
SUPERPROJECT_BRANCH_PREFIX = "workspace/"
IMPORT_REF_PREFIX = "refs/imported"

# =============================================================================
# Domain Models
# =============================================================================


class RepositoryState(StrEnum):
    """On-disk condition of a checkout, derived by inspection."""

    CLEAN = "clean"
    MODIFIED = "modified"
    DETACHED_PINNED = "detached-pinned"
    DETACHED_UNPINNED = "detached-unpinned"
    UNINITIALIZED = "uninitialized"
    BROKEN = "broken"
    INVALID = "invalid"
    MISSING = "missing"


HEALTHY_STATES = frozenset(
    {
        RepositoryState.CLEAN,
        RepositoryState.MODIFIED,
        RepositoryState.DETACHED_PINNED,
        RepositoryState.DETACHED_UNPINNED,
    }
)
REPAIRABLE_STATES = frozenset(
    {RepositoryState.INVALID, RepositoryState.BROKEN, RepositoryState.UNINITIALIZED}
)


class CheckoutKind(StrEnum):
    """What a checkout directory is linked to."""

    ABSENT = "absent"  # directory does not exist
    UNLINKED = "unlinked"  # no .git entry at all
    DANGLING = "dangling"  # .git file that cannot be followed
    WORKTREE = "worktree"
    STANDALONE = "standalone"


class Outcome(StrEnum):
    """Per-repository result of a workspace operation."""

    CREATED = "created"
    SKIPPED_EXISTS = "skipped-exists"
    REPAIRED = "repaired"
    UPDATED = "updated"
    SKIPPED_PINNED = "skipped-pinned"
    CONFLICT = "conflict"
    REMOVED = "removed"
    OK = "ok"
    FAILED = "failed"


FAILING_OUTCOMES = frozenset({Outcome.FAILED, Outcome.CONFLICT})


class MergeResult(StrEnum):
    UP_TO_DATE = "up-to-date"
    FAST_FORWARD = "fast-forward"
    MERGED = "merged"
    NO_UPSTREAM = "no-upstream"


class WorkspaceCreation(StrEnum):
    EXISTING = "existing"
    DIRECTORY = "directory"
    SUPERPROJECT = "superproject"


@dataclass
class CheckoutLink:
    """Result of classifying a checkout directory."""

    kind: CheckoutKind
    admin_dir: Path | None = None
    common_dir: Path | None = None
    reason: str = ""


@dataclass
class HeadInfo:
    """Where HEAD of a checkout points."""

    readable: bool
    symbolic: bool = False
    target: str = ""
    commit: str = ""
    resolvable: bool = False
    error: str = ""

    @property
    def branch(self) -> str:
        return self.target.removeprefix("refs/heads/") if self.symbolic else ""


@dataclass
class WorkingTreeInfo:
    """Branch tracking and change counts from ``git status --porcelain=v2``."""

    branch: str = ""
    upstream: str = ""
    ahead: int = 0
    behind: int = 0
    staged_count: int = 0
    unstaged_count: int = 0
    untracked_count: int = 0

    @property
    def is_dirty(self) -> bool:
        return self.staged_count > 0 or self.unstaged_count > 0 or self.untracked_count > 0


@dataclass
class RepositoryStatus:
    """Complete status of one checkout in a workspace."""

    path: Path
    name: str
    state: RepositoryState = RepositoryState.MISSING
    kind: CheckoutKind = CheckoutKind.ABSENT
    configured: bool = True
    branch: str = ""
    commit: str = ""
    pinned_ref: str | None = None
    upstream: str = ""
    ahead_count: int = 0
    behind_count: int = 0
    staged_count: int = 0
    unstaged_count: int = 0
    untracked_count: int = 0
    error_message: str = ""

    @property
    def is_dirty(self) -> bool:
        return self.staged_count > 0 or self.unstaged_count > 0 or self.untracked_count > 0

    @property
    def is_healthy(self) -> bool:
        return self.state in HEALTHY_STATES

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        return {
            "path": str(self.path),
            "name": self.name,
            "state": self.state.value,
            "kind": self.kind.value,
            "configured": self.configured,
            "branch": self.branch,
            "commit": self.commit,
            "pinned_ref": self.pinned_ref,
            "upstream": self.upstream,
            "ahead_count": self.ahead_count,
            "behind_count": self.behind_count,
            "staged_count": self.staged_count,
            "unstaged_count": self.unstaged_count,
            "untracked_count": self.untracked_count,
            "error_message": self.error_message,
        }


@dataclass
class OperationResult:
    """Result of a workspace operation on one repository."""

    path: Path
    name: str
    outcome: Outcome
    operation: str
    message: str = ""
    error: str = ""

    @property
    def success(self) -> bool:
        return self.outcome not in FAILING_OUTCOMES

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "name": self.name,
            "outcome": self.outcome.value,
            "success": self.success,
            "operation": self.operation,
            "message": self.message,
            "error": self.error,
        }


@dataclass
class WorkspaceInfo:
    """A workspace found below ``worktrees/``."""

    name: str
    path: Path
    repo_count: int = 0
    superproject: bool = False
    current: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "repo_count": self.repo_count,
            "superproject": self.superproject,
            "current": self.current,
        }


@dataclass
class WorkspaceReport:
    """Status of every checkout of one workspace."""

    info: WorkspaceInfo
    resolution: Resolution
    statuses: list[RepositoryStatus] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            **self.info.to_dict(),
            "layer": self.resolution.layer.value if self.resolution.layer else None,
            "repositories": [s.to_dict() for s in self.statuses],
        }


def has_failures(results: list[OperationResult]) -> bool:
    return any(not r.success for r in results)


# =============================================================================
# Git Backend (Low-level)
# =============================================================================


def _ceiling_env(path: Path) -> dict[str, str]:
    # keep git from walking up into an enclosing repository
    return {"GIT_CEILING_DIRECTORIES": str(path.resolve().parent)}


class GitBackend:
    """Version-control primitives the workspace manager is built from."""

    def _in(self, path: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return call_git(list(args), cwd=path, check=check, extra_env=_ceiling_env(path))

    def ref_exists(self, repo: Path, ref: str) -> bool:
        return call_git_success(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=repo)

    def has_commits(self, repo: Path) -> bool:
        result = self._in(repo, "for-each-ref", "--count=1", "--format=%(objectname)")
        return bool(result.stdout.strip())

    def clone(self, url: str, dest: Path) -> Path:
        """Create the central repository for ``url`` at ``dest``.

        The clone is bare, with branches mirrored under ``refs/remotes/origin``
        so that worktree checkouts can track them. It is built in a temporary
        sibling directory and renamed into place, so an interrupted clone
        leaves nothing behind.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.parent / f".{dest.name}.clone-{uuid.uuid4().hex[:8]}"
        try:
            try:
                call_git(["clone", "--bare", "--quiet", url, str(tmp)])
            except BackendError as e:
                raise self._clone_error(e) from e
            call_git(
                ["config", "remote.origin.fetch", "+refs/heads/*:refs/remotes/origin/*"],
                cwd=tmp,
            )
            call_git(["fetch", "--quiet", "origin"], cwd=tmp)
            tmp.rename(dest)
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)
        lgr.info("Cloned %s into %s", url, dest)
        return dest

    @staticmethod
    def _clone_error(error: BackendError) -> BackendError:
        stderr = error.stderr.lower()
        not_found = (
            "does not exist",
            "not found",
            "does not appear to be a git repository",
            "not a git repository",
        )
        if type(error) is not BackendError:
            # timeouts keep their own type
            return error
        cls = RepositoryNotFound if any(s in stderr for s in not_found) else NetworkError
        return cls(error.cmd, error.returncode, error.stderr)

    def add_checkout(self, central: Path, path: Path, ref: str, detached: bool = False) -> None:
        """Create a worktree of ``central`` at ``path``.

        With ``detached`` the worktree sits on ``ref`` as a detached HEAD;
        otherwise ``ref`` is a branch name, created from ``origin/<ref>`` or
        from the central repository's HEAD when it does not exist yet.
        """
        if path.exists() and (not path.is_dir() or any(path.iterdir())):
            raise PathExists(["git", "worktree", "add", str(path)], None, f"{path} already exists")
        path.parent.mkdir(parents=True, exist_ok=True)

        remote_ref = f"refs/remotes/origin/{ref}"
        if detached:
            if not self.ref_exists(central, ref):
                raise RefNotFound(["git", "rev-parse", ref], 1, f"unknown revision {ref}")
            args = ["worktree", "add", "--quiet", "--detach", str(path), ref]
        elif self.ref_exists(central, f"refs/heads/{ref}"):
            args = ["worktree", "add", "--quiet", str(path), ref]
        elif self.ref_exists(central, remote_ref):
            args = ["worktree", "add", "--quiet", "--track", "-b", ref, str(path), remote_ref]
        elif self.has_commits(central):
            args = ["worktree", "add", "--quiet", "-b", ref, str(path)]
        else:
            args = ["worktree", "add", "--quiet", "--orphan", "-b", ref, str(path)]
        call_git(args, cwd=central)

        if not detached and self.ref_exists(central, remote_ref):
            call_git(["branch", "--set-upstream-to", f"origin/{ref}", ref], cwd=path, check=False)

    def remove_checkout(self, central: Path, path: Path) -> None:
        cmd = ["worktree", "remove", "--force", str(path)]
        result = call_git(cmd, cwd=central, check=False)
        if result.returncode != 0:
            if "locked" in result.stderr:
                raise Locked(["git", *cmd], result.returncode, result.stderr)
            raise BackendError(["git", *cmd], result.returncode, result.stderr)
        self.prune(central)

    def prune(self, central: Path) -> None:
        call_git(["worktree", "prune"], cwd=central, check=False)

    def fetch(self, repo: Path, branch: str) -> bool:
        """Fetch ``branch`` from origin into ``refs/remotes/origin``.

        Returns False when origin has no such branch, which is normal for a
        branch that so far only exists locally.
        """
        refspec = f"+refs/heads/{branch}:refs/remotes/origin/{branch}"
        result = call_git(["fetch", "--quiet", "origin", refspec], cwd=repo, check=False)
        if result.returncode == 0:
            return True
        if "couldn't find remote ref" in result.stderr:
            return False
        raise NetworkError(["git", "fetch", "origin", refspec], result.returncode, result.stderr)

    def merge_or_fast_forward(self, checkout: Path, branch: str, name: str = "") -> MergeResult:
        """Bring ``origin/<branch>`` into the checkout without ever losing local work."""
        upstream = f"refs/remotes/origin/{branch}"
        if self._in(checkout, "merge-base", "--is-ancestor", upstream, "HEAD", check=False).returncode == 0:
            return MergeResult.UP_TO_DATE
        try:
            if self._in(checkout, "merge", "--ff-only", "--quiet", upstream, check=False).returncode == 0:
                return MergeResult.FAST_FORWARD
            result = self._in(checkout, "merge", "--no-edit", "--quiet", upstream, check=False)
        except KeyboardInterrupt:
            self._abort_merge(checkout)
            raise
        if result.returncode == 0:
            return MergeResult.MERGED

        output = f"{result.stdout}\n{result.stderr}"
        in_progress = self._abort_merge(checkout)
        if in_progress or "CONFLICT" in output or "would be overwritten" in output:
            raise ConflictError(name or checkout.name, branch, result.stderr.strip())
        raise BackendError(["git", "merge", upstream], result.returncode, result.stderr)

    def _abort_merge(self, checkout: Path) -> bool:
        if self._in(checkout, "rev-parse", "-q", "--verify", "MERGE_HEAD", check=False).returncode != 0:
            return False
        self._in(checkout, "merge", "--abort", check=False)
        return True

    def inspect_head(self, checkout: Path) -> HeadInfo:
        result = self._in(checkout, "symbolic-ref", "-q", "HEAD", check=False)
        if result.returncode == 0:
            head = HeadInfo(readable=True, symbolic=True, target=result.stdout.strip())
        elif result.returncode == 1:
            head = HeadInfo(readable=True, symbolic=False)
        else:
            return HeadInfo(readable=False, error=result.stderr.strip())
        verify = self._in(checkout, "rev-parse", "-q", "--verify", "HEAD^{commit}", check=False)
        head.resolvable = verify.returncode == 0
        head.commit = verify.stdout.strip()
        if not head.symbolic:
            head.target = head.commit
        return head

    def working_tree_status(self, checkout: Path) -> WorkingTreeInfo:
        """Branch, ahead/behind and change counts in one command."""
        info = WorkingTreeInfo()
        result = self._in(checkout, "status", "--porcelain=v2", "--branch", "--untracked-files=normal")
        for line in result.stdout.splitlines():
            if line.startswith("# branch.head "):
                info.branch = line[len("# branch.head ") :]
            elif line.startswith("# branch.upstream "):
                info.upstream = line[len("# branch.upstream ") :]
            elif line.startswith("# branch.ab "):
                # Format: # branch.ab +<ahead> -<behind>
                parts = line.split()
                if len(parts) == 4:
                    info.ahead = abs(int(parts[2]))
                    info.behind = abs(int(parts[3]))
            elif line.startswith(("1 ", "2 ")):
                xy = line[2:4]
                if xy[0] != ".":
                    info.staged_count += 1
                if xy[1] != ".":
                    info.unstaged_count += 1
            elif line.startswith("u "):
                info.staged_count += 1
                info.unstaged_count += 1
            elif line.startswith("? "):
                info.untracked_count += 1
        return info

    def local_branches(self, repo: Path) -> list[str]:
        result = self._in(repo, "for-each-ref", "--format=%(refname:short)", "refs/heads/")
        return result.stdout.split()

    def import_refs(self, central: Path, source: Path, namespace: str) -> None:
        """Copy every branch of ``source`` into ``central`` below ``namespace``.

        Tags are fetched without overwriting existing ones.
        """
        call_git(["fetch", "--quiet", str(source), f"+refs/heads/*:{namespace}/*"], cwd=central)
        call_git(["fetch", "--quiet", str(source), "refs/tags/*:refs/tags/*"], cwd=central, check=False)

    def create_branch(self, repo: Path, branch: str, start: str) -> None:
        call_git(["branch", branch, start], cwd=repo)

    def has_ignored_files(self, checkout: Path) -> bool:
        result = self._in(checkout, "status", "--porcelain", "--ignored=matching")
        return any(line.startswith("!! ") for line in result.stdout.splitlines())


# =============================================================================
# Repository State Inspector
# =============================================================================


def classify_checkout(path: Path) -> CheckoutLink:
    """Classify what ``path`` is linked to without running git."""
    if not path.exists():
        return CheckoutLink(CheckoutKind.ABSENT)
    dotgit = path / ".git"
    if dotgit.is_dir():
        return CheckoutLink(CheckoutKind.STANDALONE, admin_dir=dotgit, common_dir=dotgit)
    if dotgit.is_symlink() and not dotgit.exists():
        return CheckoutLink(CheckoutKind.DANGLING, reason=".git is a dangling symlink")
    if not dotgit.exists():
        return CheckoutLink(CheckoutKind.UNLINKED, reason="no .git entry")

    try:
        content = dotgit.read_text().strip()
    except OSError as e:
        return CheckoutLink(CheckoutKind.DANGLING, reason=f"cannot read .git: {e.strerror}")
    if not content.startswith("gitdir:"):
        return CheckoutLink(CheckoutKind.DANGLING, reason=".git file has no gitdir line")
    admin_dir = Path(content[len("gitdir:") :].strip())
    if not admin_dir.is_absolute():
        admin_dir = path / admin_dir
    if not admin_dir.is_dir():
        return CheckoutLink(CheckoutKind.DANGLING, reason=f"{admin_dir} does not exist")

    common_dir = admin_dir
    commondir_file = admin_dir / "commondir"
    if commondir_file.is_file():
        try:
            common_dir = (admin_dir / commondir_file.read_text().strip()).resolve()
        except OSError as e:
            return CheckoutLink(CheckoutKind.DANGLING, reason=f"cannot read commondir: {e.strerror}")
        if not common_dir.is_dir():
            return CheckoutLink(CheckoutKind.DANGLING, reason=f"{common_dir} does not exist")
    return CheckoutLink(CheckoutKind.WORKTREE, admin_dir=admin_dir, common_dir=common_dir)


class RepositoryInspector:
    """Read-only classification of checkouts into a ``RepositoryState``."""

    def __init__(self, backend: GitBackend):
        self.backend = backend

    def inspect(self, path: Path, spec: RepoSpec | None = None) -> RepositoryStatus:
        """Determine the state of the checkout at ``path``.

        Structural problems are checked before content, so a checkout that
        is both broken and dirty reports ``broken``.
        """
        link = classify_checkout(path)
        status = RepositoryStatus(
            path=path,
            name=spec.name if spec else path.name,
            kind=link.kind,
            configured=spec is not None,
            pinned_ref=spec.pinned_ref if spec else None,
        )
        if link.kind == CheckoutKind.ABSENT:
            status.state = RepositoryState.MISSING
            return status
        if link.kind in (CheckoutKind.UNLINKED, CheckoutKind.DANGLING):
            status.state = RepositoryState.INVALID
            status.error_message = link.reason
            return status

        try:
            head = self.backend.inspect_head(path)
        except BackendError as e:
            head = HeadInfo(readable=False, error=e.reason)
        if not head.readable:
            status.state = RepositoryState.BROKEN
            status.error_message = head.error or "HEAD is unreadable"
            return status
        status.branch = head.branch
        status.commit = head.commit[:12]

        try:
            tree = self.backend.working_tree_status(path)
            has_commits = head.resolvable or self.backend.has_commits(path)
        except BackendError as e:
            status.state = RepositoryState.BROKEN
            status.error_message = e.reason
            return status

        status.upstream = tree.upstream
        status.ahead_count = tree.ahead
        status.behind_count = tree.behind
        status.staged_count = tree.staged_count
        status.unstaged_count = tree.unstaged_count
        status.untracked_count = tree.untracked_count

        if not head.resolvable:
            if head.symbolic and not has_commits:
                status.state = RepositoryState.UNINITIALIZED
            else:
                status.state = RepositoryState.BROKEN
                status.error_message = f"HEAD points at unresolvable {head.target or 'commit'}"
        elif not head.symbolic:
            if spec is not None and spec.is_pinned:
                status.state = RepositoryState.DETACHED_PINNED
            else:
                status.state = RepositoryState.DETACHED_UNPINNED
        elif tree.is_dirty:
            status.state = RepositoryState.MODIFIED
        else:
            status.state = RepositoryState.CLEAN
        return status


# =============================================================================
# Workspace Layout
# =============================================================================


def _has_git_entry(path: Path) -> bool:
    dotgit = path / ".git"
    return dotgit.exists() or dotgit.is_symlink()


def looks_like_workspace(path: Path) -> bool:
    """A workspace directory is a superproject worktree, holds a checkout, or is empty."""
    if not path.is_dir():
        return False
    if _has_git_entry(path):
        return True
    children = [child for child in path.iterdir() if not child.name.startswith(".")]
    if not children:
        return True
    return any(child.is_dir() and _has_git_entry(child) for child in children)


def find_root(cwd: Path) -> Path:
    """Locate the workspace root from ``cwd``.

    The nearest directory holding ``worktrees/`` wins, then the nearest one
    holding the legacy configuration file; ``cwd`` itself is the fallback.
    """
    candidates = [cwd, *cwd.parents]
    for candidate in candidates:
        if (candidate / WORKTREES_DIR).is_dir():
            return candidate
    for candidate in candidates:
        if (candidate / LEGACY_FILE_NAME).is_file():
            return candidate
    return cwd


@dataclass
class WorkspaceLayout:
    """Paths below a workspace root."""

    root: Path
    legacy_file: Path

    @classmethod
    def discover(
        cls,
        root: Path | None = None,
        legacy_file: Path | None = None,
        cwd: Path | None = None,
    ) -> WorkspaceLayout:
        """Resolve the root from an explicit path, ``$WORKSPACE_ROOT`` or ``cwd``."""
        cwd = (cwd or Path.cwd()).resolve()
        if root is None and os.environ.get("WORKSPACE_ROOT"):
            root = Path(os.environ["WORKSPACE_ROOT"])
        resolved_root = root.expanduser().resolve() if root else find_root(cwd)
        if legacy_file is None and os.environ.get("WORKSPACE_CONFIG"):
            legacy_file = Path(os.environ["WORKSPACE_CONFIG"])
        legacy = legacy_file.expanduser() if legacy_file else resolved_root / LEGACY_FILE_NAME
        return cls(root=resolved_root, legacy_file=legacy)

    @property
    def repos_dir(self) -> Path:
        return self.root / REPOS_DIR

    @property
    def worktrees_dir(self) -> Path:
        return self.root / WORKTREES_DIR

    def central_path(self, name: str) -> Path:
        return self.repos_dir / name

    def workspace_path(self, workspace: str) -> Path:
        return self.worktrees_dir / workspace

    def checkout_path(self, workspace: str, name: str) -> Path:
        return self.workspace_path(workspace) / name

    def workspace_exists(self, workspace: str) -> bool:
        return self.workspace_path(workspace).is_dir()

    def config_store(self) -> ConfigStore:
        return ConfigStore(self.root, self.legacy_file)

    def list_workspaces(self) -> list[str]:
        """Names of all workspaces, nested names joined with ``/``."""
        if not self.worktrees_dir.is_dir():
            return []
        names: list[str] = []
        pending = [self.worktrees_dir]
        while pending:
            directory = pending.pop()
            for child in sorted(directory.iterdir()):
                if not child.is_dir() or child.name.startswith("."):
                    continue
                if looks_like_workspace(child):
                    names.append(child.relative_to(self.worktrees_dir).as_posix())
                else:
                    pending.append(child)
        return sorted(names)

    def current_workspace(self, cwd: Path | None = None) -> str:
        """Name of the workspace containing ``cwd``; raises ``NotInWorkspace``."""
        cwd = (cwd or Path.cwd()).resolve()
        try:
            parts = cwd.relative_to(self.worktrees_dir.resolve()).parts
        except ValueError:
            raise NotInWorkspace(cwd) from None
        for depth in range(1, len(parts) + 1):
            candidate = self.worktrees_dir.joinpath(*parts[:depth])
            if looks_like_workspace(candidate):
                return "/".join(parts[:depth])
        raise NotInWorkspace(cwd)

    def root_is_superproject(self) -> bool:
        """True when the root is a git repository with at least one commit."""
        return (self.root / ".git").exists() and call_git_success(
            ["rev-parse", "--verify", "--quiet", "HEAD^{commit}"], cwd=self.root
        )

    def is_superproject_worktree(self, workspace: str) -> bool:
        link = classify_checkout(self.workspace_path(workspace))
        return link.kind == CheckoutKind.WORKTREE


# =============================================================================
# Workspace Manager
# =============================================================================


class WorkspaceManager:
    """Create, update, inspect and remove the checkouts of workspaces."""

    def __init__(
        self,
        layout: WorkspaceLayout,
        backend: GitBackend | None = None,
        max_workers: int = 1,
    ):
        self.layout = layout
        self.backend = backend or GitBackend()
        self.inspector = RepositoryInspector(self.backend)
        self.max_workers = max(1, max_workers)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        """One lock per repository name, shared by everything touching its central repo."""
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def _execute_parallel(
        self,
        operation: Callable[[RepoSpec], OperationResult],
        specs: list[RepoSpec],
    ) -> list[OperationResult]:
        """Run ``operation`` for each spec; results keep configuration order."""
        if self.max_workers <= 1 or len(specs) <= 1:
            return [operation(spec) for spec in specs]

        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = [executor.submit(operation, spec) for spec in specs]
            results = [future.result() for future in futures]
        except KeyboardInterrupt:
            # repositories already in progress run to completion
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)
        return results

    def _guarded(
        self,
        operation: str,
        workspace: str,
        spec: RepoSpec,
        action: Callable[[], OperationResult],
    ) -> OperationResult:
        """Turn per-repository errors into result records."""
        path = self.layout.checkout_path(workspace, spec.name)
        try:
            with self._lock_for(spec.name):
                return action()
        except ConflictError as e:
            lgr.info("%s %s: %s", operation, spec.name, e)
            return OperationResult(
                path, spec.name, Outcome.CONFLICT, operation,
                error=f"{e}; local changes kept",
            )
        except BackendError as e:
            lgr.info("%s %s failed: %s", operation, spec.name, e)
            return OperationResult(path, spec.name, Outcome.FAILED, operation, error=e.reason)
        except (WorkspaceError, OSError) as e:
            lgr.info("%s %s failed: %s", operation, spec.name, e)
            return OperationResult(path, spec.name, Outcome.FAILED, operation, error=str(e))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def ensure_workspace_dir(self, workspace: str) -> WorkspaceCreation:
        """Create the workspace directory, as a superproject worktree when possible."""
        validate_workspace_name(workspace)
        path = self.layout.workspace_path(workspace)
        if path.exists():
            return WorkspaceCreation.EXISTING
        if self.layout.root_is_superproject():
            branch = f"{SUPERPROJECT_BRANCH_PREFIX}{workspace}"
            if self.backend.ref_exists(self.layout.root, f"refs/heads/{branch}"):
                args = ["worktree", "add", "--quiet", str(path), branch]
            else:
                args = ["worktree", "add", "--quiet", "-b", branch, str(path)]
            try:
                call_git(args, cwd=self.layout.root)
                return WorkspaceCreation.SUPERPROJECT
            except BackendError as e:
                lgr.warning("Could not create superproject worktree, using a plain directory: %s", e.reason)
                if path.exists() and not any(path.iterdir()):
                    path.rmdir()
        path.mkdir(parents=True, exist_ok=True)
        return WorkspaceCreation.DIRECTORY

    def materialize(self, workspace: str, specs: list[RepoSpec]) -> list[OperationResult]:
        """Create or repair every configured checkout of ``workspace``."""
        self.ensure_workspace_dir(workspace)
        return self._execute_parallel(
            lambda spec: self._guarded(
                "init", workspace, spec, lambda: self._materialize_repo(workspace, spec, "init")
            ),
            specs,
        )

    def repair(self, workspace: str, spec: RepoSpec) -> OperationResult:
        """Repair one checkout, converting a standalone clone into a worktree."""
        self.ensure_workspace_dir(workspace)
        return self._guarded(
            "repair",
            workspace,
            spec,
            lambda: self._materialize_repo(workspace, spec, "repair", convert_standalone=True),
        )

    def _materialize_repo(
        self,
        workspace: str,
        spec: RepoSpec,
        operation: str,
        convert_standalone: bool = False,
    ) -> OperationResult:
        path = self.layout.checkout_path(workspace, spec.name)
        status = self.inspector.inspect(path, spec)

        if status.kind == CheckoutKind.STANDALONE and (
            convert_standalone or status.state in REPAIRABLE_STATES
        ):
            return self._convert_standalone(workspace, spec, status)
        if status.state in HEALTHY_STATES:
            message = f"exists ({status.state}), skipping"
            if status.kind == CheckoutKind.STANDALONE:
                message = "standalone repository exists, skipping; run repair to convert it"
            return OperationResult(path, spec.name, Outcome.SKIPPED_EXISTS, operation, message=message)
        if status.state in REPAIRABLE_STATES:
            return self._repair_checkout(spec, status)

        central = self._ensure_central(spec)
        self._create_checkout(central, path, spec)
        return OperationResult(
            path, spec.name, Outcome.CREATED, operation, message=self._placement(spec)
        )

    @staticmethod
    def _placement(spec: RepoSpec) -> str:
        if spec.is_pinned:
            return f"detached at {spec.pinned_ref}"
        return f"on branch {spec.branch}"

    def _ensure_central(self, spec: RepoSpec) -> Path:
        central = self.layout.central_path(spec.name)
        if not central.exists():
            self.backend.clone(spec.url, central)
        return central

    def _create_checkout(self, central: Path, path: Path, spec: RepoSpec) -> None:
        existed = path.exists()
        try:
            if spec.is_pinned:
                self.backend.add_checkout(central, path, spec.pinned_ref, detached=True)
            else:
                self.backend.add_checkout(central, path, spec.branch)
        except BaseException:
            # never leave a half-created checkout behind
            if not existed and path.exists():
                self._discard_checkout(central, path)
            raise

    def _discard_checkout(self, central: Path, path: Path) -> None:
        try:
            self.backend.remove_checkout(central, path)
        except Locked:
            raise
        except BackendError as e:
            lgr.debug("worktree remove failed for %s, deleting directly: %s", path, e)
            if path.exists():
                shutil.rmtree(path)
            self.backend.prune(central)

    @staticmethod
    def _set_aside(path: Path, suffix: str) -> Path | None:
        """Move a directory out of the way, or delete it when only ``.git`` is left."""
        leftovers = [child for child in path.iterdir() if child.name != ".git"]
        if not leftovers:
            shutil.rmtree(path)
            return None
        target = path.with_name(f"{path.name}.{suffix}")
        counter = 1
        while target.exists():
            counter += 1
            target = path.with_name(f"{path.name}.{suffix}-{counter}")
        path.rename(target)
        return target

    def _repair_checkout(self, spec: RepoSpec, status: RepositoryStatus) -> OperationResult:
        """Recreate an invalid, broken or uninitialized worktree from its central repo."""
        path = status.path
        central = self._ensure_central(spec)
        if status.state == RepositoryState.UNINITIALIZED and not self.backend.has_commits(central):
            raise RepoStateError(spec.name, status.state, "the repository has no commits yet")

        kept = None
        if status.kind == CheckoutKind.WORKTREE:
            self._discard_checkout(central, path)
        else:
            kept = self._set_aside(path, "orphaned")
            self.backend.prune(central)
        self._create_checkout(central, path, spec)

        message = f"recreated {status.state} checkout {self._placement(spec)}"
        if kept is not None:
            message += f"; previous contents moved to {kept.name}"
        return OperationResult(path, spec.name, Outcome.REPAIRED, "repair", message=message)

    def _convert_standalone(
        self, workspace: str, spec: RepoSpec, status: RepositoryStatus
    ) -> OperationResult:
        """Re-register a standalone clone as a worktree of the central repository.

        Every branch of the clone is kept in the central repository below
        ``refs/imported/<workspace>/<name>``; the configured branch is
        created from the clone's branch of the same name when the central
        repository does not have it yet.
        """
        path = status.path
        if status.state == RepositoryState.BROKEN:
            raise RepoStateError(spec.name, status.state, "standalone repository is unreadable")
        if status.is_dirty:
            raise RepoStateError(
                spec.name,
                RepositoryState.MODIFIED,
                "standalone repository has uncommitted changes; commit or stash them first",
            )

        central = self._ensure_central(spec)
        namespace = f"{IMPORT_REF_PREFIX}/{workspace}/{spec.name}"
        if self.backend.has_commits(path):
            self.backend.import_refs(central, path, namespace)
            if (
                not spec.is_pinned
                and not self.backend.ref_exists(central, f"refs/heads/{spec.branch}")
                and self.backend.ref_exists(central, f"{namespace}/{spec.branch}")
            ):
                self.backend.create_branch(central, spec.branch, f"{namespace}/{spec.branch}")

        keep_copy = self.backend.has_ignored_files(path)
        aside = self._set_aside(path, "standalone")
        try:
            self._create_checkout(central, path, spec)
        except BaseException:
            if aside is not None and not path.exists():
                aside.rename(path)
            raise
        message = f"converted standalone repository to worktree {self._placement(spec)}"
        if aside is not None and keep_copy:
            message += f"; ignored files remain in {aside.name}"
        elif aside is not None:
            shutil.rmtree(aside)
        return OperationResult(path, spec.name, Outcome.REPAIRED, "repair", message=message)

    def clean(self, workspace: str) -> list[OperationResult]:
        """Remove every checkout of ``workspace`` and then the workspace directory.

        Central repositories are never touched. Anything in the workspace
        that is not a worktree (standalone clones, set-aside copies, other
        files) is reported as a failure and left in place together with the
        workspace directory.
        """
        path = self.layout.workspace_path(workspace)
        if not path.is_dir():
            raise WorkspaceNotFound(workspace)

        superproject = self.layout.is_superproject_worktree(workspace)
        results: list[OperationResult] = []
        for child in sorted(path.iterdir()):
            if superproject and child.name == ".git":
                continue
            link = classify_checkout(child)
            if link.kind != CheckoutKind.WORKTREE or link.common_dir is None:
                if not superproject:
                    results.append(
                        OperationResult(
                            child, child.name, Outcome.FAILED, "clean",
                            error="not a worktree checkout, left in place",
                        )
                    )
                continue
            central = link.common_dir
            try:
                with self._lock_for(child.name):
                    self.backend.remove_checkout(central, child)
            except BackendError as e:
                results.append(
                    OperationResult(child, child.name, Outcome.FAILED, "clean", error=e.reason)
                )
                continue
            results.append(OperationResult(child, child.name, Outcome.REMOVED, "clean"))

        if has_failures(results):
            return results

        if superproject:
            # without --force git refuses when untracked or modified files remain
            removed = call_git(["worktree", "remove", str(path)], cwd=self.layout.root, check=False)
            if removed.returncode != 0:
                error = BackendError(["git", "worktree", "remove"], removed.returncode, removed.stderr)
                results.append(
                    OperationResult(path, workspace, Outcome.FAILED, "clean", error=error.reason)
                )
                return results
            call_git(["worktree", "prune"], cwd=self.layout.root, check=False)
        else:
            try:
                path.rmdir()
            except OSError as e:
                results.append(
                    OperationResult(path, workspace, Outcome.FAILED, "clean", error=str(e))
                )
                return results

        if self.layout.repos_dir.is_dir():
            for central in sorted(self.layout.repos_dir.iterdir()):
                if central.is_dir() and not central.name.startswith("."):
                    self.backend.prune(central)

        # drop parents left empty by nested workspace names
        parent = path.parent
        while parent != self.layout.worktrees_dir and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent
        return results

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def sync(self, workspace: str, specs: list[RepoSpec]) -> list[OperationResult]:
        """Fetch and merge upstream changes into every HEAD-tracking checkout."""
        if not self.layout.workspace_exists(workspace):
            raise WorkspaceNotFound(workspace)

        def operation(spec: RepoSpec) -> OperationResult:
            if spec.is_pinned:
                return OperationResult(
                    self.layout.checkout_path(workspace, spec.name),
                    spec.name,
                    Outcome.SKIPPED_PINNED,
                    "sync",
                    message=f"{spec.name} is pinned at {spec.pinned_ref}, skipping",
                )
            return self._guarded("sync", workspace, spec, lambda: self._sync_repo(workspace, spec))

        return self._execute_parallel(operation, specs)

    def _sync_repo(self, workspace: str, spec: RepoSpec) -> OperationResult:
        path = self.layout.checkout_path(workspace, spec.name)
        status = self.inspector.inspect(path, spec)
        if status.state not in (RepositoryState.CLEAN, RepositoryState.MODIFIED):
            raise RepoStateError(spec.name, status.state, status.error_message)
        if status.branch != spec.branch:
            raise RepoStateError(
                spec.name, "on another branch", f"{status.branch}, expected {spec.branch}"
            )

        fetch_target = path if status.kind == CheckoutKind.STANDALONE else self.layout.central_path(spec.name)
        if not fetch_target.is_dir():
            raise RepoStateError(spec.name, RepositoryState.MISSING, "central repository is missing")
        lgr.info("Updating %s", spec.name)
        if not self.backend.fetch(fetch_target, spec.branch):
            merge = MergeResult.NO_UPSTREAM
        else:
            merge = self.backend.merge_or_fast_forward(path, spec.branch, spec.name)
        messages = {
            MergeResult.UP_TO_DATE: "already up to date",
            MergeResult.FAST_FORWARD: f"fast-forwarded to origin/{spec.branch}",
            MergeResult.MERGED: f"merged origin/{spec.branch}",
            MergeResult.NO_UPSTREAM: f"no upstream branch {spec.branch}, nothing to merge",
        }
        return OperationResult(path, spec.name, Outcome.UPDATED, "sync", message=messages[merge])

    # -------------------------------------------------------------------------
    # Foreach
    # -------------------------------------------------------------------------

    def foreach(
        self,
        workspace: str,
        specs: list[RepoSpec],
        command: str,
        on_start: Callable[[RepoSpec], Any] | None = None,
        on_output: Callable[[str], Any] | None = None,
    ) -> list[OperationResult]:
        """Run a shell command in every checkout, in configuration order.

        The command sees ``$name`` (repository name), ``$path`` (checkout
        path relative to the workspace) and ``$workspace``. Every checkout is
        visited even after a failure.
        """
        results: list[OperationResult] = []
        for spec in specs:
            path = self.layout.checkout_path(workspace, spec.name)
            if on_start is not None:
                on_start(spec)
            if not path.is_dir():
                results.append(
                    OperationResult(path, spec.name, Outcome.FAILED, "foreach", error="checkout is missing")
                )
                continue
            env = dict(
                os.environ,
                name=spec.name,
                path=spec.name,
                workspace=workspace,
                WORKSPACE_ROOT=str(self.layout.root),
            )
            completed = subprocess.run(
                command,
                shell=True,
                cwd=path,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
            if on_output is not None and completed.stdout:
                on_output(completed.stdout)
            if completed.returncode == 0:
                results.append(OperationResult(path, spec.name, Outcome.OK, "foreach"))
            else:
                results.append(
                    OperationResult(
                        path, spec.name, Outcome.FAILED, "foreach",
                        error=f"exit code {completed.returncode}",
                    )
                )
        return results

    # -------------------------------------------------------------------------
    # Status and listing
    # -------------------------------------------------------------------------

    def get_status(self, workspace: str, specs: list[RepoSpec]) -> list[RepositoryStatus]:
        """Inspect configured checkouts plus any unconfigured ones found on disk."""
        statuses = [
            self.inspector.inspect(self.layout.checkout_path(workspace, spec.name), spec)
            for spec in specs
        ]
        configured = {spec.name for spec in specs}
        path = self.layout.workspace_path(workspace)
        if path.is_dir():
            for child in sorted(path.iterdir()):
                if child.name in configured or child.name.startswith("."):
                    continue
                if child.is_dir() and _has_git_entry(child):
                    statuses.append(self.inspector.inspect(child))
        return statuses

    def get_workspace_info(self, workspace: str, cwd: Path | None = None) -> WorkspaceInfo:
        path = self.layout.workspace_path(workspace)
        repo_count = sum(
            1 for child in path.iterdir() if child.is_dir() and _has_git_entry(child)
        ) if path.is_dir() else 0
        try:
            current = self.layout.current_workspace(cwd) == workspace
        except NotInWorkspace:
            current = False
        return WorkspaceInfo(
            name=workspace,
            path=path,
            repo_count=repo_count,
            superproject=self.layout.is_superproject_worktree(workspace),
            current=current,
        )

    def list_workspaces(self, cwd: Path | None = None) -> list[WorkspaceInfo]:
        return [self.get_workspace_info(name, cwd) for name in self.layout.list_workspaces()]


# =============================================================================
# CLI Application
# =============================================================================


app = typer.Typer(
    name="workspace",
    help="Workspace Manager: reproducible multi-repository checkouts built on git worktrees.",
    no_args_is_help=True,
)
config_app = typer.Typer(
    name="config",
    help="Show and edit repository configuration.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-workspace {__version__}")
        raise typer.Exit()


def setup_logging(verbosity: int) -> None:
    """Send package log records to stderr through rich."""
    level_name = os.environ.get("WORKSPACE_LOG_LEVEL", "").upper()
    if level_name in logging.getLevelNamesMapping():
        level = logging.getLevelNamesMapping()[level_name]
    else:
        level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    logger = logging.getLogger("git_workspace")
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    logger.addHandler(handler)
    logger.setLevel(level)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    root: Path = typer.Option(
        None,
        "--root",
        help="Workspace root (default: $WORKSPACE_ROOT or discovered from the current directory)",
    ),
    config_file: Path = typer.Option(
        None,
        "--config",
        help="Legacy configuration file (default: $WORKSPACE_CONFIG or <root>/workspace.conf)",
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Log more details (repeat for debug output)",
    ),
):
    """Workspace Manager: reproducible multi-repository checkouts built on git worktrees."""
    setup_logging(verbose)
    ctx.obj = WorkspaceLayout.discover(root=root, legacy_file=config_file)


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console()
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


def fail(console: Console, error: Exception | str) -> typer.Exit:
    """Print a fatal error and build the exit to raise."""
    console.print(f"[red]Error:[/] {escape(str(error))}")
    return typer.Exit(1)


def get_layout(ctx: typer.Context) -> WorkspaceLayout:
    layout = ctx.find_object(WorkspaceLayout)
    return layout if layout is not None else WorkspaceLayout.discover()


def resolve_workspace(layout: WorkspaceLayout, workspace: str) -> Resolution:
    return resolve(layout.config_store().load(), workspace)


def _materialize_command(
    ctx: typer.Context, name: str, json_output: bool, jobs: int, operation: str
) -> tuple[WorkspaceLayout, Console]:
    console, formatter = get_console_and_formatter(json_output)
    layout = get_layout(ctx)
    manager = WorkspaceManager(layout, max_workers=jobs)
    try:
        validate_workspace_name(name)
        resolution = resolve_workspace(layout, name)
        if not json_output:
            verb = "Initializing" if operation == "init" else "Switching to"
            console.print(f"{verb} workspace: [bold]{escape(name)}[/]")
        created = manager.ensure_workspace_dir(name)
    except WorkspaceError as e:
        raise fail(console, e) from e
    if created == WorkspaceCreation.SUPERPROJECT and not json_output:
        console.print("Creating workspace as superproject worktree")

    if not json_output:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(f"Materializing {len(resolution.specs)} repositories...", total=None)
            results = manager.materialize(name, resolution.specs)
    else:
        results = manager.materialize(name, resolution.specs)

    formatter.print_operation_results(results, operation, workspace=name)
    if has_failures(results):
        raise typer.Exit(1)
    return layout, console


@app.command()
def init(
    ctx: typer.Context,
    branch: str = typer.Argument("main", help="Workspace name, also the default branch"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    jobs: int = typer.Option(1, "--jobs", "-j", min=1, help="Repositories to process in parallel"),
):
    """Create a workspace and check out every configured repository."""
    layout, console = _materialize_command(ctx, branch, json_output, jobs, "init")
    if not json_output:
        console.print(f"Workspace initialized: {escape(str(layout.workspace_path(branch)))}")


@app.command()
def switch(
    ctx: typer.Context,
    name: str = typer.Argument("main", help="Workspace to switch to"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    jobs: int = typer.Option(1, "--jobs", "-j", min=1, help="Repositories to process in parallel"),
):
    """Make sure a workspace exists and print its path (for use with cd)."""
    layout, _ = _materialize_command(ctx, name, json_output, jobs, "switch")
    if not json_output:
        print(layout.workspace_path(name))


@app.command()
def sync(
    ctx: typer.Context,
    name: str = typer.Argument(None, help="Workspace to sync (default: the current one)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    jobs: int = typer.Option(1, "--jobs", "-j", min=1, help="Repositories to process in parallel"),
):
    """Fetch and merge upstream changes for all HEAD-tracking repositories."""
    console, formatter = get_console_and_formatter(json_output)
    layout = get_layout(ctx)
    try:
        if name:
            validate_workspace_name(name)
            if not layout.workspace_exists(name):
                raise WorkspaceNotFound(name)
            workspace = name
        else:
            workspace = layout.current_workspace()
        resolution = resolve_workspace(layout, workspace)
    except WorkspaceError as e:
        raise fail(console, e) from e

    manager = WorkspaceManager(layout, max_workers=jobs)
    if not json_output:
        console.print(f"Syncing workspace: [bold]{escape(workspace)}[/]")
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task("Fetching and merging...", total=None)
            results = manager.sync(workspace, resolution.specs)
    else:
        results = manager.sync(workspace, resolution.specs)

    formatter.print_operation_results(results, "sync", workspace=workspace)
    if has_failures(results):
        raise typer.Exit(1)


@app.command()
def status(
    ctx: typer.Context,
    name: str = typer.Argument(None, help="Only show this workspace"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the state of every repository in every workspace."""
    console, formatter = get_console_and_formatter(json_output)
    layout = get_layout(ctx)
    manager = WorkspaceManager(layout)
    try:
        if name:
            validate_workspace_name(name)
            if not layout.workspace_exists(name):
                raise WorkspaceNotFound(name)
            names = [name]
        else:
            names = layout.list_workspaces()
        context = layout.config_store().load()
    except WorkspaceError as e:
        raise fail(console, e) from e

    reports = []
    for workspace in names:
        resolution = resolve(context, workspace)
        reports.append(
            WorkspaceReport(
                info=manager.get_workspace_info(workspace),
                resolution=resolution,
                statuses=manager.get_status(workspace, resolution.specs),
            )
        )
    formatter.print_workspace_status(reports, layout.root)


@app.command(
    context_settings={
        "allow_extra_args": True,
        "ignore_unknown_options": True,
        "allow_interspersed_args": False,
    }
)
def foreach(
    ctx: typer.Context,
    command: list[str] = typer.Argument(..., help="Shell command to run in each repository"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not print repository headers"),
):
    """Run a command in every repository of the current workspace.

    The command runs through the shell with $name and $path set.
    """
    console, _ = get_console_and_formatter(False)
    layout = get_layout(ctx)
    try:
        workspace = layout.current_workspace()
        resolution = resolve_workspace(layout, workspace)
    except WorkspaceError as e:
        raise fail(console, e) from e

    def header(spec: RepoSpec):
        if not quiet:
            console.print(f"=== {spec.name} ===", markup=False, highlight=False)

    manager = WorkspaceManager(layout)
    results = manager.foreach(
        workspace,
        resolution.specs,
        " ".join(command),
        on_start=header,
        on_output=lambda output: typer.echo(output, nl=not output.endswith("\n")),
    )
    failed = [r for r in results if not r.success]
    if failed:
        for result in failed:
            console.print(f"[red]✗ {escape(result.name)}:[/] {escape(result.error)}")
        console.print(f"[red]{len(failed)} of {len(results)} commands failed[/]")
        raise typer.Exit(1)


@app.command(name="list")
def list_workspaces(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List available workspaces."""
    _, formatter = get_console_and_formatter(json_output)
    layout = get_layout(ctx)
    formatter.print_workspace_list(WorkspaceManager(layout).list_workspaces(), layout.root)


@app.command()
def clean(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Workspace to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Delete a workspace and its checkouts (central repositories are kept)."""
    console, formatter = get_console_and_formatter(json_output)
    layout = get_layout(ctx)
    try:
        validate_workspace_name(name)
        if not layout.workspace_exists(name):
            raise WorkspaceNotFound(name)
    except WorkspaceError as e:
        raise fail(console, e) from e

    if not yes and not typer.confirm(f"Delete workspace: {name}?", default=False):
        console.print("Aborted")
        return

    try:
        results = WorkspaceManager(layout).clean(name)
    except WorkspaceError as e:
        raise fail(console, e) from e
    formatter.print_operation_results(results, "clean", workspace=name)
    if has_failures(results):
        raise typer.Exit(1)
    if not json_output:
        console.print(f"Workspace removed: {escape(name)}")


@app.command()
def repair(
    ctx: typer.Context,
    workspace: str = typer.Argument(..., help="Workspace containing the repository"),
    repo: str = typer.Argument(..., help="Repository name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Convert standalone clones without asking"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Repair a checkout or convert a standalone clone into a worktree."""
    console, formatter = get_console_and_formatter(json_output)
    layout = get_layout(ctx)
    manager = WorkspaceManager(layout)
    try:
        validate_workspace_name(workspace)
        spec = resolve_workspace(layout, workspace).get(repo)
        if spec is None:
            raise WorkspaceError(f"Repository {repo} is not configured for workspace {workspace}")
    except WorkspaceError as e:
        raise fail(console, e) from e

    if not json_output:
        console.print(f"Attempting to repair {escape(repo)} in workspace {escape(workspace)}")
    current = manager.inspector.inspect(layout.checkout_path(workspace, repo), spec)
    if current.kind == CheckoutKind.STANDALONE:
        console.print(f"{escape(repo)} is a standalone repository, not a worktree")
        if not yes and not typer.confirm(
            "Convert it into a worktree of the central repository?", default=False
        ):
            console.print("Aborted")
            return

    result = manager.repair(workspace, spec)
    formatter.print_operation_results([result], "repair", workspace=workspace)
    if not result.success:
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# config subcommands
# -----------------------------------------------------------------------------


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    workspace: str = typer.Argument(None, help="Workspace (default: current, else main)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show which repositories a workspace resolves to and where they come from."""
    console, formatter = get_console_and_formatter(json_output)
    layout = get_layout(ctx)
    try:
        if workspace is None:
            try:
                workspace = layout.current_workspace()
            except NotInWorkspace:
                workspace = "main"
        validate_workspace_name(workspace)
        resolution = resolve_workspace(layout, workspace)
    except WorkspaceError as e:
        raise fail(console, e) from e
    formatter.print_resolution(resolution, layout.legacy_file)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    workspace: str = typer.Argument(..., help="Workspace the entry applies to"),
    url: str = typer.Argument(..., help="Repository URL or path"),
    branch: str = typer.Argument(None, help="Branch to track (default: workspace name)"),
    ref: str = typer.Argument(None, help="Tag or commit to pin"),
):
    """Set a repository entry for one workspace."""
    console, _ = get_console_and_formatter(False)
    try:
        entry = get_layout(ctx).config_store().set_workspace(workspace, url, branch, ref)
    except WorkspaceError as e:
        raise fail(console, e) from e
    console.print(f"Set repository config for {escape(workspace)}: {escape(entry.to_line())}")


@config_app.command("set-default")
def config_set_default(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Repository URL or path"),
    branch: str = typer.Argument(None, help="Branch to track (default: workspace name)"),
    ref: str = typer.Argument(None, help="Tag or commit to pin"),
):
    """Set a repository entry inherited by every workspace."""
    console, _ = get_console_and_formatter(False)
    try:
        entry = get_layout(ctx).config_store().set_default(url, branch, ref)
    except WorkspaceError as e:
        raise fail(console, e) from e
    console.print(f"Set default repository config: {escape(entry.to_line())}")


@config_app.command("import")
def config_import(
    ctx: typer.Context,
    workspace: str = typer.Argument(..., help="Workspace to import into"),
    file: Path = typer.Argument(None, help="File to import (default: the legacy workspace.conf)"),
):
    """Import a workspace.conf-style file into a workspace's configuration."""
    console, _ = get_console_and_formatter(False)
    layout = get_layout(ctx)
    source = file or layout.legacy_file
    console.print(f"Importing configuration from {escape(str(source))} to {escape(workspace)}")
    try:
        entries, diagnostics = layout.config_store().import_file(workspace, source)
    except WorkspaceError as e:
        raise fail(console, e) from e
    for diagnostic in diagnostics:
        console.print(f"[yellow]Skipped line {diagnostic.line_no}:[/] {escape(diagnostic.reason)}")
    console.print(f"Import complete: {len(entries)} repositories")


@config_app.command("help")
def config_help():
    """Explain the configuration layers and subcommands."""
    console, _ = get_console_and_formatter(False)
    console.print(
        "Usage: workspace config <subcommand> [args]\n"
        "\n"
        "Subcommands:\n"
        "  show [workspace]                      Show resolved repositories\n"
        "  set <workspace> <url> [branch] [ref]  Set an entry for one workspace\n"
        "  set-default <url> [branch] [ref]      Set an entry for all workspaces\n"
        "  import <workspace> [file]             Import a workspace.conf-style file\n"
        "  help                                  Show this help\n"
        "\n"
        "Precedence: workspace-specific > default > legacy workspace.conf.\n"
        "The highest layer with a valid entry is used as a whole.",
        markup=False,
        highlight=False,
    )
