"""Exception hierarchy for workspace operations."""

from __future__ import annotations

from pathlib import Path


class WorkspaceError(Exception):
    """Base class for every error raised by git-workspace."""


# =============================================================================
# Configuration and context
# =============================================================================


class ConfigError(WorkspaceError):
    """A configuration entry violates the ``URL [BRANCH [REF]]`` grammar."""

    def __init__(self, source: str, line_no: int, line: str, reason: str):
        self.source = source
        self.line_no = line_no
        self.line = line
        self.reason = reason
        super().__init__(f"{source}:{line_no}: {reason}: {line!r}")


class NotInWorkspace(WorkspaceError):
    """The command needs to run from inside a workspace directory."""

    def __init__(self, cwd: Path):
        self.cwd = cwd
        super().__init__(f"Not in workspace directory: {cwd}")


class WorkspaceNotFound(WorkspaceError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Workspace not found: {name}")


class RepoStateError(WorkspaceError):
    """A checkout is in a state that prevents the requested operation."""

    def __init__(self, name: str, state: str, detail: str = ""):
        self.name = name
        self.state = state
        message = f"{name} is {state}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


# =============================================================================
# Backend failures
# =============================================================================


class BackendError(WorkspaceError):
    """A git invocation failed."""

    def __init__(self, cmd: list[str], returncode: int | None = None, stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr.splitlines()[-1] if self.stderr else f"exit code {returncode}"
        super().__init__(f"{' '.join(cmd)}: {detail}")

    @property
    def reason(self) -> str:
        """Last line of git's error output, the part worth showing to a user."""
        if self.stderr:
            return self.stderr.splitlines()[-1].removeprefix("fatal: ").removeprefix("error: ")
        return str(self)


class NetworkError(BackendError):
    """The remote could not be reached."""


class RepositoryNotFound(BackendError):
    """The source URL does not point at a repository."""


class RefNotFound(BackendError):
    """A branch, tag or commit does not resolve."""


class PathExists(BackendError):
    """The checkout target path is already occupied."""


class Locked(BackendError):
    """git refused because the checkout is locked."""


class BackendTimeout(BackendError):
    """A git invocation exceeded its time limit."""


class ConflictError(WorkspaceError):
    """Merging upstream changes would conflict; local work was left untouched."""

    def __init__(self, name: str, branch: str, detail: str = ""):
        self.name = name
        self.branch = branch
        self.detail = detail
        super().__init__(f"merging {branch} into {name} would conflict")
