"""git-workspace: Reproducible multi-repository workspaces on top of git worktrees."""

# Guard against deleted CWD (e.g. workspace removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .config import (
    ConfigContext,
    ConfigLayer,
    ConfigStore,
    HeadTracking,
    Pinned,
    RepoSpec,
    Resolution,
    derive_repo_name,
    parse_line,
    resolve,
)
from .core import (
    CheckoutKind,
    GitBackend,
    OperationResult,
    Outcome,
    RepositoryInspector,
    RepositoryState,
    RepositoryStatus,
    WorkspaceLayout,
    WorkspaceManager,
    app,
    classify_checkout,
)
from .errors import (
    BackendError,
    ConfigError,
    ConflictError,
    NotInWorkspace,
    RepoStateError,
    WorkspaceError,
    WorkspaceNotFound,
)
from .formatters import OutputFormatter

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Configuration
    "ConfigContext",
    "ConfigLayer",
    "ConfigStore",
    "HeadTracking",
    "Pinned",
    "RepoSpec",
    "Resolution",
    "derive_repo_name",
    "parse_line",
    "resolve",
    # Models
    "CheckoutKind",
    "OperationResult",
    "Outcome",
    "RepositoryState",
    "RepositoryStatus",
    # Operations
    "GitBackend",
    "RepositoryInspector",
    "WorkspaceLayout",
    "WorkspaceManager",
    "classify_checkout",
    # Errors
    "BackendError",
    "ConfigError",
    "ConflictError",
    "NotInWorkspace",
    "RepoStateError",
    "WorkspaceError",
    "WorkspaceNotFound",
    # Formatters
    "OutputFormatter",
]
