"""Repository configuration: line grammar, layers and resolution.

Three layers can describe the repositories of a workspace:

1. ``workspace-specific`` entries stored under ``workspace.<name>.repo`` in
   the root repository's git config,
2. ``workspace-default`` entries stored under ``workspace.repo`` in the same
   file,
3. the ``legacy-file`` (``workspace.conf``), shared by every workspace.

The highest layer holding at least one valid entry wins outright; layers are
never merged with each other.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from .errors import BackendError, ConfigError, WorkspaceError
from .runner import call_git

lgr = logging.getLogger("git_workspace.config")

LEGACY_FILE_NAME = "workspace.conf"
DEFAULT_KEY = "workspace.repo"
MAX_TOKENS = 3

_WORKSPACE_KEY_RE = r"^workspace\..+\.repo$"
_FORBIDDEN_NAME_CHARS = re.compile(r"[\s~^:?*\[\\]")


# =============================================================================
# Repository specs
# =============================================================================


class TrackingMode(StrEnum):
    """How a checkout follows its repository."""

    HEAD = "head"
    PINNED = "pinned"


@dataclass(frozen=True)
class HeadTracking:
    """Checkout stays on ``branch`` and is updated by sync."""

    branch: str


@dataclass(frozen=True)
class Pinned:
    """Checkout is detached at ``ref`` and never touched by sync."""

    ref: str
    branch: str = ""


@dataclass(frozen=True)
class RepoSpec:
    """One resolved repository of a workspace."""

    url: str
    name: str
    tracking: HeadTracking | Pinned

    @property
    def mode(self) -> TrackingMode:
        return TrackingMode.PINNED if isinstance(self.tracking, Pinned) else TrackingMode.HEAD

    @property
    def is_pinned(self) -> bool:
        return self.mode == TrackingMode.PINNED

    @property
    def branch(self) -> str:
        return self.tracking.branch

    @property
    def pinned_ref(self) -> str | None:
        return self.tracking.ref if isinstance(self.tracking, Pinned) else None

    @property
    def target(self) -> str:
        """The ref the checkout should sit on."""
        return self.pinned_ref or self.branch

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "mode": self.mode.value,
            "branch": self.branch,
            "pinned_ref": self.pinned_ref,
        }


@dataclass(frozen=True)
class ConfigEntry:
    """A parsed ``URL [BRANCH [REF]]`` line, before workspace defaults apply."""

    url: str
    branch: str | None = None
    ref: str | None = None

    @property
    def name(self) -> str:
        return derive_repo_name(self.url)

    def to_line(self) -> str:
        return " ".join(token for token in (self.url, self.branch, self.ref) if token)

    def to_spec(self, workspace: str) -> RepoSpec:
        """Classify the entry; an absent branch means the workspace's own name."""
        branch = self.branch or workspace
        if self.ref:
            return RepoSpec(self.url, self.name, Pinned(self.ref, branch))
        return RepoSpec(self.url, self.name, HeadTracking(branch))


def derive_repo_name(url: str) -> str:
    """Directory name for a repository URL.

    Trailing slashes and then a single trailing ``.git`` are stripped before
    taking the last path component, so ``git@host:team/tool.git`` and
    ``https://host/tool.git/`` give ``tool`` while ``tool.git.backup`` is
    kept as is.
    """
    stem = url.rstrip("/")
    stem = stem[: -len(".git")] if stem.endswith(".git") else stem
    return stem.rsplit("/", 1)[-1]


def parse_line(line: str, source: str = "<config>", line_no: int = 0) -> ConfigEntry | None:
    """Parse one configuration line.

    Returns ``None`` for blank and comment-only lines and raises
    ``ConfigError`` for lines that do not fit the grammar.
    """
    content = line.split("#", 1)[0]
    tokens = content.split()
    if not tokens:
        return None
    if len(tokens) > MAX_TOKENS:
        raise ConfigError(source, line_no, line.strip(), f"expected at most {MAX_TOKENS} fields")
    url = tokens[0]
    if not derive_repo_name(url):
        raise ConfigError(source, line_no, line.strip(), "cannot derive a repository name")
    branch = tokens[1] if len(tokens) > 1 else None
    ref = tokens[2] if len(tokens) > 2 else None
    return ConfigEntry(url, branch, ref)


def parse_lines(
    lines: Iterable[str], source: str
) -> tuple[list[ConfigEntry], list[ConfigError]]:
    """Parse every line, collecting malformed ones instead of stopping at them."""
    entries: list[ConfigEntry] = []
    diagnostics: list[ConfigError] = []
    for line_no, line in enumerate(lines, start=1):
        try:
            entry = parse_line(line, source, line_no)
        except ConfigError as e:
            lgr.warning("Skipping malformed configuration line: %s", e)
            diagnostics.append(e)
            continue
        if entry is not None:
            entries.append(entry)
    return entries, diagnostics


def make_entry(url: str, branch: str | None = None, ref: str | None = None) -> ConfigEntry:
    """Build an entry from command-line values, validating it like a config line."""
    url = url.strip()
    branch = (branch or "").strip() or None
    ref = (ref or "").strip() or None
    if not url:
        raise ConfigError("<command line>", 0, "", "repository URL must not be empty")
    if ref and not branch:
        raise ConfigError("<command line>", 0, url, "a branch is required when pinning a ref")
    tokens = [token for token in (url, branch, ref) if token]
    if any(len(token.split()) != 1 or "#" in token for token in tokens):
        raise ConfigError("<command line>", 0, " ".join(tokens), "fields must not contain spaces or '#'")
    if not derive_repo_name(url):
        raise ConfigError("<command line>", 0, url, "cannot derive a repository name")
    return ConfigEntry(url, branch, ref)


def validate_workspace_name(name: str) -> str:
    """Reject names that cannot serve as both a directory and a branch name."""
    problem = ""
    if not name:
        problem = "must not be empty"
    elif _FORBIDDEN_NAME_CHARS.search(name):
        problem = "contains whitespace or one of ~^:?*[\\"
    elif ".." in name or "//" in name:
        problem = "must not contain '..' or '//'"
    elif name.startswith(("-", "/", ".")) or name.endswith(("/", ".lock", ".")):
        problem = "has an invalid start or end"
    if problem:
        raise WorkspaceError(f"Invalid workspace name {name!r}: {problem}")
    return name


# =============================================================================
# Layers
# =============================================================================


class ConfigLayer(StrEnum):
    LEGACY_FILE = "legacy-file"
    WORKSPACE_DEFAULT = "workspace-default"
    WORKSPACE_SPECIFIC = "workspace-specific"


@dataclass
class LayerContents:
    """Raw lines of one layer together with what parsing made of them."""

    layer: ConfigLayer
    source: str
    lines: list[str] = field(default_factory=list)

    def parse(self) -> tuple[list[ConfigEntry], list[ConfigError]]:
        return parse_lines(self.lines, self.source)

    @property
    def is_empty(self) -> bool:
        return not any(line.strip() for line in self.lines)


@dataclass
class ConfigContext:
    """Snapshot of all three layers, loaded once per command."""

    root: Path
    legacy: LayerContents
    default: LayerContents
    specific: dict[str, LayerContents] = field(default_factory=dict)

    def layers_for(self, workspace: str) -> list[LayerContents]:
        """Layers in precedence order, highest first."""
        specific = self.specific.get(workspace) or LayerContents(
            ConfigLayer.WORKSPACE_SPECIFIC, workspace_key(workspace)
        )
        return [specific, self.default, self.legacy]


@dataclass
class Resolution:
    """Repositories of one workspace and where they came from."""

    workspace: str
    layer: ConfigLayer | None = None
    source: str = ""
    specs: list[RepoSpec] = field(default_factory=list)
    diagnostics: list[ConfigError] = field(default_factory=list)

    def get(self, name: str) -> RepoSpec | None:
        for spec in self.specs:
            if spec.name == name:
                return spec
        return None

    def to_dict(self) -> dict:
        return {
            "workspace": self.workspace,
            "layer": self.layer.value if self.layer else None,
            "source": self.source,
            "repositories": [spec.to_dict() for spec in self.specs],
            "diagnostics": [str(d) for d in self.diagnostics],
        }


def dedupe(entries: Iterable[ConfigEntry]) -> list[ConfigEntry]:
    """Keep one entry per derived name; a later entry replaces an earlier one
    entirely but keeps its position."""
    by_name: dict[str, ConfigEntry] = {}
    for entry in entries:
        by_name[entry.name] = entry
    return list(by_name.values())


def resolve(ctx: ConfigContext, workspace: str) -> Resolution:
    """Resolve the repository specs that apply to ``workspace``."""
    resolution = Resolution(workspace)
    for contents in ctx.layers_for(workspace):
        if contents.is_empty:
            continue
        entries, diagnostics = contents.parse()
        resolution.diagnostics.extend(diagnostics)
        if not entries:
            lgr.info("No valid entries in %s layer, falling through", contents.layer)
            continue
        resolution.layer = contents.layer
        resolution.source = contents.source
        resolution.specs = [entry.to_spec(workspace) for entry in dedupe(entries)]
        break
    return resolution


# =============================================================================
# Store
# =============================================================================


def workspace_key(workspace: str) -> str:
    return f"workspace.{workspace}.repo"


class ConfigStore:
    """Read and write the three configuration layers below a workspace root."""

    def __init__(self, root: Path, legacy_file: Path | None = None):
        self.root = root
        self.legacy_file = legacy_file or root / LEGACY_FILE_NAME

    @property
    def git_config_file(self) -> Path:
        return self.root / ".git" / "config"

    def has_repository(self) -> bool:
        return (self.root / ".git").is_dir()

    def _git_config(self, *args: str, check: bool = True):
        return call_git(["config", "--file", str(self.git_config_file), *args], check=check)

    def _get_all(self, key: str) -> list[str]:
        if not self.git_config_file.exists():
            return []
        result = self._git_config("--get-all", key, check=False)
        # exit code 1: key not set
        if result.returncode == 1:
            return []
        if result.returncode != 0:
            raise BackendError(["git", "config", "--get-all", key], result.returncode, result.stderr)
        return result.stdout.splitlines()

    def _workspace_layers(self) -> dict[str, LayerContents]:
        layers: dict[str, LayerContents] = {}
        if not self.git_config_file.exists():
            return layers
        result = self._git_config("-z", "--get-regexp", _WORKSPACE_KEY_RE, check=False)
        if result.returncode == 1:
            return layers
        if result.returncode != 0:
            raise BackendError(["git", "config", "--get-regexp"], result.returncode, result.stderr)
        for record in result.stdout.split("\0"):
            if not record:
                continue
            key, _, value = record.partition("\n")
            workspace = key[len("workspace.") : -len(".repo")]
            contents = layers.setdefault(
                workspace, LayerContents(ConfigLayer.WORKSPACE_SPECIFIC, key)
            )
            contents.lines.append(value)
        return layers

    def read_legacy(self) -> LayerContents:
        contents = LayerContents(ConfigLayer.LEGACY_FILE, str(self.legacy_file))
        if not self.legacy_file.is_file():
            return contents
        try:
            contents.lines = self.legacy_file.read_text().splitlines()
        except OSError as e:
            raise WorkspaceError(f"Cannot read {self.legacy_file}: {e}") from e
        return contents

    def load(self) -> ConfigContext:
        """Read all layers fresh from disk."""
        return ConfigContext(
            root=self.root,
            legacy=self.read_legacy(),
            default=LayerContents(
                ConfigLayer.WORKSPACE_DEFAULT, DEFAULT_KEY, self._get_all(DEFAULT_KEY)
            ),
            specific=self._workspace_layers(),
        )

    def _require_repository(self):
        if not self.has_repository():
            raise WorkspaceError(
                f"{self.root} is not a git repository; run 'git init' there to store "
                "workspace configuration"
            )

    def _store(self, key: str, new_entries: list[ConfigEntry]) -> None:
        """Merge ``new_entries`` into ``key``, replacing entries of the same name."""
        self._require_repository()
        values = self._get_all(key)
        by_name = {entry.name: entry for entry in new_entries}
        kept: list[str] = []
        for value in values:
            try:
                existing = parse_line(value, key)
            except ConfigError:
                kept.append(value)
                continue
            if existing is None:
                continue
            replacement = by_name.pop(existing.name, None)
            kept.append(replacement.to_line() if replacement else value)
        kept.extend(entry.to_line() for entry in by_name.values())

        # exit code 5: nothing to unset
        self._git_config("--unset-all", key, check=False)
        for value in kept:
            self._git_config("--add", key, value)
        lgr.info("Stored %d entries under %s", len(kept), key)

    def set_workspace(
        self, workspace: str, url: str, branch: str | None = None, ref: str | None = None
    ) -> ConfigEntry:
        validate_workspace_name(workspace)
        entry = make_entry(url, branch, ref)
        self._store(workspace_key(workspace), [entry])
        return entry

    def set_default(self, url: str, branch: str | None = None, ref: str | None = None) -> ConfigEntry:
        entry = make_entry(url, branch, ref)
        self._store(DEFAULT_KEY, [entry])
        return entry

    def import_file(
        self, workspace: str, path: Path
    ) -> tuple[list[ConfigEntry], list[ConfigError]]:
        """Copy the valid lines of a legacy-format file into a workspace's layer."""
        validate_workspace_name(workspace)
        if not path.is_file():
            raise WorkspaceError(f"Config file not found: {path}")
        try:
            lines = path.read_text().splitlines()
        except OSError as e:
            raise WorkspaceError(f"Cannot read {path}: {e}") from e
        entries, diagnostics = parse_lines(lines, str(path))
        entries = dedupe(entries)
        if entries:
            self._store(workspace_key(workspace), entries)
        return entries, diagnostics
