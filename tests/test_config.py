from __future__ import annotations

import logging
from pathlib import Path

import pytest

from git_workspace.config import (
    ConfigContext,
    ConfigEntry,
    ConfigLayer,
    ConfigStore,
    HeadTracking,
    LayerContents,
    Pinned,
    TrackingMode,
    dedupe,
    derive_repo_name,
    make_entry,
    parse_line,
    parse_lines,
    resolve,
    validate_workspace_name,
)
from git_workspace.errors import ConfigError, WorkspaceError

from .utils import git


def make_context(root: Path, legacy=(), default=(), specific=None) -> ConfigContext:
    return ConfigContext(
        root=root,
        legacy=LayerContents(ConfigLayer.LEGACY_FILE, "workspace.conf", list(legacy)),
        default=LayerContents(ConfigLayer.WORKSPACE_DEFAULT, "workspace.repo", list(default)),
        specific={
            name: LayerContents(ConfigLayer.WORKSPACE_SPECIFIC, f"workspace.{name}.repo", list(lines))
            for name, lines in (specific or {}).items()
        },
    )


# =============================================================================
# Line grammar
# =============================================================================


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://example.com/team/tool.git", "tool"),
        ("git@example.com:team/tool.git", "tool"),
        ("https://example.com/team/tool", "tool"),
        ("https://example.com/team/tool/", "tool"),
        ("https://example.com/team/tool.git/", "tool"),
        ("/srv/git/tool.git//", "tool"),
        ("/srv/git/tool.git.backup", "tool.git.backup"),
        ("/srv/git/tool.git.git", "tool.git"),
        ("tool", "tool"),
    ],
)
def test_derive_repo_name(url, expected):
    assert derive_repo_name(url) == expected


def test_parse_line_url_only():
    entry = parse_line("https://example.com/team/tool.git")
    assert entry == ConfigEntry("https://example.com/team/tool.git")
    assert entry.name == "tool"


def test_parse_line_with_branch_and_ref():
    entry = parse_line("  https://example.com/lib.git   develop  v1.0.0  ")
    assert entry.branch == "develop"
    assert entry.ref == "v1.0.0"
    assert entry.to_line() == "https://example.com/lib.git develop v1.0.0"


@pytest.mark.parametrize("line", ["", "   ", "# a comment", "   # indented comment"])
def test_parse_line_ignores_blank_and_comments(line):
    assert parse_line(line) is None


def test_parse_line_strips_trailing_comment():
    entry = parse_line("https://example.com/lib.git main # keep on main")
    assert entry == ConfigEntry("https://example.com/lib.git", "main")


def test_parse_line_rejects_extra_fields():
    with pytest.raises(ConfigError) as exc:
        parse_line("url branch ref extra", "workspace.conf", 7)
    assert exc.value.line_no == 7
    assert exc.value.source == "workspace.conf"
    assert "at most 3" in exc.value.reason


def test_parse_line_rejects_url_without_name():
    with pytest.raises(ConfigError, match="cannot derive"):
        parse_line("/")


def test_parse_lines_collects_diagnostics(caplog):
    lines = [
        "# repositories",
        "https://example.com/a.git",
        "too many fields in this line",
        "",
        "https://example.com/b.git develop",
    ]
    with caplog.at_level(logging.WARNING, logger="git_workspace.config"):
        entries, diagnostics = parse_lines(lines, "workspace.conf")
    assert [e.name for e in entries] == ["a", "b"]
    assert len(diagnostics) == 1
    assert diagnostics[0].line_no == 3
    assert "Skipping malformed configuration line" in caplog.text


def test_entry_to_spec_defaults_branch_to_workspace():
    spec = ConfigEntry("https://example.com/a.git").to_spec("feature-x")
    assert spec.tracking == HeadTracking("feature-x")
    assert spec.mode == TrackingMode.HEAD
    assert spec.target == "feature-x"
    assert spec.pinned_ref is None


def test_entry_to_spec_pinned():
    spec = ConfigEntry("https://example.com/a.git", "main", "v2.1").to_spec("feature-x")
    assert spec.tracking == Pinned("v2.1", "main")
    assert spec.is_pinned
    assert spec.target == "v2.1"
    assert spec.to_dict()["mode"] == "pinned"


def test_make_entry_validation():
    assert make_entry(" https://example.com/a.git ", "", "") == ConfigEntry("https://example.com/a.git")
    with pytest.raises(ConfigError, match="must not be empty"):
        make_entry("  ")
    with pytest.raises(ConfigError, match="branch is required"):
        make_entry("https://example.com/a.git", None, "v1.0")
    with pytest.raises(ConfigError, match="spaces"):
        make_entry("https://example.com/a.git", "my branch")
    with pytest.raises(ConfigError):
        make_entry("https://example.com/a.git#frag")
    with pytest.raises(ConfigError, match="cannot derive"):
        make_entry("/")


@pytest.mark.parametrize("name", ["main", "feature/login", "release-1.2"])
def test_validate_workspace_name_accepts(name):
    assert validate_workspace_name(name) == name


@pytest.mark.parametrize("name", ["", "has space", "../escape", "-flag", "trailing/", "x.lock", "a:b"])
def test_validate_workspace_name_rejects(name):
    with pytest.raises(WorkspaceError, match="Invalid workspace name"):
        validate_workspace_name(name)


# =============================================================================
# Resolution
# =============================================================================


def test_dedupe_last_entry_wins_in_first_position():
    entries = [
        ConfigEntry("https://one.example/x.git", "main"),
        ConfigEntry("https://one.example/y.git"),
        ConfigEntry("https://two.example/x", "develop"),
    ]
    result = dedupe(entries)
    assert [e.name for e in result] == ["x", "y"]
    assert result[0] == ConfigEntry("https://two.example/x", "develop")


def test_resolve_legacy_only(tmp_path):
    ctx = make_context(tmp_path, legacy=["https://example.com/a.git", "https://example.com/b.git develop"])
    resolution = resolve(ctx, "main")
    assert resolution.layer == ConfigLayer.LEGACY_FILE
    assert [(s.name, s.branch) for s in resolution.specs] == [("a", "main"), ("b", "develop")]


def test_resolve_specific_replaces_lower_layers(tmp_path):
    ctx = make_context(
        tmp_path,
        legacy=["https://example.com/legacy.git"],
        default=["https://example.com/default.git"],
        specific={"feature": ["https://example.com/only.git develop"]},
    )
    feature = resolve(ctx, "feature")
    assert feature.layer == ConfigLayer.WORKSPACE_SPECIFIC
    assert [s.name for s in feature.specs] == ["only"]

    other = resolve(ctx, "other")
    assert other.layer == ConfigLayer.WORKSPACE_DEFAULT
    assert [s.name for s in other.specs] == ["default"]


def test_resolve_same_repository_in_every_layer(tmp_path):
    ctx = make_context(
        tmp_path,
        legacy=["https://example.com/a.git legacy"],
        default=["https://example.com/a.git default"],
        specific={"feature": ["https://example.com/a.git specific"]},
    )
    assert resolve(ctx, "feature").get("a").branch == "specific"
    assert resolve(ctx, "other").get("a").branch == "default"


def test_resolve_falls_through_layer_without_valid_entries(tmp_path):
    ctx = make_context(
        tmp_path,
        legacy=["https://example.com/legacy.git"],
        specific={"main": ["a b c d", "# nothing usable"]},
    )
    resolution = resolve(ctx, "main")
    assert resolution.layer == ConfigLayer.LEGACY_FILE
    assert [s.name for s in resolution.specs] == ["legacy"]
    assert len(resolution.diagnostics) == 1


def test_resolve_nothing_configured(tmp_path):
    resolution = resolve(make_context(tmp_path), "main")
    assert resolution.layer is None
    assert resolution.specs == []
    assert resolution.get("anything") is None
    assert resolution.to_dict()["layer"] is None


# =============================================================================
# Store
# =============================================================================


def test_store_requires_git_repository(root):
    with pytest.raises(WorkspaceError, match="not a git repository"):
        ConfigStore(root).set_default("https://example.com/a.git")


def test_store_reads_legacy_file(root):
    (root / "workspace.conf").write_text("https://example.com/a.git\n")
    ctx = ConfigStore(root).load()
    assert ctx.legacy.lines == ["https://example.com/a.git"]
    assert ctx.default.is_empty
    assert ctx.specific == {}


def test_store_set_workspace_replaces_same_name(git_root):
    store = ConfigStore(git_root)
    store.set_workspace("feature/login", "https://example.com/a.git", "develop")
    store.set_workspace("feature/login", "https://example.com/b.git")
    store.set_workspace("feature/login", "https://mirror.example/a", "main", "v1.0")

    ctx = store.load()
    assert ctx.specific["feature/login"].lines == [
        "https://mirror.example/a main v1.0",
        "https://example.com/b.git",
    ]
    resolution = resolve(ctx, "feature/login")
    assert resolution.layer == ConfigLayer.WORKSPACE_SPECIFIC
    assert resolution.get("a").pinned_ref == "v1.0"
    # stored in the root repository's own config file
    values = git("config", "--file", ".git/config", "--get-all", "workspace.feature/login.repo", cwd=git_root)
    assert "https://example.com/b.git" in values


def test_store_set_default(git_root):
    store = ConfigStore(git_root)
    store.set_default("https://example.com/a.git")
    store.set_default("https://example.com/b.git", "develop")
    ctx = store.load()
    assert ctx.default.lines == ["https://example.com/a.git", "https://example.com/b.git develop"]
    assert resolve(ctx, "anything").layer == ConfigLayer.WORKSPACE_DEFAULT


def test_store_import_file(git_root, tmp_path):
    source = tmp_path / "team.conf"
    source.write_text(
        "# team repositories\n"
        "https://example.com/a.git\n"
        "broken line with four\n"
        "https://example.com/b.git develop v2\n"
    )
    entries, diagnostics = ConfigStore(git_root).import_file("team", source)
    assert [e.name for e in entries] == ["a", "b"]
    assert [d.line_no for d in diagnostics] == [3]
    assert ConfigStore(git_root).load().specific["team"].lines == [
        "https://example.com/a.git",
        "https://example.com/b.git develop v2",
    ]


def test_store_import_missing_file(git_root):
    with pytest.raises(WorkspaceError, match="Config file not found"):
        ConfigStore(git_root).import_file("main", git_root / "nope.conf")
