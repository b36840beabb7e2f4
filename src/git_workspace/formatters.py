"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from .config import Resolution
    from .core import OperationResult, RepositoryStatus, WorkspaceInfo, WorkspaceReport


LAYER_HEADINGS = {
    "workspace-specific": "Workspace-specific repositories:",
    "workspace-default": "Default repositories (inherited):",
}

STATE_STYLES = {
    "clean": "green",
    "modified": "yellow",
    "detached-pinned": "blue",
    "detached-unpinned": "magenta",
    "uninitialized": "dim",
    "broken": "red",
    "invalid": "red",
    "missing": "red",
}

OUTCOME_STYLES = {
    "created": "green",
    "repaired": "green",
    "updated": "green",
    "removed": "green",
    "ok": "green",
    "skipped-exists": "dim",
    "skipped-pinned": "blue",
    "conflict": "bold red",
    "failed": "red",
}


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def _print_json(self, output: dict):
        self.console.print(
            json.dumps(output, indent=2, default=str),
            markup=False,
            highlight=False,
            soft_wrap=True,
        )

    # -------------------------------------------------------------------------
    # Operation results (init, switch, sync, clean, repair)
    # -------------------------------------------------------------------------

    def print_operation_results(
        self, results: list[OperationResult], operation: str, workspace: str = ""
    ):
        """Print operation results."""
        if self.use_json:
            self._print_operation_json(results, operation, workspace)
        else:
            self._print_operation_table(results, operation)

    def _print_operation_table(self, results: list[OperationResult], operation: str):
        """Print operation results as table."""
        if not results:
            self.console.print("[dim]No repositories configured[/]")
            return

        table = Table(title=f"{operation.title()} Results")
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Outcome", no_wrap=True)
        table.add_column("Message")

        success_count = 0
        for result in results:
            style = OUTCOME_STYLES.get(result.outcome.value, "")
            outcome = f"[{style}]{result.outcome.value}[/]" if style else result.outcome.value
            if result.success:
                success_count += 1
                message = escape(result.message) if result.message else "OK"
            else:
                message = f"[red]{escape(result.error)}[/]" if result.error else "Failed"
            table.add_row(escape(result.name), outcome, message)

        self.console.print(table)
        self.console.print(f"\n[bold]Success:[/] {success_count}/{len(results)}")

    def _print_operation_json(self, results: list[OperationResult], operation: str, workspace: str):
        """Print operation results as JSON."""
        self._print_json(
            {
                "operation": operation,
                "workspace": workspace,
                "results": [r.to_dict() for r in results],
                "summary": {
                    "total": len(results),
                    "success": sum(1 for r in results if r.success),
                    "failed": sum(1 for r in results if not r.success),
                },
            }
        )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def print_workspace_status(self, reports: list[WorkspaceReport], root: Path):
        """Print the status of each workspace."""
        if self.use_json:
            self._print_json(
                {"root": str(root), "workspaces": [report.to_dict() for report in reports]}
            )
            return

        self.console.print(f"[bold]Workspace Status[/] ({escape(str(root))})\n")
        if not reports:
            self.console.print("[dim]No workspaces found[/]")
            return
        for report in reports:
            self._print_status_table(report)

    def _print_status_table(self, report: WorkspaceReport):
        info = report.info
        title = f"{info.name}{' (current)' if info.current else ''}"
        if not report.statuses:
            self.console.print(f"[bold]{escape(title)}[/]: [dim]0 repositories[/]\n")
            return

        table = Table(title=escape(title), title_justify="left")
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("State", no_wrap=True)
        table.add_column("Branch / Ref")
        table.add_column("Working Tree", justify="center")

        for status in report.statuses:
            name = escape(status.name)
            if not status.configured:
                name += " [dim](unconfigured)[/]"
            table.add_row(
                name,
                self._get_state_display(status),
                self._get_ref_display(status),
                self._get_working_tree_display(status),
            )
        self.console.print(table)

        broken = [s for s in report.statuses if s.error_message]
        for status in broken:
            self.console.print(
                f"  [red]{escape(status.name)}:[/] {escape(status.error_message)}"
            )
        self.console.print()

    def _get_state_display(self, status: RepositoryStatus) -> str:
        """State tag, e.g. ``[clean]``, with the kind for standalone clones."""
        style = STATE_STYLES.get(status.state.value, "")
        tag = escape(f"[{status.state.value}]")
        if status.kind.value == "standalone":
            tag += " standalone"
        return f"[{style}]{tag}[/]" if style else tag

    def _get_ref_display(self, status: RepositoryStatus) -> str:
        if status.pinned_ref:
            return f"[blue]{escape(status.pinned_ref)}[/] ({status.commit or '?'})"
        if status.branch:
            return f"[green]{escape(status.branch)}[/]"
        if status.commit:
            return f"[magenta]{status.commit}[/]"
        return "[dim]-[/]"

    def _get_working_tree_display(self, status: RepositoryStatus) -> str:
        """Get working tree status display."""
        if not status.is_healthy:
            return "[dim]-[/]"
        if not status.is_dirty:
            parts = ["[green]clean[/]"]
        else:
            parts = []
            if status.staged_count > 0:
                parts.append(f"[green]+{status.staged_count}[/]")
            if status.unstaged_count > 0:
                parts.append(f"[yellow]~{status.unstaged_count}[/]")
            if status.untracked_count > 0:
                parts.append(f"[red]?{status.untracked_count}[/]")
        if status.ahead_count:
            parts.append(f"[yellow]⬆ {status.ahead_count}[/]")
        if status.behind_count:
            parts.append(f"[blue]⬇ {status.behind_count}[/]")
        return " ".join(parts)

    # -------------------------------------------------------------------------
    # Listing and configuration
    # -------------------------------------------------------------------------

    def print_workspace_list(self, workspaces: list[WorkspaceInfo], root: Path):
        """Print the available workspaces."""
        if self.use_json:
            self._print_json(
                {
                    "root": str(root),
                    "count": len(workspaces),
                    "workspaces": [w.to_dict() for w in workspaces],
                }
            )
            return

        self.console.print("[bold]Available Workspaces[/]\n")
        if not workspaces:
            self.console.print("[dim]No workspaces found[/]")
            return
        for workspace in workspaces:
            marker = "[bold green]*[/] " if workspace.current else "  "
            kind = " [dim]superproject worktree[/]" if workspace.superproject else ""
            self.console.print(
                f"{marker}[cyan]{escape(workspace.name)}[/] "
                f"({workspace.repo_count} repositories){kind}"
            )

    def print_resolution(self, resolution: Resolution, legacy_file: Path):
        """Print the effective configuration layer of a workspace."""
        if self.use_json:
            self._print_json(resolution.to_dict())
            return

        self.console.print(f"[bold]Configuration for workspace {escape(resolution.workspace)}[/]\n")
        if resolution.layer is None:
            self.console.print("[dim]No repositories configured[/]")
        else:
            heading = LAYER_HEADINGS.get(
                resolution.layer.value, f"Legacy configuration (from {legacy_file.name}):"
            )
            self.console.print(escape(heading))
            for spec in resolution.specs:
                target = f"pinned at {spec.pinned_ref}" if spec.is_pinned else f"branch {spec.branch}"
                self.console.print(
                    f"  [cyan]{escape(spec.name)}[/]  {escape(spec.url)}  [dim]{escape(target)}[/]"
                )
        for diagnostic in resolution.diagnostics:
            self.console.print(
                f"[yellow]Skipped {escape(diagnostic.source)} line {diagnostic.line_no}:[/] "
                f"{escape(diagnostic.reason)}"
            )
