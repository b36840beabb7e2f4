"""Bounded, non-interactive git subprocess calls."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from .errors import BackendError, BackendTimeout

lgr = logging.getLogger("git_workspace.git")

DEFAULT_TIMEOUT = 300.0


def git_timeout() -> float:
    """Timeout in seconds for a single git invocation.

    Taken from ``$WORKSPACE_GIT_TIMEOUT`` when set to a positive number.
    """
    value = os.environ.get("WORKSPACE_GIT_TIMEOUT")
    if value:
        try:
            timeout = float(value)
        except ValueError:
            lgr.warning("Ignoring invalid WORKSPACE_GIT_TIMEOUT=%r", value)
        else:
            if timeout > 0:
                return timeout
    return DEFAULT_TIMEOUT


def git_env() -> dict[str, str]:
    """Environment that keeps git from prompting and pins its messages to English.

    Optional locks are off so that read-only commands such as ``git status``
    never refresh and rewrite the index.
    """
    env = dict(
        os.environ, LC_ALL="C", GIT_TERMINAL_PROMPT="0", GIT_ASKPASS="", GIT_OPTIONAL_LOCKS="0"
    )
    env.pop("SSH_ASKPASS", None)
    env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    return env


def call_git(
    args: list[str],
    *,
    cwd: Path | None = None,
    check: bool = True,
    timeout: float | None = None,
    extra_env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess:
    """Run ``git`` with ``args`` and capture its text output.

    Standard input is closed so that no invocation can wait for a user.
    A non-zero exit raises ``BackendError`` when ``check`` is true, and an
    expired timeout always raises ``BackendTimeout``.
    """
    cmd = ["git", *args]
    limit = timeout if timeout is not None else git_timeout()
    lgr.debug("Running %s (cwd=%s)", cmd, cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
            env={**git_env(), **(extra_env or {})},
            timeout=limit,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise BackendTimeout(cmd, None, f"timed out after {limit:g}s") from e
    except OSError as e:
        # git missing from PATH or cwd vanished
        raise BackendError(cmd, None, str(e)) from e

    if result.returncode != 0:
        lgr.debug("%s exited with %d: %s", cmd, result.returncode, result.stderr.strip())
        if check:
            raise BackendError(cmd, result.returncode, result.stderr or result.stdout)
    return result


def call_git_success(args: list[str], *, cwd: Path | None = None) -> bool:
    """Report whether a git command succeeds."""
    try:
        return call_git(args, cwd=cwd, check=False).returncode == 0
    except BackendTimeout:
        return False


def call_git_lines(args: list[str], *, cwd: Path | None = None) -> list[str]:
    """Run git and return its standard output as lines; raises on failure."""
    return call_git(args, cwd=cwd).stdout.splitlines()


def call_git_oneline(args: list[str], *, cwd: Path | None = None) -> str:
    """Run git and return its single line of output."""
    lines = call_git_lines(args, cwd=cwd)
    if len(lines) != 1:
        raise BackendError(["git", *args], 0, f"expected one line of output, got {len(lines)}")
    return lines[0]
