"""Thin wrappers around the ``git`` command line."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from ..errors import VCSUnavailable

logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT = 30.0


def run_git(args: list[str], cwd: Path, *, timeout: float = DEFAULT_GIT_TIMEOUT) -> str:
    """Run ``git <args>`` in ``cwd`` and return stdout.

    Raises:
        VCSUnavailable: git is missing, timed out, or exited non-zero.
    """
    cmd = ["git", "-c", "core.quotepath=off", *args]
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise VCSUnavailable("git executable not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise VCSUnavailable(f"git {args[0]} timed out after {timeout:.0f}s") from exc
    except OSError as exc:
        raise VCSUnavailable(f"git {args[0]} failed: {exc}") from exc

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise VCSUnavailable(f"git {args[0]} exited {result.returncode}: {stderr}")
    return result.stdout


def _optional(args: list[str], cwd: Path) -> str | None:
    try:
        out = run_git(args, cwd, timeout=5.0).strip()
    except VCSUnavailable as exc:
        logger.debug("git %s unavailable for %s: %s", " ".join(args), cwd, exc)
        return None
    return out or None


def get_remote_url(repo_root: Path, remote: str = "origin") -> str | None:
    return _optional(["remote", "get-url", remote], repo_root)


def get_current_branch(repo_root: Path) -> str | None:
    return _optional(["rev-parse", "--abbrev-ref", "HEAD"], repo_root)


def get_head_commit(repo_root: Path) -> str | None:
    return _optional(["rev-parse", "HEAD"], repo_root)
