from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Optional

from .utils import tail_lines

_GITHUB_SLUG_RE = re.compile(r"github\.com[:/]([^/]+)/([^/\s]+?)(?:\.git)?/?$")


class GitError(Exception):
    def __init__(self, message: str, *, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


def run_git(
    args: list[str],
    cwd: Path,
    *,
    timeout_seconds: int = 30,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    cmd = ["git", *args]
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd),
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitError("Missing binary: git") from exc
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"Command timed out: {' '.join(cmd)}") from exc

    if check and proc.returncode != 0:
        detail = tail_lines((proc.stderr or "").strip() or (proc.stdout or "").strip())
        raise GitError(
            f"Command failed: {' '.join(cmd)}: {detail or f'exit {proc.returncode}'}",
            returncode=proc.returncode,
        )
    return proc


def parse_github_slug(remote_url: str) -> Optional[tuple[str, str]]:
    """Return (owner, repo) for a GitHub remote URL, or None."""
    match = _GITHUB_SLUG_RE.search((remote_url or "").strip())
    if not match:
        return None
    return match.group(1), match.group(2)


class GitRepo:
    """Read-mostly view of the working directory's repository."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def is_repository(self) -> bool:
        proc = run_git(["rev-parse", "--is-inside-work-tree"], self.repo_root, check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def head_sha(self) -> Optional[str]:
        """HEAD commit, or None while the branch has no commits yet."""
        proc = run_git(["rev-parse", "--verify", "-q", "HEAD"], self.repo_root, check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def status_short(self) -> str:
        return run_git(["status", "--short"], self.repo_root).stdout.rstrip()

    def is_clean(self) -> bool:
        proc = run_git(["status", "--porcelain"], self.repo_root)
        return not bool((proc.stdout or "").strip())

    def current_branch(self) -> str:
        proc = run_git(["rev-parse", "--abbrev-ref", "HEAD"], self.repo_root)
        return (proc.stdout or "").strip() or "HEAD"

    def is_ancestor(self, ancestor: str, descendant: str) -> Optional[bool]:
        """
        True/False per `git merge-base --is-ancestor`; None when git cannot
        answer (for example an object missing locally).
        """
        proc = run_git(
            ["merge-base", "--is-ancestor", ancestor, descendant],
            self.repo_root,
            check=False,
        )
        if proc.returncode == 0:
            return True
        if proc.returncode == 1:
            return False
        return None

    def remote_url(self, remote: str = "origin") -> str:
        return run_git(["remote", "get-url", remote], self.repo_root).stdout.strip()

    def push(self, *, timeout_seconds: int = 120) -> None:
        run_git(["push"], self.repo_root, timeout_seconds=timeout_seconds)


__all__ = ["GitError", "GitRepo", "parse_github_slug", "run_git"]
