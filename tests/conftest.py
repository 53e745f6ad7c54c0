"""Test harness configuration.

This repo uses a `src/` layout. Ensure tests always import the in-repo code
rather than an installed `stepcat` package.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def git(repo_root: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args],
        cwd=str(repo_root),
        text=True,
        capture_output=True,
        check=True,
    )
    return proc.stdout.strip()


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """
    Create a real git repository with one commit and a GitHub origin.

    The origin URL only needs to parse; nothing is pushed.
    """
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    git(repo_root, "init", "-q", "-b", "main")
    git(repo_root, "config", "user.email", "stepcat@example.com")
    git(repo_root, "config", "user.name", "stepcat tests")
    git(repo_root, "config", "commit.gpgsign", "false")
    git(repo_root, "remote", "add", "origin", "git@github.com:acme/widgets.git")
    (repo_root / "README.md").write_text("# widgets\n", encoding="utf-8")
    git(repo_root, "add", "README.md")
    git(repo_root, "commit", "-q", "-m", "initial")
    return repo_root


@pytest.fixture()
def plan_file(tmp_path: Path) -> Path:
    path = tmp_path / "plan.md"
    path.write_text(
        "# Widgets plan\n\n"
        "## Step 1: Add the widget model\n\nCreate widget.py.\n\n"
        "## Step 2: Expose widgets over HTTP\n\nAdd an endpoint.\n",
        encoding="utf-8",
    )
    return path
