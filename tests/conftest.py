"""Pytest configuration and fixtures for the Many worktree manager tests."""

import shutil
import subprocess
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

import config
from context import AppContext
from logging_config import ErrorLog


def git(repo: Path, *args: str) -> str:
    """Run git in `repo` and return stripped stdout."""
    cp = subprocess.run(["git", "-C", str(repo), *args], check=True, capture_output=True, text=True)
    return cp.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    """Write a file, commit it and return the new commit id."""
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp()).resolve()
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def temp_git_repo(temp_dir: Path) -> Path:
    """Create a git repository on branch `main` with one commit.

    The repository lives one level down so sibling worktrees stay inside
    the temporary directory.
    """
    repo = temp_dir / "repo"
    repo.mkdir()
    subprocess.run(["git", "init"], cwd=repo, check=True, capture_output=True)
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "commit.gpgsign", "false")

    commit_file(repo, "README.md", "# Test Repository\n", "Initial commit")
    return repo


@pytest.fixture
def state_store(temp_dir: Path) -> config.JsonStateStore:
    """State store writing into the temporary directory."""
    return config.JsonStateStore(temp_dir / "state" / config.STATE_FILE_NAME)


@pytest.fixture
def app_context(temp_dir: Path, state_store: config.JsonStateStore) -> Generator[AppContext, None, None]:
    """Application context with isolated state and error log."""
    error_log = ErrorLog(temp_dir / "state" / "logs" / "errors.log").start()
    ctx = AppContext.create(store=state_store, error_log=error_log)
    try:
        yield ctx
    finally:
        ctx.sessions.dispose_all()
        error_log.stop()
