"""Application state and its JSON persistence for the Many worktree manager."""

import copy
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

APP_NAME = "Many"
STATE_FILE_NAME = "app-data.json"
CONFIG_DIR_ENV = "MANY_CONFIG_DIR"

DEFAULT_SETTINGS = {
    "shell": None,  # str | None - falls back to $SHELL, then /bin/bash
    "session_buffer_bytes": 1024 * 1024,  # undelivered output kept per session
    "worker_count": 4,  # threads running git operations
    "log_level": "INFO",
}

DEFAULT_STATE = {
    "repositories": [],  # list[{"path", "name", "added_at"}]
    "repository_configs": {},  # dict[str, {"main_branch", "init_command"}] - repo_path -> config
    "selected_repo": None,  # str | None
    "recent_worktrees": {},  # dict[str, str] - repo_path -> worktree_path
    "worktree_terminals": {},  # dict[str, dict] - worktree_path -> {"terminals", "next_terminal_id"}
    "settings": DEFAULT_SETTINGS,
}

logger = logging.getLogger(__name__)


def config_dir() -> Path:
    """Get the platform-specific configuration directory."""
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override)
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / APP_NAME
    elif sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    else:
        base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
        return Path(base) / APP_NAME


def default_state() -> dict:
    return copy.deepcopy(DEFAULT_STATE)


def load_config(path: Path) -> dict:
    """Load state from `path`; a missing file yields defaults.

    Raises PersistenceUnavailable when the file exists but cannot be used.
    """
    from error_handler import PersistenceUnavailable

    try:
        with path.open("r", encoding="utf-8") as f:
            cfg = json.load(f)
    except FileNotFoundError:
        return default_state()
    except (OSError, ValueError) as e:
        raise PersistenceUnavailable(f"Could not read {path}: {e}", path=path) from e
    if not isinstance(cfg, dict):
        raise PersistenceUnavailable(f"{path} does not contain a JSON object", path=path)

    # Fill any missing keys with defaults
    for k, v in default_state().items():
        cfg.setdefault(k, v)
    for k, v in DEFAULT_SETTINGS.items():
        cfg["settings"].setdefault(k, v)
    return cfg


def save_config(cfg: dict, path: Path):
    """Save state to `path` atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.parent / f".{path.name}.tmp"
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)
    tmp.replace(path)


class JsonStateStore:
    """Persistence collaborator backed by one JSON file."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path else config_dir() / STATE_FILE_NAME

    def load_state(self) -> dict:
        return load_config(self.path)

    def save_state(self, state: dict) -> None:
        from error_handler import PersistenceUnavailable

        try:
            save_config(state, self.path)
        except OSError as e:
            raise PersistenceUnavailable(f"Could not write {self.path}: {e}", path=self.path) from e


def add_repository(cfg: dict, repo_root: Path) -> dict:
    """Register a repository; registering it again changes nothing."""
    s = str(repo_root)
    for repo in cfg["repositories"]:
        if repo["path"] == s:
            return repo
    repo = {
        "path": s,
        "name": Path(s).name,
        "added_at": datetime.now(timezone.utc).isoformat(),
    }
    cfg["repositories"].append(repo)
    return repo


def remove_repository(cfg: dict, repo_root: Path) -> bool:
    """Forget a repository and everything stored for it."""
    s = str(repo_root)
    before = len(cfg["repositories"])
    cfg["repositories"] = [r for r in cfg["repositories"] if r["path"] != s]
    cfg["repository_configs"].pop(s, None)
    cfg["recent_worktrees"].pop(s, None)
    if cfg.get("selected_repo") == s:
        cfg["selected_repo"] = None
    return len(cfg["repositories"]) != before


def get_repo_config(cfg: dict, repo_root: Path) -> dict:
    """Settings for one repository, with defaults for anything unset."""
    stored = cfg.get("repository_configs", {}).get(str(repo_root), {})
    return {
        "main_branch": stored.get("main_branch"),
        "init_command": stored.get("init_command"),
    }


def set_repo_config(cfg: dict, repo_root: Path, main_branch: str | None = None,
                    init_command: str | None = None):
    cfg.setdefault("repository_configs", {})[str(repo_root)] = {
        "main_branch": main_branch or None,
        "init_command": init_command or None,
    }


def set_selected_repo(cfg: dict, repo_root: Path | None):
    cfg["selected_repo"] = str(repo_root) if repo_root else None


def push_recent_worktree(cfg: dict, repo_root: Path, worktree_path: Path):
    """Remember the last worktree opened in a repository."""
    cfg.setdefault("recent_worktrees", {})[str(repo_root)] = str(worktree_path)


def get_recent_worktree(cfg: dict, repo_root: Path) -> str | None:
    return cfg.get("recent_worktrees", {}).get(str(repo_root))


def get_worktree_terminals(cfg: dict, worktree_path: Path) -> dict:
    """Terminal layout saved for a worktree."""
    saved = cfg.get("worktree_terminals", {}).get(str(worktree_path))
    return saved or {"terminals": [], "next_terminal_id": 1}


def set_worktree_terminals(cfg: dict, worktree_path: Path, terminals: dict):
    cfg.setdefault("worktree_terminals", {})[str(worktree_path)] = terminals


def remove_worktree_terminals(cfg: dict, worktree_path: Path) -> bool:
    return cfg.setdefault("worktree_terminals", {}).pop(str(worktree_path), None) is not None


def get_setting(cfg: dict, key: str):
    return cfg.get("settings", {}).get(key, DEFAULT_SETTINGS.get(key))
