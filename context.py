"""Application context handed to every control-plane handler."""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field

import config
from error_handler import ErrorHandler, PersistenceUnavailable
from logging_config import ErrorLog, get_logger
from session import SessionManager
from worktrees import RepoLocks

logger = get_logger(__name__)


@dataclass
class AppContext:
    """Everything a handler may touch. There is no other shared state."""

    store: config.JsonStateStore
    sessions: SessionManager
    error_log: ErrorLog
    repo_locks: RepoLocks = field(default_factory=RepoLocks)
    error_handler: ErrorHandler | None = None
    _state_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        if self.error_handler is None:
            self.error_handler = ErrorHandler(self.error_log)

    @classmethod
    def create(cls, store: config.JsonStateStore | None = None, error_log: ErrorLog | None = None) -> "AppContext":
        """Build a context whose session settings come from the stored state."""
        store = store or config.JsonStateStore()
        error_log = error_log or ErrorLog()
        state = _load_or_default(store)
        sessions = SessionManager(
            buffer_bytes=config.get_setting(state, "session_buffer_bytes"),
            shell=config.get_setting(state, "shell"),
        )
        return cls(store=store, sessions=sessions, error_log=error_log)

    def load_state(self) -> dict:
        """Current state; unreadable storage degrades to defaults."""
        with self._state_lock:
            return _load_or_default(self.store)

    @contextmanager
    def update_state(self):
        """Read-modify-write the state under one lock."""
        with self._state_lock:
            state = _load_or_default(self.store)
            yield state
            self.store.save_state(state)


def _load_or_default(store) -> dict:
    try:
        return store.load_state()
    except PersistenceUnavailable as e:
        logger.warning(f"Using default state: {e.message}")
        return config.default_state()
