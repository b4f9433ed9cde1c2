"""Data models for the Many worktree manager."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


@dataclass
class Repository:
    """A registered repository."""

    path: Path
    name: str
    added_at: str


@dataclass
class RepositoryConfig:
    """Per-repository settings."""

    main_branch: str | None = None
    init_command: str | None = None


@dataclass
class BranchRef:
    """A branch name and whether it exists locally."""

    name: str
    exists: bool
    head_commit: str | None = None


@dataclass
class BranchResolution:
    """How a worktree attaches to its branch."""

    new_branch: bool
    base_commit: str | None = None


@dataclass
class WorktreeInfo:
    """Information about a Git worktree."""

    path: Path
    branch: str | None  # local name ('feature-x') or None (detached)
    head: str | None
    is_bare: bool = False
    is_main: bool = False
    locked: bool = False
    prunable: bool = False


@dataclass
class MergeStatus:
    """Result of checking a branch against the main branch."""

    is_fully_merged: bool
    main_branch: str
    branch_name: str


@dataclass
class ArchiveResult:
    """What an archive operation actually removed."""

    path: Path
    branch: str | None
    worktree_removed: bool
    branch_deleted: bool


@dataclass
class WorktreeStatus:
    """Working tree changes as reported by `git status --porcelain`."""

    modified: list[str] = field(default_factory=list)
    not_added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    staged: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.modified or self.not_added or self.deleted or self.created)

    @property
    def has_staged(self) -> bool:
        return bool(self.staged)


class SessionState(Enum):
    """Lifecycle of an interactive session."""

    CREATED = "created"
    ATTACHED = "attached"
    EXITED = "exited"
    DISPOSED = "disposed"


class EventKind(str, Enum):
    """Kinds of streaming session events."""

    DATA = "data"
    EXIT = "exit"
    TITLE_CHANGE = "titleChange"


@dataclass
class SessionEvent:
    """A single event streamed from a session."""

    session_id: str
    kind: EventKind
    payload: object = None

    def to_message(self) -> dict:
        return {"sessionId": self.session_id, "kind": self.kind.value, "payload": self.payload}


@dataclass
class SessionInfo:
    """Snapshot of a terminal session owned by the session registry."""

    id: str
    working_directory: Path
    command: list[str]
    pid: int | None
    state: SessionState
    started_at: float
    exit_code: int | None = None
