"""Naming helpers for worktree directories and branches."""

import re
from pathlib import Path

MAX_NAME_LENGTH = 50
PLACEHOLDER = "worktree"

_UNSAFE_RUN = re.compile(r"[^a-z0-9/_-]+")
_DASH_RUN = re.compile(r"-{2,}")
_SEGMENT_EDGES = "-_"


def sanitize(text: str) -> str:
    """Turn free text into a name that is safe as a path suffix and a ref.

    Lower-cases, replaces each run of characters outside ``[a-z0-9/_-]`` with
    one ``-``, collapses repeated separators, trims separators at the ends of
    every ``/`` segment and truncates to ``MAX_NAME_LENGTH``. Never returns an
    empty string. ``sanitize(sanitize(x)) == sanitize(x)`` for every ``x``.
    """
    cleaned = _UNSAFE_RUN.sub("-", text.lower())
    cleaned = _DASH_RUN.sub("-", cleaned)
    segments = (segment.strip(_SEGMENT_EDGES) for segment in cleaned.split("/"))
    cleaned = "/".join(segment for segment in segments if segment)
    cleaned = cleaned[:MAX_NAME_LENGTH].rstrip(_SEGMENT_EDGES + "/")
    return cleaned or PLACEHOLDER


def compose_branch_name(raw: str, prefix: str | None = None) -> str:
    """Sanitize a branch prompt, optionally under a namespace such as a username."""
    name = sanitize(raw)
    if prefix and prefix.strip():
        return f"{sanitize(prefix)}/{name}"
    return name


def worktree_dir_name(repo_root: Path, branch: str) -> str:
    """Directory name for a worktree: `<repo-basename>-<branch with / as ->`."""
    return f"{repo_root.name}-{branch.replace('/', '-')}"


def worktree_path_for(repo_root: Path, branch: str) -> Path:
    """Sibling directory of the repository root that holds the worktree."""
    return repo_root.parent / worktree_dir_name(repo_root, branch)


def extract_worktree_name(worktree_path: Path, repo_root: Path) -> str:
    """Inverse of worktree_dir_name: the suffix after `<repo-basename>-`."""
    prefix = f"{repo_root.name}-"
    name = worktree_path.name
    if name.startswith(prefix):
        return name[len(prefix):]
    return name
