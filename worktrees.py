"""Worktree lifecycle: branch resolution, creation, merge checks and removal."""

import shutil
import threading
from contextlib import contextmanager
from pathlib import Path

import git_utils
from error_handler import (BranchInUse, NotFound, PartialArchive, PathCollision,
                           SubprocessFailure, Unmerged, WorktreeError)
from logging_config import get_logger
from models import ArchiveResult, BranchRef, BranchResolution, MergeStatus, WorktreeInfo
from naming import compose_branch_name, worktree_path_for

logger = get_logger(__name__)


class RepoLocks:
    """One mutex per repository root.

    git's worktree metadata is not safe under concurrent writers, so every
    git-invoking operation on a repository runs while holding its lock.
    Different repositories never share a lock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, repo_root: Path) -> threading.Lock:
        key = str(Path(repo_root).resolve())
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, repo_root: Path):
        lock = self.lock_for(repo_root)
        with lock:
            yield


def branch_ref(repo_root: Path, name: str) -> BranchRef:
    """Look up `name` among local branches."""
    if name not in git_utils.list_branches(repo_root):
        return BranchRef(name=name, exists=False)
    return BranchRef(name=name, exists=True, head_commit=git_utils.rev_parse(repo_root, name))


def resolve_branch(repo_root: Path, name: str) -> BranchResolution:
    """Decide whether a worktree reuses `name` or creates it."""
    ref = branch_ref(repo_root, name)
    if ref.exists:
        return BranchResolution(new_branch=False, base_commit=ref.head_commit)
    return BranchResolution(new_branch=True)


def _checked_out_at(repo_root: Path, branch: str) -> Path | None:
    for info in git_utils.list_worktrees(repo_root):
        if info.branch == branch:
            return info.path
    return None


def create_worktree(repo_root: Path, raw_branch_input: str, base_branch: str | None = None,
                    prefix: str | None = None) -> WorktreeInfo:
    """Create a sibling worktree for a branch derived from free text.

    Either both the directory and the branch exist afterwards or neither
    does (a branch that existed before the call is left alone).
    """
    repo_root = Path(repo_root)
    branch = compose_branch_name(raw_branch_input, prefix)
    path = worktree_path_for(repo_root, branch)
    if path.exists():
        raise PathCollision(path)

    resolution = resolve_branch(repo_root, branch)
    if not resolution.new_branch:
        holder = _checked_out_at(repo_root, branch)
        if holder is not None:
            raise BranchInUse(branch, holder)

    created_branch = False
    try:
        if resolution.new_branch:
            logger.info(f"Creating worktree {path} on new branch {branch} from {base_branch or 'HEAD'}")
            git_utils.add_worktree(repo_root, path, ref=base_branch or "HEAD", new_branch=branch)
            created_branch = True
        else:
            logger.info(f"Creating worktree {path} on existing branch {branch} at {resolution.base_commit}")
            git_utils.add_worktree(repo_root, path, ref=resolution.base_commit, detach=True)
            git_utils.checkout_branch(path, branch, start_point=resolution.base_commit, reset=True)
        head = git_utils.rev_parse(path, "HEAD")
    except (WorktreeError, OSError):
        _discard_partial_worktree(repo_root, path, branch if created_branch else None)
        raise

    return WorktreeInfo(path=path, branch=branch, head=head)


def _discard_partial_worktree(repo_root: Path, path: Path, created_branch: str | None) -> None:
    """Best-effort removal of whatever a failed creation left behind."""
    logger.warning(f"Cleaning up partially created worktree at {path}")
    cp = git_utils.run_git(["-C", str(repo_root), "worktree", "remove", "--force", str(path)], check=False)
    if cp.returncode != 0 and path.exists():
        shutil.rmtree(path, ignore_errors=True)
    git_utils.run_git(["-C", str(repo_root), "worktree", "prune"], check=False)
    if created_branch:
        git_utils.run_git(["-C", str(repo_root), "branch", "-D", created_branch], check=False)


def check_merged(repo_root: Path, worktree: WorktreeInfo, target_branch: str) -> bool:
    """True iff every commit on the worktree's branch is reachable from `target_branch`."""
    if not worktree.branch:
        raise NotFound(f"Worktree {worktree.path} has no branch checked out", path=worktree.path)
    return git_utils.is_ancestor(repo_root, worktree.branch, target_branch)


def check_branch_merged(repo_root: Path, branch: str, main_branch: str | None = None) -> MergeStatus:
    """Merge status of `branch` against the configured or detected main branch."""
    target = git_utils.get_default_branch(repo_root, main_branch)
    merged = git_utils.is_ancestor(repo_root, branch, target)
    return MergeStatus(is_fully_merged=merged, main_branch=target, branch_name=branch)


def archive_worktree(repo_root: Path, worktree_path: Path, force: bool = False,
                     target_branch: str | None = None) -> ArchiveResult:
    """Remove a worktree and, when merged or forced, its branch.

    Without `force` an unmerged branch raises Unmerged and nothing changes.
    """
    repo_root = Path(repo_root)
    worktree = git_utils.find_worktree(repo_root, worktree_path)
    if worktree is None:
        raise NotFound(f"No worktree registered at {worktree_path}", path=worktree_path)
    if worktree.is_main:
        raise WorktreeError(f"{worktree.path} is the main worktree and cannot be archived", path=worktree.path)

    merged = True
    if worktree.branch:
        target = git_utils.get_default_branch(repo_root, target_branch)
        merged = check_merged(repo_root, worktree, target)
        if not merged and not force:
            raise Unmerged(worktree.branch, target)

    _remove_worktree_dir(repo_root, worktree.path, force)

    branch_deleted = False
    if worktree.branch:
        # merge state was checked against the target above; `-d` would check HEAD
        try:
            git_utils.delete_branch(repo_root, worktree.branch, force=True)
        except SubprocessFailure as e:
            raise PartialArchive(worktree.path, worktree.branch, worktree_removed=True,
                                 branch_deleted=False, reason=e.message) from e
        branch_deleted = True

    logger.info(f"Archived worktree {worktree.path} (branch deleted: {branch_deleted})")
    return ArchiveResult(path=worktree.path, branch=worktree.branch,
                         worktree_removed=True, branch_deleted=branch_deleted)


def _remove_worktree_dir(repo_root: Path, path: Path, force: bool) -> None:
    try:
        git_utils.remove_worktree(repo_root, path, force=force)
        return
    except SubprocessFailure as e:
        if not force:
            raise
        logger.warning(f"git worktree remove failed, cleaning up manually: {e.message}")
    shutil.rmtree(path, ignore_errors=True)
    git_utils.prune_worktrees(repo_root)
    if path.exists() or git_utils.find_worktree(repo_root, path) is not None:
        raise SubprocessFailure(["git", "worktree", "remove", "--force", str(path)], 1,
                                f"Could not remove worktree at {path}")


def merge_worktree(repo_root: Path, from_branch: str, to_branch: str, squash: bool = False,
                   no_ff: bool = False, message: str | None = None, delete_worktree: bool = False,
                   worktree_path: Path | None = None) -> bool:
    """Merge `from_branch` into `to_branch` in the main worktree."""
    git_utils.checkout_branch(repo_root, to_branch)
    args = ["-C", str(repo_root), "merge"]
    if squash:
        args.append("--squash")
    if no_ff:
        args.append("--no-ff")
    if message and not squash:
        args += ["-m", message]
    args.append(from_branch)
    git_utils.run_git(args)
    if squash:
        git_utils.run_git(["-C", str(repo_root), "commit", "-m", message or f"Merge {from_branch} (squashed)"])

    if delete_worktree and worktree_path:
        # a squash merge leaves from_branch unreachable from to_branch
        archive_worktree(repo_root, worktree_path, force=squash, target_branch=to_branch)
    return True


def rebase_worktree(worktree_path: Path, from_branch: str, onto_branch: str) -> bool:
    """Rebase `from_branch` onto `onto_branch` inside its worktree."""
    git_utils.checkout_branch(worktree_path, from_branch)
    git_utils.run_git(["-C", str(worktree_path), "rebase", onto_branch])
    return True
