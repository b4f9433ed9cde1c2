"""Git operations for the Many worktree manager."""

import subprocess
from pathlib import Path

from error_handler import MalformedListing, NotAGitRepository, SubprocessFailure
from logging_config import get_logger
from models import WorktreeInfo, WorktreeStatus

logger = get_logger(__name__)

HEADS_PREFIX = "refs/heads/"
DEFAULT_BRANCH_CANDIDATES = ("main", "master", "develop")


def run_git(args: list[str], cwd: Path | None = None, check: bool = True) -> subprocess.CompletedProcess[str]:
    """Run a git command with safe argument passing.

    A non-zero exit raises SubprocessFailure carrying stderr verbatim unless
    ``check`` is False, in which case the caller inspects ``returncode``.
    """
    cmd = ["git"] + list(args)
    logger.debug(f"Running {' '.join(cmd)} (cwd={cwd})")
    try:
        cp = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError:
        raise SubprocessFailure(cmd, 127, "Git not found on PATH.")
    except NotADirectoryError as e:
        raise SubprocessFailure(cmd, 128, str(e))
    if check and cp.returncode != 0:
        raise SubprocessFailure(cmd, cp.returncode, cp.stderr)
    return cp


def ensure_repo_root(path: Path) -> Path:
    """Return the repo root for any path inside a Git repo.

    Bare repositories are passed through as their own root.
    """
    path = Path(path)
    if not path.is_dir():
        raise NotAGitRepository(path, "no such directory")
    cp = run_git(["-C", str(path), "rev-parse", "--is-bare-repository"], check=False)
    if cp.returncode != 0:
        raise NotAGitRepository(path, cp.stderr)
    if cp.stdout.strip() == "true":
        return path.resolve()
    cp = run_git(["-C", str(path), "rev-parse", "--show-toplevel"], check=False)
    if cp.returncode != 0:
        raise NotAGitRepository(path, cp.stderr)
    return Path(cp.stdout.strip()).resolve()


def repo_root_of(path: Path) -> Path:
    """Root of the main worktree owning `path`, which may be a linked worktree.

    Every worktree of a repository shares one common git dir; its parent is
    the main worktree. A bare repository is its own root.
    """
    toplevel = ensure_repo_root(path)
    cp = run_git(["-C", str(toplevel), "rev-parse", "--git-common-dir"])
    common_dir = Path(cp.stdout.strip())
    if not common_dir.is_absolute():
        common_dir = toplevel / common_dir
    common_dir = common_dir.resolve()
    return common_dir.parent if common_dir.name == ".git" else common_dir


def git_version_ok(min_major: int = 2, min_minor: int = 5) -> bool:
    """Check if Git version meets minimum requirements."""
    try:
        v = run_git(["--version"], check=False).stdout.strip()
        parts = v.split()
        if len(parts) >= 3:
            nums = parts[2].split(".")
            major = int(nums[0])
            minor = int(nums[1])
            return (major > min_major) or (major == min_major and minor >= min_minor)
    except (ValueError, IndexError, AttributeError, SubprocessFailure) as e:
        logger.warning(f"Failed to parse git version: {e}")
    return False


def local_branch_name(ref: str) -> str:
    """'refs/heads/feature/x' -> 'feature/x'."""
    if ref.startswith(HEADS_PREFIX):
        return ref[len(HEADS_PREFIX):]
    return ref


def parse_porcelain_list(text: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain`.

    A record starts at each ``worktree`` line and collects attribute lines
    until the next one. The first record is the main worktree.
    """
    results: list[WorktreeInfo] = []
    current: WorktreeInfo | None = None
    for line_number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        key, _, val = line.partition(" ")
        if key == "worktree":
            current = WorktreeInfo(path=Path(val), branch=None, head=None, is_main=not results)
            results.append(current)
            continue
        if current is None:
            raise MalformedListing(line_number, line)
        if key == "HEAD":
            current.head = val or None
        elif key == "branch":
            current.branch = local_branch_name(val) if val and val != "(detached)" else None
        elif key == "bare":
            current.is_bare = True
        elif key == "detached":
            current.branch = None
        elif key == "locked":
            current.locked = True
        elif key == "prunable":
            current.prunable = True
    return results


def list_worktrees(repo_root: Path) -> list[WorktreeInfo]:
    """List all worktrees in a repository."""
    cp = run_git(["-C", str(repo_root), "worktree", "list", "--porcelain"])
    return parse_porcelain_list(cp.stdout)


def find_worktree(repo_root: Path, worktree_path: Path) -> WorktreeInfo | None:
    """Return the listed worktree at `worktree_path`, if any."""
    target = _resolved(worktree_path)
    for info in list_worktrees(repo_root):
        if _resolved(info.path) == target:
            return info
    return None


def _resolved(path: Path) -> Path:
    try:
        return Path(path).resolve()
    except (OSError, RuntimeError) as e:
        logger.warning(f"Failed to resolve path {path}: {e}")
        return Path(path)


def add_worktree(repo_root: Path, new_path: Path, ref: str | None = None,
                 new_branch: str | None = None, detach: bool = False) -> None:
    """Add a new worktree, optionally creating `new_branch` or detaching at `ref`."""
    args = ["-C", str(repo_root), "worktree", "add"]
    if detach:
        args.append("--detach")
    if new_branch:
        args += ["-b", new_branch]
    args.append(str(new_path))
    if ref:
        args.append(ref)
    run_git(args)


def remove_worktree(repo_root: Path, wt_path: Path, force: bool = False) -> None:
    """Remove a worktree."""
    args = ["-C", str(repo_root), "worktree", "remove"]
    if force:
        args.append("--force")
    args.append(str(wt_path))
    run_git(args)


def prune_worktrees(repo_root: Path):
    """Prune stale worktrees."""
    run_git(["-C", str(repo_root), "worktree", "prune"])


def checkout_branch(worktree_path: Path, branch: str, start_point: str | None = None,
                    reset: bool = False) -> None:
    """Check out `branch` in the worktree; with `reset`, force it to `start_point`."""
    args = ["-C", str(worktree_path), "checkout"]
    if reset:
        args += ["-B", branch]
        if start_point:
            args.append(start_point)
    else:
        args.append(branch)
    run_git(args)


def delete_branch(repo_root: Path, branch: str, force: bool = False) -> None:
    """Delete a local branch (`-d`, or `-D` when forced)."""
    run_git(["-C", str(repo_root), "branch", "-D" if force else "-d", branch])


def list_branches(repo_root: Path) -> list[str]:
    """Local branch names, sorted."""
    cp = run_git(["-C", str(repo_root), "branch", "--list", "--format=%(refname:short)"])
    return sorted({line.strip() for line in cp.stdout.splitlines() if line.strip()})


def current_branch(path: Path) -> str | None:
    """Branch checked out at `path`, None when detached."""
    cp = run_git(["-C", str(path), "symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
    return cp.stdout.strip() or None


def rev_parse(repo_root: Path, ref: str) -> str:
    """Resolve a ref to a commit id."""
    cp = run_git(["-C", str(repo_root), "rev-parse", "--verify", f"{ref}^{{commit}}"])
    return cp.stdout.strip()


def is_ancestor(repo_root: Path, ancestor: str, descendant: str) -> bool:
    """True when `ancestor` is reachable from `descendant`."""
    args = ["-C", str(repo_root), "merge-base", "--is-ancestor", ancestor, descendant]
    cp = run_git(args, check=False)
    if cp.returncode == 0:
        return True
    if cp.returncode == 1:
        return False
    raise SubprocessFailure(["git"] + args, cp.returncode, cp.stderr)


def get_default_branch(repo_root: Path, main_branch: str | None = None) -> str:
    """Configured main branch, else origin's HEAD, else a common name, else the current branch."""
    if main_branch:
        return main_branch
    cp = run_git(["-C", str(repo_root), "symbolic-ref", "refs/remotes/origin/HEAD"], check=False)
    if cp.returncode == 0 and cp.stdout.strip():
        return cp.stdout.strip().replace("refs/remotes/origin/", "", 1)
    branches = list_branches(repo_root)
    for candidate in DEFAULT_BRANCH_CANDIDATES:
        if candidate in branches:
            return candidate
    return current_branch(repo_root) or "main"


def get_git_username(repo_root: Path) -> str:
    """`user.name` from git config, or 'user'."""
    cp = run_git(["-C", str(repo_root), "config", "user.name"], check=False)
    return cp.stdout.strip() or "user"


def parse_status_porcelain(text: str) -> WorktreeStatus:
    """Parse `git status --porcelain` (v1) output."""
    status = WorktreeStatus()
    for line in text.splitlines():
        if len(line) < 4:
            continue
        index, work, path = line[0], line[1], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if index == "?" and work == "?":
            status.not_added.append(path)
            continue
        if index in "MADRC":
            status.staged.append(path)
        if index == "A":
            status.created.append(path)
        if "M" in (index, work):
            status.modified.append(path)
        if "D" in (index, work):
            status.deleted.append(path)
    return status


def get_worktree_status(worktree_path: Path) -> WorktreeStatus:
    """Working tree changes of a worktree."""
    cp = run_git(["-C", str(worktree_path), "status", "--porcelain"])
    return parse_status_porcelain(cp.stdout)


def get_commit_log(worktree_path: Path, base_branch: str) -> str:
    """Subjects of commits on HEAD that are not on `base_branch`, newest first."""
    cp = run_git(["-C", str(worktree_path), "log", f"{base_branch}..HEAD", "--pretty=format:%s"])
    return cp.stdout.strip()
