"""Control-plane operations.

Each handler is a plain function ``handler(ctx, params) -> result`` where
`params` is the request's `input` object and the result is anything
`bridge.to_jsonable` can serialize. Git-invoking handlers hold the
repository's lock for their whole duration.
"""

from pathlib import Path

import config
import git_utils
import worktrees
from error_handler import WorktreeError
from logging_config import get_logger

logger = get_logger(__name__)


def _require(params: dict, key: str):
    value = (params or {}).get(key)
    if value is None or value == "":
        raise WorktreeError(f"Missing required input '{key}'", field=key)
    return value


def _repo(params: dict) -> Path:
    return Path(_require(params, "repoPath"))


def _owning_repo(params: dict, worktree_path: Path) -> Path:
    """`repoPath` when given, else the main repository of the worktree."""
    repo_path = params.get("repoPath")
    return Path(repo_path) if repo_path else git_utils.repo_root_of(worktree_path)


def _repo_config(ctx, repo_root: Path) -> dict:
    return config.get_repo_config(ctx.load_state(), repo_root)


def get_worktrees(ctx, params):
    repo = _repo(params)
    with ctx.repo_locks.hold(repo):
        return git_utils.list_worktrees(repo)


def get_branches(ctx, params):
    repo = _repo(params)
    with ctx.repo_locks.hold(repo):
        return git_utils.list_branches(repo)


def get_git_username(ctx, params):
    repo = _repo(params)
    with ctx.repo_locks.hold(repo):
        return git_utils.get_git_username(repo)


def get_default_branch(ctx, params):
    repo = _repo(params)
    main_branch = _repo_config(ctx, repo)["main_branch"]
    with ctx.repo_locks.hold(repo):
        return git_utils.get_default_branch(repo, main_branch)


def create_worktree(ctx, params):
    """Create a worktree; the result carries the repository's init command, if any."""
    repo = _repo(params)
    repo_config = _repo_config(ctx, repo)
    with ctx.repo_locks.hold(repo):
        info = worktrees.create_worktree(
            repo,
            _require(params, "branchName"),
            base_branch=params.get("baseBranch") or None,
            prefix=params.get("prefix") or None,
        )
    with ctx.update_state() as state:
        config.push_recent_worktree(state, repo, info.path)
    return {
        "path": info.path,
        "branch": info.branch,
        "head": info.head,
        "initCommand": repo_config["init_command"],
    }


def check_branch_merged(ctx, params):
    repo = _repo(params)
    main_branch = _repo_config(ctx, repo)["main_branch"]
    with ctx.repo_locks.hold(repo):
        return worktrees.check_branch_merged(repo, _require(params, "branchName"), main_branch)


def archive_worktree(ctx, params):
    repo = _repo(params)
    worktree_path = Path(_require(params, "worktreePath"))
    main_branch = _repo_config(ctx, repo)["main_branch"]
    with ctx.repo_locks.hold(repo):
        result = worktrees.archive_worktree(repo, worktree_path, force=bool(params.get("force")),
                                            target_branch=main_branch)
    for session_id in ctx.sessions.sessions_in(worktree_path):
        ctx.sessions.dispose(session_id)
    with ctx.update_state() as state:
        config.remove_worktree_terminals(state, worktree_path)
        if config.get_recent_worktree(state, repo) == str(worktree_path):
            state["recent_worktrees"].pop(str(repo), None)
    return result


def merge_worktree(ctx, params):
    repo = _repo(params)
    options = params.get("options") or {}
    worktree_path = options.get("worktreePath")
    with ctx.repo_locks.hold(repo):
        return worktrees.merge_worktree(
            repo,
            _require(params, "fromBranch"),
            _require(params, "toBranch"),
            squash=bool(options.get("squash")),
            no_ff=bool(options.get("noFF")),
            message=options.get("message") or None,
            delete_worktree=bool(options.get("deleteWorktree")),
            worktree_path=Path(worktree_path) if worktree_path else None,
        )


def rebase_worktree(ctx, params):
    worktree_path = Path(_require(params, "worktreePath"))
    with ctx.repo_locks.hold(_owning_repo(params, worktree_path)):
        return worktrees.rebase_worktree(worktree_path, _require(params, "fromBranch"),
                                         _require(params, "ontoBranch"))


def get_worktree_status(ctx, params):
    worktree_path = Path(_require(params, "worktreePath"))
    with ctx.repo_locks.hold(_owning_repo(params, worktree_path)):
        status = git_utils.get_worktree_status(worktree_path)
    return {
        "modified": status.modified,
        "not_added": status.not_added,
        "deleted": status.deleted,
        "created": status.created,
        "staged": status.staged,
        "hasChanges": status.has_changes,
        "hasStaged": status.has_staged,
    }


def get_commit_log(ctx, params):
    worktree_path = Path(_require(params, "worktreePath"))
    base_branch = _require(params, "baseBranch")
    with ctx.repo_locks.hold(_owning_repo(params, worktree_path)):
        return git_utils.get_commit_log(worktree_path, base_branch)


def get_saved_repos(ctx, params):
    return ctx.load_state()["repositories"]


def save_repo(ctx, params):
    """Register a repository; the path may point anywhere inside it."""
    repo = git_utils.ensure_repo_root(_repo(params))
    with ctx.update_state() as state:
        return config.add_repository(state, repo)


def remove_repo(ctx, params):
    repo = _repo(params)
    with ctx.update_state() as state:
        return config.remove_repository(state, repo)


def get_selected_repo(ctx, params):
    return ctx.load_state().get("selected_repo")


def set_selected_repo(ctx, params):
    repo = (params or {}).get("repoPath")
    with ctx.update_state() as state:
        config.set_selected_repo(state, Path(repo) if repo else None)
    return True


def get_repo_config(ctx, params):
    return _repo_config(ctx, _repo(params))


def save_repo_config(ctx, params):
    repo = _repo(params)
    settings = params.get("config") or {}
    with ctx.update_state() as state:
        config.set_repo_config(state, repo, settings.get("main_branch"), settings.get("init_command"))
        return config.get_repo_config(state, repo)


def get_recent_worktree(ctx, params):
    return config.get_recent_worktree(ctx.load_state(), _repo(params))


def set_recent_worktree(ctx, params):
    with ctx.update_state() as state:
        config.push_recent_worktree(state, _repo(params), Path(_require(params, "worktreePath")))
    return True


def get_worktree_terminals(ctx, params):
    return config.get_worktree_terminals(ctx.load_state(), Path(_require(params, "worktreePath")))


def save_worktree_terminals(ctx, params):
    with ctx.update_state() as state:
        config.set_worktree_terminals(state, Path(_require(params, "worktreePath")),
                                      _require(params, "terminals"))
    return True


def cleanup_worktree_terminals(ctx, params):
    """Dispose the worktree's sessions and forget its saved terminal layout."""
    worktree_path = Path(_require(params, "worktreePath"))
    for session_id in ctx.sessions.sessions_in(worktree_path):
        ctx.sessions.dispose(session_id)
    with ctx.update_state() as state:
        config.remove_worktree_terminals(state, worktree_path)
    return True


OPERATIONS = {
    "getWorktrees": get_worktrees,
    "getBranches": get_branches,
    "getGitUsername": get_git_username,
    "getDefaultBranch": get_default_branch,
    "createWorktree": create_worktree,
    "checkBranchMerged": check_branch_merged,
    "archiveWorktree": archive_worktree,
    "mergeWorktree": merge_worktree,
    "rebaseWorktree": rebase_worktree,
    "getWorktreeStatus": get_worktree_status,
    "getCommitLog": get_commit_log,
    "getSavedRepos": get_saved_repos,
    "saveRepo": save_repo,
    "removeRepo": remove_repo,
    "getSelectedRepo": get_selected_repo,
    "setSelectedRepo": set_selected_repo,
    "getRepoConfig": get_repo_config,
    "saveRepoConfig": save_repo_config,
    "getRecentWorktree": get_recent_worktree,
    "setRecentWorktree": set_recent_worktree,
    "getWorktreeTerminals": get_worktree_terminals,
    "saveWorktreeTerminals": save_worktree_terminals,
    "cleanupWorktreeTerminals": cleanup_worktree_terminals,
}
