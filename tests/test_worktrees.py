"""Tests for the worktree lifecycle."""

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

import git_utils
import worktrees
from conftest import commit_file, git
from error_handler import (BranchInUse, NotFound, PartialArchive, PathCollision,
                           SubprocessFailure, Unmerged, WorktreeError)


def _worktree_paths(repo: Path) -> list[Path]:
    return [info.path for info in git_utils.list_worktrees(repo)]


class TestRepoLocks:
    """Tests for per-repository locking."""

    def test_same_repo_same_lock(self, temp_git_repo: Path):
        locks = worktrees.RepoLocks()

        assert locks.lock_for(temp_git_repo) is locks.lock_for(temp_git_repo / ".." / "repo")

    def test_different_repos_different_locks(self, temp_dir: Path):
        locks = worktrees.RepoLocks()

        assert locks.lock_for(temp_dir / "a") is not locks.lock_for(temp_dir / "b")

    def test_hold_excludes(self, temp_dir: Path):
        locks = worktrees.RepoLocks()
        acquired = threading.Event()

        def contender():
            with locks.hold(temp_dir):
                acquired.set()

        with locks.hold(temp_dir):
            thread = threading.Thread(target=contender)
            thread.start()
            assert not acquired.wait(0.2)
        thread.join(2)
        assert acquired.is_set()


class TestResolveBranch:
    """Tests for branch resolution."""

    def test_new_branch(self, temp_git_repo: Path):
        resolution = worktrees.resolve_branch(temp_git_repo, "topic")

        assert resolution.new_branch
        assert resolution.base_commit is None

    def test_existing_branch(self, temp_git_repo: Path):
        head = git(temp_git_repo, "rev-parse", "HEAD")

        resolution = worktrees.resolve_branch(temp_git_repo, "main")

        assert not resolution.new_branch
        assert resolution.base_commit == head


class TestCreateWorktree:
    """Tests for create_worktree."""

    def test_creates_sibling_with_new_branch(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "Add Dark Mode")

        assert info.branch == "add-dark-mode"
        assert info.path == temp_git_repo.parent / "repo-add-dark-mode"
        assert info.path.is_dir()
        assert info.head == git(temp_git_repo, "rev-parse", "main")
        assert info.path in _worktree_paths(temp_git_repo)

    def test_prefix(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "fix bug", prefix="Jane")

        assert info.branch == "jane/fix-bug"
        assert info.path.name == "repo-jane-fix-bug"

    def test_base_branch(self, temp_git_repo: Path):
        git(temp_git_repo, "checkout", "-b", "develop")
        develop_head = commit_file(temp_git_repo, "dev.txt", "dev\n", "Develop work")
        git(temp_git_repo, "checkout", "main")

        info = worktrees.create_worktree(temp_git_repo, "topic", base_branch="develop")

        assert info.head == develop_head

    def test_reuses_existing_branch_at_its_head(self, temp_git_repo: Path):
        git(temp_git_repo, "checkout", "-b", "topic")
        topic_head = commit_file(temp_git_repo, "t.txt", "t\n", "Topic work")
        git(temp_git_repo, "checkout", "main")

        info = worktrees.create_worktree(temp_git_repo, "topic", base_branch="main")

        assert info.branch == "topic"
        assert info.head == topic_head
        assert git(info.path, "symbolic-ref", "--short", "HEAD") == "topic"
        assert git(temp_git_repo, "rev-parse", "topic") == topic_head

    def test_path_collision(self, temp_git_repo: Path):
        (temp_git_repo.parent / "repo-topic").mkdir()

        with pytest.raises(PathCollision):
            worktrees.create_worktree(temp_git_repo, "topic")

        assert "topic" not in git_utils.list_branches(temp_git_repo)

    def test_branch_in_use(self, temp_git_repo: Path):
        with pytest.raises(BranchInUse) as exc_info:
            worktrees.create_worktree(temp_git_repo, "main")

        assert exc_info.value.worktree_path == temp_git_repo
        assert not (temp_git_repo.parent / "repo-main").exists()

    def test_bad_base_leaves_nothing_behind(self, temp_git_repo: Path):
        with pytest.raises(SubprocessFailure):
            worktrees.create_worktree(temp_git_repo, "topic", base_branch="no-such-branch")

        assert not (temp_git_repo.parent / "repo-topic").exists()
        assert "topic" not in git_utils.list_branches(temp_git_repo)
        assert _worktree_paths(temp_git_repo) == [temp_git_repo]

    def test_failure_after_add_is_rolled_back(self, temp_git_repo: Path):
        real_rev_parse = git_utils.rev_parse

        def failing_rev_parse(repo, ref):
            if Path(repo).name == "repo-topic":
                raise SubprocessFailure(["git", "rev-parse"], 128, "boom")
            return real_rev_parse(repo, ref)

        with patch("worktrees.git_utils.rev_parse", side_effect=failing_rev_parse):
            with pytest.raises(SubprocessFailure):
                worktrees.create_worktree(temp_git_repo, "topic")

        assert not (temp_git_repo.parent / "repo-topic").exists()
        assert "topic" not in git_utils.list_branches(temp_git_repo)
        assert _worktree_paths(temp_git_repo) == [temp_git_repo]

    def test_rollback_keeps_preexisting_branch(self, temp_git_repo: Path):
        git(temp_git_repo, "branch", "topic")

        with patch("worktrees.git_utils.checkout_branch",
                   side_effect=SubprocessFailure(["git", "checkout"], 1, "boom")):
            with pytest.raises(SubprocessFailure):
                worktrees.create_worktree(temp_git_repo, "topic")

        assert "topic" in git_utils.list_branches(temp_git_repo)
        assert not (temp_git_repo.parent / "repo-topic").exists()


class TestMergeChecks:
    """Tests for merge status."""

    def test_fresh_branch_is_merged(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")

        assert worktrees.check_merged(temp_git_repo, info, "main")

    def test_branch_with_commits_is_unmerged(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")
        commit_file(info.path, "t.txt", "t\n", "Topic work")

        assert not worktrees.check_merged(temp_git_repo, info, "main")

        git(temp_git_repo, "merge", "--ff-only", "topic")
        assert worktrees.check_merged(temp_git_repo, info, "main")

    def test_detached_worktree(self, temp_git_repo: Path):
        info = git_utils.list_worktrees(temp_git_repo)[0]
        info.branch = None

        with pytest.raises(NotFound):
            worktrees.check_merged(temp_git_repo, info, "main")

    def test_check_branch_merged_status(self, temp_git_repo: Path):
        git(temp_git_repo, "branch", "topic")

        status = worktrees.check_branch_merged(temp_git_repo, "topic")

        assert status.is_fully_merged
        assert status.main_branch == "main"
        assert status.branch_name == "topic"


class TestArchiveWorktree:
    """Tests for archive_worktree."""

    def test_archive_merged(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")

        result = worktrees.archive_worktree(temp_git_repo, info.path)

        assert result.worktree_removed and result.branch_deleted
        assert not info.path.exists()
        assert "topic" not in git_utils.list_branches(temp_git_repo)
        assert _worktree_paths(temp_git_repo) == [temp_git_repo]

    def test_refuses_unmerged(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")
        commit_file(info.path, "t.txt", "t\n", "Topic work")

        with pytest.raises(Unmerged):
            worktrees.archive_worktree(temp_git_repo, info.path)

        assert info.path.is_dir()
        assert "topic" in git_utils.list_branches(temp_git_repo)

    def test_force_unmerged(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")
        commit_file(info.path, "t.txt", "t\n", "Topic work")
        (info.path / "scratch.txt").write_text("uncommitted\n")

        result = worktrees.archive_worktree(temp_git_repo, info.path, force=True)

        assert result.branch_deleted
        assert not info.path.exists()
        assert "topic" not in git_utils.list_branches(temp_git_repo)

    def test_merged_into_target_while_root_is_elsewhere(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")
        commit_file(info.path, "t.txt", "t\n", "Topic work")
        git(temp_git_repo, "merge", "--ff-only", "topic")
        git(temp_git_repo, "checkout", "-b", "develop", "HEAD~1")

        result = worktrees.archive_worktree(temp_git_repo, info.path, target_branch="main")

        assert result.worktree_removed and result.branch_deleted
        assert "topic" not in git_utils.list_branches(temp_git_repo)

    def test_unknown_path(self, temp_git_repo: Path, temp_dir: Path):
        with pytest.raises(NotFound):
            worktrees.archive_worktree(temp_git_repo, temp_dir / "nowhere")

    def test_main_worktree_is_refused(self, temp_git_repo: Path):
        with pytest.raises(WorktreeError):
            worktrees.archive_worktree(temp_git_repo, temp_git_repo, force=True)

        assert (temp_git_repo / "README.md").exists()

    def test_branch_delete_failure_is_partial(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")

        with patch("worktrees.git_utils.delete_branch",
                   side_effect=SubprocessFailure(["git", "branch", "-d"], 1, "locked")):
            with pytest.raises(PartialArchive) as exc_info:
                worktrees.archive_worktree(temp_git_repo, info.path)

        assert exc_info.value.worktree_removed
        assert not exc_info.value.branch_deleted
        assert not info.path.exists()

    def test_manual_cleanup_when_git_remove_fails(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")

        with patch("worktrees.git_utils.remove_worktree",
                   side_effect=SubprocessFailure(["git", "worktree", "remove"], 128, "busy")):
            result = worktrees.archive_worktree(temp_git_repo, info.path, force=True)

        assert result.worktree_removed
        assert not info.path.exists()
        assert _worktree_paths(temp_git_repo) == [temp_git_repo]


class TestMergeAndRebase:
    """Tests for merge_worktree and rebase_worktree."""

    def test_merge_and_delete(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")
        commit_file(info.path, "t.txt", "t\n", "Topic work")

        worktrees.merge_worktree(temp_git_repo, "topic", "main", no_ff=True, message="Merge topic",
                                 delete_worktree=True, worktree_path=info.path)

        assert (temp_git_repo / "t.txt").exists()
        assert not info.path.exists()
        assert "topic" not in git_utils.list_branches(temp_git_repo)

    def test_squash_merge_and_delete(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")
        commit_file(info.path, "t.txt", "t\n", "Topic work")

        worktrees.merge_worktree(temp_git_repo, "topic", "main", squash=True, message="Squashed topic",
                                 delete_worktree=True, worktree_path=info.path)

        assert git(temp_git_repo, "log", "-1", "--pretty=format:%s") == "Squashed topic"
        assert not info.path.exists()

    def test_rebase(self, temp_git_repo: Path):
        info = worktrees.create_worktree(temp_git_repo, "topic")
        commit_file(info.path, "t.txt", "t\n", "Topic work")
        main_head = commit_file(temp_git_repo, "m.txt", "m\n", "Main work")

        worktrees.rebase_worktree(info.path, "topic", "main")

        assert git_utils.is_ancestor(temp_git_repo, main_head, "topic")
