"""Tests for per-agent worktree management (mocked git)."""

from unittest.mock import MagicMock, patch

import pytest

from cityctl.config import RigConfig
from cityctl.errors import WorktreeError
from cityctl.repo_manager import SafetyStatus
from cityctl.worktrees import (
    GITIGNORE_SENTINEL,
    _base36,
    ensure_worktree,
    ensure_worktree_gitignore,
    new_branch_name,
    remove_worktree,
    sweep_worktrees,
    sync_worktree,
    worktree_path,
)


class TestNaming:
    def test_path_layout(self, tmp_path):
        assert worktree_path(tmp_path, "api", "worker-1") == tmp_path / ".gc" / "worktrees" / "api" / "worker-1"

    def test_base36(self):
        assert _base36(0) == "0"
        assert _base36(35) == "z"
        assert _base36(36) == "10"

    def test_branch_names_unique(self):
        with patch("cityctl.worktrees.time.time_ns", side_effect=[1000, 1001]):
            a = new_branch_name("worker-1")
            b = new_branch_name("worker-1")
        assert a.startswith("gc/worker-1-")
        assert a != b


class TestEnsureWorktree:
    def test_reuses_existing(self, tmp_path):
        path = worktree_path(tmp_path, "api", "w")
        path.mkdir(parents=True)
        (path / ".git").write_text("gitdir: elsewhere\n")
        with patch("cityctl.worktrees.RepoManager") as mock_repo:
            mock_repo.return_value.current_branch.return_value = "gc/w-abc"
            assert ensure_worktree(tmp_path / "repo", tmp_path, "api", "w") == (path, "gc/w-abc")
        mock_repo.return_value.add_worktree.assert_not_called()

    def test_reuses_existing_with_unreadable_branch(self, tmp_path):
        path = worktree_path(tmp_path, "api", "w")
        path.mkdir(parents=True)
        (path / ".git").write_text("gitdir: elsewhere\n")
        with patch("cityctl.worktrees.RepoManager") as mock_repo:
            mock_repo.return_value.current_branch.return_value = ""
            assert ensure_worktree(tmp_path / "repo", tmp_path, "api", "w") == (path, "")

    def test_creates_new(self, tmp_path):
        with patch("cityctl.worktrees.RepoManager") as mock_repo:
            path, branch = ensure_worktree(tmp_path / "repo", tmp_path, "api", "w")
        assert branch.startswith("gc/w-")
        mock_repo.return_value.add_worktree.assert_called_once_with(path, branch)
        assert path.parent.is_dir()

    def test_git_failure_raises(self, tmp_path):
        with patch("cityctl.worktrees.RepoManager") as mock_repo:
            mock_repo.return_value.add_worktree.side_effect = WorktreeError("nope")
            with pytest.raises(WorktreeError):
                ensure_worktree(tmp_path / "repo", tmp_path, "api", "w")


class TestRemoveWorktree:
    def test_absent_is_noop(self, tmp_path):
        with patch("cityctl.worktrees.RepoManager") as mock_repo:
            remove_worktree(tmp_path, tmp_path / "missing")
        mock_repo.assert_not_called()

    def test_falls_back_to_rmtree_and_prunes(self, tmp_path):
        wt = tmp_path / "wt"
        wt.mkdir()
        (wt / "file").write_text("x")
        with patch("cityctl.worktrees.RepoManager") as mock_repo:
            mock_repo.return_value.remove_worktree.side_effect = WorktreeError("locked")
            remove_worktree(tmp_path, wt)
        assert not wt.exists()
        mock_repo.return_value.prune_worktrees.assert_called_once()


class TestSweepWorktrees:
    def _make(self, city, rig, agent):
        path = worktree_path(city, rig, agent)
        path.mkdir(parents=True)
        return path

    def test_removed_rig_deleted_outright(self, tmp_path):
        self._make(tmp_path, "gone", "w")
        with patch("cityctl.worktrees.RepoManager") as mock_repo:
            result = sweep_worktrees(tmp_path, [])
        assert not (tmp_path / ".gc" / "worktrees").exists()
        assert len(result.removed) == 1
        mock_repo.return_value.safety_status.assert_not_called()

    def test_unsafe_worktrees_kept(self, tmp_path):
        dirty = self._make(tmp_path, "api", "dirty")
        clean = self._make(tmp_path, "api", "clean")
        rigs = [RigConfig(name="api", path=tmp_path / "api")]

        def repo_for(path, *args, **kwargs):
            repo = MagicMock()
            repo.safety_status.return_value = SafetyStatus(
                dirty=(path == dirty), unpushed=False, stashes=False
            )
            return repo

        with patch("cityctl.worktrees.RepoManager", side_effect=repo_for), \
                patch("cityctl.worktrees.remove_worktree") as mock_remove:
            result = sweep_worktrees(tmp_path, rigs)

        mock_remove.assert_called_once_with(tmp_path / "api", clean)
        assert result.skipped == [(dirty, ["uncommitted changes"])]

    @pytest.mark.parametrize("flags", [
        {"dirty": True, "unpushed": False, "stashes": False},
        {"dirty": False, "unpushed": True, "stashes": False},
        {"dirty": False, "unpushed": False, "stashes": True},
    ])
    def test_each_flag_blocks_removal(self, tmp_path, flags):
        self._make(tmp_path, "api", "w")
        rigs = [RigConfig(name="api", path=tmp_path / "api")]
        with patch("cityctl.worktrees.RepoManager") as mock_repo, \
                patch("cityctl.worktrees.remove_worktree") as mock_remove:
            mock_repo.return_value.safety_status.return_value = SafetyStatus(**flags)
            sweep_worktrees(tmp_path, rigs)
        mock_remove.assert_not_called()

    def test_force_removes_unsafe(self, tmp_path):
        wt = self._make(tmp_path, "api", "w")
        rigs = [RigConfig(name="api", path=tmp_path / "api")]
        with patch("cityctl.worktrees.RepoManager") as mock_repo, \
                patch("cityctl.worktrees.remove_worktree") as mock_remove:
            mock_repo.return_value.safety_status.return_value = SafetyStatus(True, True, True)
            sweep_worktrees(tmp_path, rigs, force=True)
        mock_remove.assert_called_once_with(tmp_path / "api", wt)

    def test_force_with_missing_rig_repo(self, tmp_path):
        wt = self._make(tmp_path, "api", "w")
        rigs = [RigConfig(name="api", path=tmp_path / "deleted-repo")]
        result = sweep_worktrees(tmp_path, rigs, force=True)
        assert result.removed == [wt]
        assert not wt.exists()

    def test_no_root_is_noop(self, tmp_path):
        result = sweep_worktrees(tmp_path, [])
        assert result.removed == [] and result.skipped == []


class TestSyncWorktree:
    @pytest.fixture
    def repo(self):
        with patch("cityctl.worktrees.RepoManager") as mock_repo:
            instance = mock_repo.return_value
            instance.default_branch.return_value = "main"
            instance.has_uncommitted_changes.return_value = False
            yield instance

    def test_clean_sequence(self, repo, tmp_path):
        assert sync_worktree(tmp_path, "w") is True
        repo.fetch.assert_called_once()
        repo.stash.assert_not_called()
        repo.pull_rebase.assert_called_once_with("main")

    def test_dirty_stashes_and_pops(self, repo, tmp_path):
        repo.has_uncommitted_changes.return_value = True
        assert sync_worktree(tmp_path, "w") is True
        repo.stash.assert_called_once()
        repo.stash_pop.assert_called_once()

    def test_fetch_failure_stops(self, repo, tmp_path):
        repo.fetch.side_effect = WorktreeError("offline")
        assert sync_worktree(tmp_path, "w") is False
        repo.pull_rebase.assert_not_called()

    def test_pull_failure_restores_stash(self, repo, tmp_path):
        repo.has_uncommitted_changes.return_value = True
        repo.pull_rebase.side_effect = WorktreeError("conflict")
        assert sync_worktree(tmp_path, "w") is False
        repo.stash_pop.assert_called_once()

    def test_pop_failure_leaves_stash(self, repo, tmp_path):
        repo.has_uncommitted_changes.return_value = True
        repo.stash_pop.side_effect = WorktreeError("conflict")
        assert sync_worktree(tmp_path, "w") is False
        repo.stash_pop.assert_called_once()


class TestGitignore:
    def test_appends_once(self, tmp_path):
        (tmp_path / ".gitignore").write_text("node_modules")
        assert ensure_worktree_gitignore(tmp_path) is True
        assert ensure_worktree_gitignore(tmp_path) is False
        text = (tmp_path / ".gitignore").read_text()
        assert text.startswith("node_modules\n\n")
        assert text.count(GITIGNORE_SENTINEL) == 1

    def test_creates_file(self, tmp_path):
        assert ensure_worktree_gitignore(tmp_path) is True
        assert (tmp_path / ".gitignore").read_text().startswith(GITIGNORE_SENTINEL)
