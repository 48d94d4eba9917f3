"""Git operations for agent worktrees.

Wraps the git CLI in a testable class. Every query runs against the path
passed at construction; worktree-level commands (add, remove, prune) run
against the rig's main repository.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import WorktreeError


@dataclass
class SafetyStatus:
    """Reasons a worktree must not be deleted."""
    dirty: bool
    unpushed: bool
    stashes: bool

    @property
    def safe_to_remove(self) -> bool:
        return not (self.dirty or self.unpushed or self.stashes)

    def reasons(self) -> list[str]:
        out = []
        if self.dirty:
            out.append("uncommitted changes")
        if self.unpushed:
            out.append("unpushed commits")
        if self.stashes:
            out.append("stashes")
        return out


class RepoManager:
    """Git operations for a repository or worktree.

    Args:
        worktree: Path to the repository or worktree
        timeout: Per-command timeout in seconds
    """

    def __init__(self, worktree: Path | str, timeout: int = 120):
        self.worktree = Path(worktree)
        self.timeout = timeout

    def _run_git(
        self, args: list[str], check: bool = True, timeout: int | None = None
    ) -> subprocess.CompletedProcess:
        """Run a git command in the worktree."""
        cmd = ["git"] + args
        return subprocess.run(
            cmd,
            cwd=self.worktree,
            capture_output=True,
            text=True,
            check=check,
            timeout=timeout or self.timeout,
        )

    def _git_or_raise(self, args: list[str], timeout: int | None = None) -> str:
        """Run git, translating failures into WorktreeError."""
        try:
            return self._run_git(args, timeout=timeout).stdout
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip() or f"exit {e.returncode}"
            raise WorktreeError(f"git {' '.join(args)}: {detail}") from e
        except subprocess.TimeoutExpired as e:
            raise WorktreeError(f"git {' '.join(args)}: timed out") from e
        except OSError as e:
            raise WorktreeError(f"git {' '.join(args)}: {e}") from e

    def _query(self, args: list[str]) -> subprocess.CompletedProcess | None:
        """Run a read-only git query; None if git could not be run at all."""
        try:
            return self._run_git(args, check=False)
        except (OSError, subprocess.TimeoutExpired):
            return None

    # --- Queries ---

    def current_branch(self) -> str:
        """Branch checked out in the worktree, or "" if it cannot be read."""
        result = self._query(["rev-parse", "--abbrev-ref", "HEAD"])
        if result is None or result.returncode != 0:
            return ""
        return result.stdout.strip()

    def default_branch(self) -> str:
        """Default branch from the origin/HEAD symref, falling back to main."""
        result = self._query(["symbolic-ref", "refs/remotes/origin/HEAD"])
        if result is not None and result.returncode == 0:
            ref = result.stdout.strip()
            if ref.startswith("refs/remotes/origin/"):
                return ref[len("refs/remotes/origin/"):]
        return "main"

    def has_uncommitted_changes(self) -> bool:
        """True if the worktree is dirty. Errors count as dirty."""
        result = self._query(["status", "--porcelain"])
        if result is None or result.returncode != 0:
            return True
        return bool(result.stdout.strip())

    def has_unpushed_commits(self) -> bool:
        """True if local commits are not on any remote.

        With an upstream, compares against it. Without one, any commit that
        no remote branch contains counts. Errors count as unpushed.
        """
        upstream = self._query(["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"])
        if upstream is not None and upstream.returncode == 0:
            result = self._query(["log", "@{u}..HEAD", "--oneline"])
        else:
            result = self._query(["log", "HEAD", "--not", "--remotes", "--oneline"])
        if result is None or result.returncode != 0:
            return True
        return bool(result.stdout.strip())

    def has_stashes(self) -> bool:
        result = self._query(["stash", "list"])
        if result is None or result.returncode != 0:
            return True
        return bool(result.stdout.strip())

    def safety_status(self) -> SafetyStatus:
        return SafetyStatus(
            dirty=self.has_uncommitted_changes(),
            unpushed=self.has_unpushed_commits(),
            stashes=self.has_stashes(),
        )

    # --- Worktree lifecycle (run against the main repository) ---

    def add_worktree(self, path: Path, branch: str) -> None:
        """Create a worktree at path on a new branch from HEAD."""
        self._git_or_raise(["worktree", "add", "-b", branch, str(path)])

    def remove_worktree(self, path: Path) -> None:
        self._git_or_raise(["worktree", "remove", "--force", str(path)])

    def prune_worktrees(self) -> bool:
        """Prune stale worktree metadata. Returns False on failure."""
        result = self._query(["worktree", "prune"])
        return result is not None and result.returncode == 0

    def init_submodules(self) -> bool:
        """Initialize submodules. Returns False on failure."""
        result = self._query(["submodule", "update", "--init", "--recursive"])
        return result is not None and result.returncode == 0

    # --- Sync ---

    def fetch(self) -> None:
        self._git_or_raise(["fetch", "origin"], timeout=60)

    def stash(self) -> None:
        self._git_or_raise(["stash", "push", "--include-untracked", "-m", "cityctl sync"])

    def stash_pop(self) -> None:
        self._git_or_raise(["stash", "pop"])

    def pull_rebase(self, branch: str) -> None:
        """Rebase onto origin/<branch>, aborting the rebase on failure."""
        try:
            self._git_or_raise(["pull", "--rebase", "origin", branch])
        except WorktreeError:
            self._run_git(["rebase", "--abort"], check=False, timeout=10)
            raise
