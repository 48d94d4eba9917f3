"""Per-agent git worktrees.

Each isolated agent instance works in its own worktree at
``<city>/.gc/worktrees/<rig>/<agent>`` on a branch of its own, so parallel
agents never touch each other's checkout.
"""

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from .config import RigConfig, get_worktrees_root
from .errors import WorktreeError
from .repo_manager import RepoManager

logger = logging.getLogger(__name__)

GITIGNORE_SENTINEL = "# cityctl managed"

# Runtime files agents drop into their worktree that should never be committed
GITIGNORE_ENTRIES = [
    ".gc/",
    ".claude/settings.local.json",
    "*.log",
]

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
    return "".join(reversed(digits))


def worktree_path(city_root: Path, rig: str, agent: str) -> Path:
    """Where an agent's worktree lives. Slashes in pool names are flattened."""
    return get_worktrees_root(city_root) / rig / agent.replace("/", "--")


def new_branch_name(agent: str) -> str:
    """Return a unique branch for an agent: gc/<agent>-<base36 nanos>."""
    return f"gc/{agent.replace('/', '--')}-{_base36(time.time_ns())}"


def ensure_worktree(repo_dir: Path, city_root: Path, rig: str, agent: str) -> tuple[Path, str]:
    """Create the agent's worktree if needed and return (path, branch).

    An existing worktree is reused as is; its branch is read back (or ""
    if git cannot tell).

    Raises:
        WorktreeError: If git refuses to create the worktree.
    """
    path = worktree_path(city_root, rig, agent)
    if (path / ".git").exists():
        return path, RepoManager(path).current_branch()

    path.parent.mkdir(parents=True, exist_ok=True)
    branch = new_branch_name(agent)
    RepoManager(repo_dir).add_worktree(path, branch)

    if (path / ".gitmodules").exists():
        if not RepoManager(path).init_submodules():
            logger.warning("Submodule init failed in %s", path)

    logger.info("Created worktree %s on %s", path, branch)
    return path, branch


def remove_worktree(repo_dir: Path, path: Path) -> None:
    """Remove a worktree, falling back to deleting the directory."""
    path = Path(path)
    if not path.exists():
        return
    repo = RepoManager(repo_dir)
    try:
        repo.remove_worktree(path)
    except WorktreeError as e:
        logger.warning("git worktree remove failed for %s (%s), deleting directory", path, e)
        shutil.rmtree(path, ignore_errors=True)
    repo.prune_worktrees()


@dataclass
class SweepResult:
    removed: list[Path] = field(default_factory=list)
    skipped: list[tuple[Path, list[str]]] = field(default_factory=list)


def sweep_worktrees(city_root: Path, rigs: list[RigConfig], *, force: bool = False) -> SweepResult:
    """Remove agent worktrees under the city.

    Worktrees of rigs no longer configured are deleted outright. Others are
    kept when they hold uncommitted changes, unpushed commits or stashes,
    unless force is set.
    """
    result = SweepResult()
    root = get_worktrees_root(city_root)
    if not root.is_dir():
        return result

    rig_paths = {r.name: Path(r.path) for r in rigs}

    for rig_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        repo_dir = rig_paths.get(rig_dir.name)
        if repo_dir is None:
            logger.info("Rig %s is gone, deleting its worktrees", rig_dir.name)
            shutil.rmtree(rig_dir, ignore_errors=True)
            result.removed.append(rig_dir)
            continue

        for wt in sorted(p for p in rig_dir.iterdir() if p.is_dir()):
            if not force:
                status = RepoManager(wt).safety_status()
                if not status.safe_to_remove:
                    reasons = status.reasons()
                    logger.warning("Keeping worktree %s: %s", wt, ", ".join(reasons))
                    result.skipped.append((wt, reasons))
                    continue
            remove_worktree(repo_dir, wt)
            result.removed.append(wt)

        RepoManager(repo_dir).prune_worktrees()
        if rig_dir.exists() and not any(rig_dir.iterdir()):
            rig_dir.rmdir()

    if not any(root.iterdir()):
        root.rmdir()
    return result


def sync_worktree(path: Path, agent: str) -> bool:
    """Bring a worktree up to date with the default branch.

    fetch, stash if dirty, pull --rebase, stash pop. Any failure is logged and
    stops the sequence. Returns True when every step succeeded.
    """
    repo = RepoManager(path)
    try:
        repo.fetch()
    except WorktreeError as e:
        logger.warning("[%s] fetch failed: %s", agent, e)
        return False

    stashed = False
    if repo.has_uncommitted_changes():
        try:
            repo.stash()
            stashed = True
        except WorktreeError as e:
            logger.warning("[%s] stash failed: %s", agent, e)
            return False

    branch = repo.default_branch()
    try:
        repo.pull_rebase(branch)
    except WorktreeError as e:
        logger.warning("[%s] pull --rebase onto %s failed: %s", agent, branch, e)
        if stashed:
            try:
                repo.stash_pop()
            except WorktreeError as pop_err:
                logger.warning("[%s] stash pop failed, changes left in stash: %s", agent, pop_err)
        return False

    if stashed:
        try:
            repo.stash_pop()
        except WorktreeError as e:
            logger.warning("[%s] stash pop failed, changes left in stash: %s", agent, e)
            return False
    return True


def ensure_worktree_gitignore(path: Path) -> bool:
    """Append the managed ignore block to .gitignore once.

    ensure_worktree does not call this: the edited .gitignore would count as
    an uncommitted change and block sweeping.

    Returns True if the file was changed.
    """
    gitignore = Path(path) / ".gitignore"
    existing = gitignore.read_text() if gitignore.exists() else ""
    if GITIGNORE_SENTINEL in existing:
        return False

    block = "\n".join([GITIGNORE_SENTINEL] + GITIGNORE_ENTRIES) + "\n"
    if existing and not existing.endswith("\n"):
        existing += "\n"
    if existing:
        existing += "\n"
    gitignore.write_text(existing + block)
    return True
