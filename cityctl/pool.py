"""Pool scaling and instance materialization.

A pool is an agent template plus a scale-check command. Each tick the
check decides how many instances should exist, clamped to [min, max], and
the template is expanded into that many concrete agents.
"""

import logging
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from string import Template
from typing import Callable

from .errors import ScaleCheckError, WorktreeError
from .session import session_name_for
from .worktrees import ensure_worktree

logger = logging.getLogger(__name__)

# How long a scale-check command may run before it counts as failed
SCALE_CHECK_TIMEOUT = 30


@dataclass
class PoolSpec:
    """Scaling bounds and the command that picks a count within them."""
    min: int = 0
    max: int = 1
    check: str = ""
    # "min" drops to the floor when the check fails; "keep" holds the last good count
    on_check_error: str = "min"


@dataclass
class PoolContext:
    """City-level facts a pool needs to materialize its instances."""
    city_root: Path
    city_name: str
    session_template: str = ""
    # Main repository of the template's rig (worktree source)
    repo_dir: Path | None = None
    create_worktrees: bool = True


def shell_scale_check(command: str, timeout: int = SCALE_CHECK_TIMEOUT,
                      work_dir: Path | str | None = None) -> str:
    """Run a scale-check command through sh and return its stdout.

    Raises:
        ScaleCheckError: On a non-zero exit, timeout or launch failure.
    """
    try:
        result = subprocess.run(
            ["sh", "-c", command],
            cwd=work_dir,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ScaleCheckError(f"scale check timed out after {timeout}s: {command}") from e
    except OSError as e:
        raise ScaleCheckError(f"scale check could not run: {e}") from e
    if result.returncode != 0:
        raise ScaleCheckError(
            f"scale check exited {result.returncode}: {result.stderr.strip()}",
            output=result.stdout,
        )
    return result.stdout


def _parse_count(output: str) -> int:
    text = output.strip()
    if not text:
        raise ScaleCheckError("scale check produced no output", output=output)
    try:
        return int(text)
    except ValueError:
        raise ScaleCheckError(f"scale check output is not an integer: {text!r}", output=output)


def evaluate_scale_checked(
    pool: PoolSpec, runner: Callable[[str], str] = shell_scale_check
) -> tuple[int, Exception | None]:
    """Return (desired count, error).

    On any error the count is pool.min and the error is returned so the
    caller can log it or apply its own failure policy.
    """
    if not pool.check:
        # No check command means one instance, within bounds
        return max(pool.min, min(pool.max, 1)), None
    try:
        count = _parse_count(runner(pool.check))
    except ScaleCheckError as e:
        return pool.min, e
    return max(pool.min, min(pool.max, count)), None


def evaluate_scale(pool: PoolSpec, runner: Callable[[str], str] = shell_scale_check) -> int:
    """Return the desired instance count for a pool, always in [min, max]."""
    count, err = evaluate_scale_checked(pool, runner)
    if err is not None:
        logger.warning("Scale check %r failed, using min=%d: %s", pool.check, pool.min, err)
    return count


class ScaleMemory:
    """Last good scale-check result per pool, kept by the controller across ticks."""

    def __init__(self):
        self._counts: dict[str, int] = {}

    def remember(self, pool_name: str, count: int) -> None:
        self._counts[pool_name] = count

    def recall(self, pool_name: str) -> int | None:
        return self._counts.get(pool_name)


def expand_template(text: str, values: dict[str, str]) -> str:
    """Substitute $placeholders in text; on any error return text unchanged."""
    if not text or "$" not in text:
        return text
    try:
        return Template(text).substitute(values)
    except (KeyError, ValueError):
        logger.debug("Leaving unresolved template as is: %r", text)
        return text


def _instance_name(template, i: int) -> str:
    pool = template.pool
    if pool is None or pool.max == 1:
        return template.name
    return f"{template.name}-{i}"


def _base_dir(ctx: PoolContext) -> Path:
    if ctx.repo_dir is not None:
        return Path(ctx.repo_dir)
    return Path(ctx.city_root)


def _resolve_dir(raw: str, base: Path, city_root: Path) -> Path:
    if not raw:
        return base
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = Path(city_root) / path
    return path


def materialize_pool(template, desired: int, ctx: PoolContext) -> list:
    """Expand an agent template into concrete instances 1..desired.

    Instance names are bare when the pool's max is 1, otherwise suffixed
    with -i. Template errors in dir, session_setup and pre_start fall back to
    the raw text. With worktree isolation each instance gets its own
    worktree; if one cannot be created that instance runs in the template's
    directory instead.
    """
    upper = template.pool.max if template.pool is not None else 1
    desired = max(0, min(desired, upper))

    instances = []
    for i in range(1, desired + 1):
        name = _instance_name(template, i)
        qualified = f"{template.rig}/{name}" if template.rig else name
        session = session_name_for(ctx.city_name, qualified, ctx.session_template)

        values = {
            "agent": qualified,
            "name": name,
            "rig": template.rig,
            "city_root": str(ctx.city_root),
            "city_name": ctx.city_name,
            "session": session,
            "work_dir": str(_base_dir(ctx)),
        }
        work_dir = _resolve_dir(expand_template(template.dir, values),
                                _base_dir(ctx), ctx.city_root)

        branch = ""
        if template.isolation == "worktree" and ctx.create_worktrees:
            if not template.rig or ctx.repo_dir is None:
                logger.warning("%s: worktree isolation needs a rig, using %s", qualified, work_dir)
            else:
                try:
                    work_dir, branch = ensure_worktree(ctx.repo_dir, ctx.city_root, template.rig, name)
                except WorktreeError as e:
                    logger.warning("%s: worktree failed, using %s: %s", qualified, work_dir, e)

        values["work_dir"] = str(work_dir)

        env = dict(template.env)
        env["CITY_AGENT"] = qualified
        env["CITY_ROOT"] = str(ctx.city_root)
        env["CITY_DIR"] = str(work_dir)
        if template.rig:
            env["CITY_RIG"] = template.rig
        if branch:
            env["CITY_BRANCH"] = branch

        extra = dict(template.fingerprint_extra)
        if template.isolation and template.isolation != "none":
            extra["isolation"] = template.isolation
        if template.pool is not None:
            extra["pool.min"] = str(template.pool.min)
            extra["pool.max"] = str(template.pool.max)

        instances.append(replace(
            template,
            name=name,
            dir=str(work_dir),
            env=env,
            session_name=session,
            branch=branch,
            pool_name=template.qualified_name if template.pool is not None else "",
            fingerprint_extra=extra,
            session_setup=[expand_template(c, values) for c in template.session_setup],
            pre_start=[expand_template(c, values) for c in template.pre_start],
        ))
    return instances
