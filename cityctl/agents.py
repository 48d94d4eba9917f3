"""Desired agent set: city config in, concrete agents out.

Derived fresh every tick and never persisted. Pool templates are expanded
here, so the reconciler only ever sees concrete agents with resolved
session names and launch configs.
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable

from .config import CityConfig, parse_duration, validate_name
from .errors import CityError, ConfigError
from .pool import (
    PoolContext,
    PoolSpec,
    ScaleMemory,
    evaluate_scale_checked,
    materialize_pool,
    shell_scale_check,
)
from .session import SessionConfig

logger = logging.getLogger(__name__)

ISOLATION_MODES = ("none", "worktree")


@dataclass
class Agent:
    """One desired agent, either a template from config or a concrete instance."""
    name: str
    rig: str = ""
    command: str = ""
    dir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    suspended: bool = False
    pool: PoolSpec | None = None
    isolation: str = "none"
    session_setup: list[str] = field(default_factory=list)
    pre_start: list[str] = field(default_factory=list)
    idle_timeout: float = 0
    fingerprint_extra: dict[str, str] = field(default_factory=dict)

    # Filled in when the template is materialized
    session_name: str = ""
    branch: str = ""
    pool_name: str = ""

    @property
    def qualified_name(self) -> str:
        return f"{self.rig}/{self.name}" if self.rig else self.name

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            command=self.command,
            work_dir=self.dir,
            env=dict(self.env),
            fingerprint_extra=dict(self.fingerprint_extra),
            session_setup=list(self.session_setup),
            pre_start=list(self.pre_start),
        )

    @classmethod
    def from_config(cls, raw: dict[str, Any]) -> "Agent":
        """Build an agent template from its city.yaml entry.

        Raises:
            ConfigError: If the entry is malformed.
        """
        if not isinstance(raw, dict):
            raise ConfigError(f"agent entry {raw!r} must be a mapping")
        name = validate_name(raw.get("name", ""), "agent")

        isolation = raw.get("isolation") or "none"
        if isolation not in ISOLATION_MODES:
            raise ConfigError(f"agent {name}: unknown isolation {isolation!r}")

        pool = None
        if raw.get("pool") is not None:
            pool = _parse_pool(name, raw["pool"])

        env = raw.get("env") or {}
        if not isinstance(env, dict):
            raise ConfigError(f"agent {name}: env must be a mapping")

        return cls(
            name=name,
            rig=_string_field(name, raw, "rig"),
            command=_string_field(name, raw, "command"),
            dir=str(raw.get("dir") or ""),
            env={str(k): str(v) for k, v in env.items()},
            suspended=bool(raw.get("suspended", False)),
            pool=pool,
            isolation=isolation,
            session_setup=_command_list(name, raw, "session_setup"),
            pre_start=_command_list(name, raw, "pre_start"),
            idle_timeout=parse_duration(raw.get("idle_timeout")),
        )


def _string_field(name: str, raw: dict[str, Any], key: str) -> str:
    value = raw.get(key) or ""
    if not isinstance(value, str):
        raise ConfigError(f"agent {name}: {key} must be a string")
    return value


def _command_list(name: str, raw: dict[str, Any], key: str) -> list[str]:
    value = raw.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"agent {name}: {key} must be a list of strings")
    return list(value)


def _parse_pool(name: str, raw: Any) -> PoolSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"agent {name}: pool must be a mapping")
    try:
        spec = PoolSpec(
            min=int(raw.get("min", 0)),
            max=int(raw.get("max", 1)),
            check=str(raw.get("check") or ""),
            on_check_error=raw.get("on_check_error") or "min",
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"agent {name}: bad pool bounds: {e}") from e
    if spec.min < 0 or spec.max < 1 or spec.min > spec.max:
        raise ConfigError(f"agent {name}: pool needs 0 <= min <= max and max >= 1")
    if spec.on_check_error not in ("min", "keep"):
        raise ConfigError(f"agent {name}: on_check_error must be 'min' or 'keep'")
    return spec


def _desired_count(template: Agent, runner: Callable[[str], str],
                   memory: ScaleMemory | None) -> int:
    pool = template.pool
    count, err = evaluate_scale_checked(pool, runner)
    key = template.qualified_name
    if err is None:
        if memory is not None:
            memory.remember(key, count)
        return count

    if pool.on_check_error == "keep" and memory is not None:
        previous = memory.recall(key)
        if previous is not None:
            logger.warning("%s: scale check failed, keeping %d: %s", key, previous, err)
            return max(pool.min, min(pool.max, previous))
    logger.warning("%s: scale check failed, using min=%d: %s", key, pool.min, err)
    return count


def build_desired_agents(
    city: CityConfig,
    *,
    scale_runner: Callable[[str], str] = shell_scale_check,
    scale_memory: ScaleMemory | None = None,
) -> tuple[list[Agent], set[str]]:
    """Expand city config into (desired agents, suspended session names).

    An agent is suspended when it, its rig or the city is suspended.
    Suspended pools are expanded to their max so every instance that might
    still be running gets stopped; they never run a scale check or create
    worktrees. A malformed agent entry is logged and skipped, as is any
    instance whose session name an earlier agent already holds.
    """
    desired: list[Agent] = []
    suspended: set[str] = set()
    owners: dict[str, str] = {}

    for raw in city.agents:
        try:
            template = Agent.from_config(raw)
            rig = city.rig(template.rig) if template.rig else None
            if template.rig and rig is None:
                raise ConfigError(f"agent {template.qualified_name}: unknown rig {template.rig!r}")

            is_suspended = template.suspended or city.suspended or bool(rig and rig.suspended)
            ctx = PoolContext(
                city_root=Path(city.root),
                city_name=city.name,
                session_template=city.session_template,
                repo_dir=Path(rig.path) if rig else None,
                create_worktrees=not is_suspended,
            )

            if template.pool is None:
                count = 1
            elif is_suspended:
                count = template.pool.max
            else:
                count = _desired_count(template, scale_runner, scale_memory)

            for agent in materialize_pool(template, count, ctx):
                owner = owners.get(agent.session_name)
                if owner is not None:
                    logger.warning("Skipping agent %s: session %s already belongs to %s",
                                   agent.qualified_name, agent.session_name, owner)
                    continue
                owners[agent.session_name] = agent.qualified_name
                if is_suspended:
                    agent = replace(agent, suspended=True)
                    suspended.add(agent.session_name)
                desired.append(agent)
        except CityError as e:
            logger.warning("Skipping agent %s: %s", _entry_name(raw), e)
        except Exception as e:
            logger.exception("Skipping agent %s: %s", _entry_name(raw), e)

    return desired, suspended


def _entry_name(raw: Any) -> str:
    return str(raw.get("name", "?")) if isinstance(raw, dict) else repr(raw)
