"""Configuration loading and constants for the city controller."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError


# Name of the per-city state directory (holds beads, events, logs, worktrees)
STATE_DIR_NAME = ".gc"

# Declarative config file at the city root
CITY_CONFIG_NAME = "city.yaml"

DEFAULT_SESSION_TEMPLATE = "gc-$city-$agent"

# Controller defaults (can be overridden under controller: in city.yaml)
DEFAULT_CONTROLLER_CONFIG = {
    "interval": 30,
    "crash_max_restarts": 5,
    "crash_window": 3600,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str | int | float | None, default: float = 0) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) or strings such as "90s", "5m",
    "1h30m" or "250ms".

    Raises:
        ConfigError: If the string is not a valid duration.
    """
    if value is None or value == "":
        return default
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigError(f"invalid duration {value!r}")
    return total


@dataclass
class RigConfig:
    """A registered project repository under the city."""
    name: str
    path: Path
    suspended: bool = False
    agents: list[dict[str, Any]] = field(default_factory=list)
    automation_layers: list[Path] = field(default_factory=list)


@dataclass
class AutomationsConfig:
    """City-wide automation settings."""
    layers: list[Path] = field(default_factory=list)
    skip: list[str] = field(default_factory=list)
    max_timeout: float = 0
    overrides: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class CityConfig:
    """Parsed city.yaml."""
    root: Path
    name: str
    suspended: bool = False
    session_template: str = DEFAULT_SESSION_TEMPLATE
    rigs: list[RigConfig] = field(default_factory=list)
    agents: list[dict[str, Any]] = field(default_factory=list)
    automations: AutomationsConfig = field(default_factory=AutomationsConfig)
    controller: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_CONTROLLER_CONFIG))

    def rig(self, name: str) -> RigConfig | None:
        for r in self.rigs:
            if r.name == name:
                return r
        return None

    @property
    def session_prefix(self) -> str:
        """Prefix shared by every session this city owns (for orphan sweeps)."""
        from .session import session_prefix
        return session_prefix(self.name, self.session_template)


def find_city_root(start: Path | str | None = None) -> Path:
    """Find the city root by walking up from start looking for .gc/.

    Can be overridden via CITY_DIR environment variable (used by tests).
    """
    env_override = os.environ.get("CITY_DIR")
    if env_override:
        return Path(env_override)

    current = Path(start or Path.cwd()).resolve()
    while True:
        if (current / STATE_DIR_NAME).is_dir():
            return current
        if current == current.parent:
            break
        current = current.parent

    raise ConfigError(
        "Could not find city root (no .gc/ directory found). "
        "Run the controller from inside a city or pass --city."
    )


def get_state_dir(city_root: Path) -> Path:
    """Get the .gc state directory for a city."""
    return Path(city_root) / STATE_DIR_NAME


def get_logs_dir(city_root: Path) -> Path:
    """Get the logs directory."""
    return get_state_dir(city_root) / "logs"


def get_worktrees_root(city_root: Path) -> Path:
    """Get the root under which agent worktrees are created."""
    return get_state_dir(city_root) / "worktrees"


def get_city_config_path(city_root: Path) -> Path:
    """Get path to city.yaml."""
    return Path(city_root) / CITY_CONFIG_NAME


def _resolve_path(city_root: Path, value: str | Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = city_root / path
    return path


def _as_list(value: Any, what: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{what} must be a list")
    return value


def _as_mapping(value: Any, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{what} must be a mapping")
    return value


def validate_name(name: Any, what: str) -> str:
    """Check an agent or rig name can be embedded in a session name.

    "/" joins rig and agent, and session naming rewrites "/" to "--" and
    "." and ":" to "_", so none of them may appear in a name. Neither may
    "--" or a leading or trailing "-", which would blur the rig boundary.

    Raises:
        ConfigError: If the name is missing or unusable.
    """
    if not name:
        raise ConfigError(f"every {what} needs a name")
    if not isinstance(name, str):
        raise ConfigError(f"{what} name {name!r} must be a string")
    for bad in ("/", "--", ".", ":"):
        if bad in name:
            raise ConfigError(f"{what} name {name!r} must not contain {bad!r}")
    if name.startswith("-") or name.endswith("-"):
        raise ConfigError(f"{what} name {name!r} must not start or end with '-'")
    return name


def _check_session_template(template: Any) -> str:
    # The orphan sweep matches sessions by the text before $agent
    if not isinstance(template, str) or not template.endswith(("$agent", "${agent}")):
        raise ConfigError(f"city.session_template {template!r} must end with $agent")
    return template


def _parse_rig(city_root: Path, raw: Any) -> RigConfig:
    raw = _as_mapping(raw, "every rig entry")
    name = validate_name(raw.get("name", ""), "rig")
    path = raw.get("path") or name
    if not isinstance(path, str):
        raise ConfigError(f"rigs.{name}.path must be a string")
    automations = _as_mapping(raw.get("automations"), f"rigs.{name}.automations")
    return RigConfig(
        name=name,
        path=_resolve_path(city_root, path),
        suspended=bool(raw.get("suspended", False)),
        agents=[
            {**_as_mapping(a, f"every rigs.{name}.agents entry"), "rig": name}
            for a in _as_list(raw.get("agents"), f"rigs.{name}.agents")
        ],
        automation_layers=[
            _resolve_path(city_root, layer)
            for layer in _as_list(automations.get("layers"), f"rigs.{name}.automations.layers")
        ],
    )


def _qualified(agent: dict[str, Any]) -> str:
    rig = agent.get("rig") or ""
    return f"{rig}/{agent.get('name', '')}" if rig else agent.get("name", "")


def merge_agent_layers(city_agents: list[dict], rig_agents: list[dict]) -> list[dict]:
    """Merge city-level and rig-level agent definitions.

    Rig definitions take precedence on a qualified-name collision. Order is
    city definitions first (in file order), then rig-only additions.
    """
    merged: dict[str, dict] = {}
    order: list[str] = []
    for agent in list(city_agents) + list(rig_agents):
        key = _qualified(agent)
        if key not in merged:
            order.append(key)
        merged[key] = agent
    return [merged[key] for key in order]


def load_city_config(city_root: Path | str) -> CityConfig:
    """Load and validate city.yaml.

    Raises:
        ConfigError: If the file is missing or malformed.
    """
    city_root = Path(city_root)
    config_path = get_city_config_path(city_root)

    if not config_path.exists():
        raise ConfigError(f"City config not found at {config_path}.")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")

    city = _as_mapping(raw.get("city"), "city")
    rigs = [_parse_rig(city_root, r) for r in _as_list(raw.get("rigs"), "rigs")]

    city_agents = []
    for agent in _as_list(raw.get("agents"), "agents"):
        agent = _as_mapping(agent, "every agents entry")
        if not agent.get("name"):
            raise ConfigError("every agent needs a name")
        city_agents.append(dict(agent))
    rig_agents = [a for r in rigs for a in r.agents]

    auto_raw = _as_mapping(raw.get("automations"), "automations")
    overrides = _as_list(auto_raw.get("overrides"), "automations.overrides")
    for i, ov in enumerate(overrides):
        _as_mapping(ov, f"automations.overrides[{i}]")
    automations = AutomationsConfig(
        layers=[_resolve_path(city_root, p) for p in _as_list(auto_raw.get("layers"), "automations.layers")],
        skip=list(_as_list(auto_raw.get("skip"), "automations.skip")),
        max_timeout=parse_duration(auto_raw.get("max_timeout")),
        overrides=list(overrides),
    )

    controller = DEFAULT_CONTROLLER_CONFIG.copy()
    controller.update(_as_mapping(raw.get("controller"), "controller"))
    controller["interval"] = parse_duration(controller["interval"])
    controller["crash_window"] = parse_duration(controller["crash_window"])
    if isinstance(controller["crash_max_restarts"], bool) or \
            not isinstance(controller["crash_max_restarts"], int):
        raise ConfigError("controller.crash_max_restarts must be an integer")

    city_name = city.get("name") or city_root.name
    if not isinstance(city_name, str):
        raise ConfigError("city.name must be a string")

    return CityConfig(
        root=city_root,
        name=city_name,
        suspended=bool(city.get("suspended", False)),
        session_template=_check_session_template(
            city.get("session_template") or DEFAULT_SESSION_TEMPLATE
        ),
        rigs=rigs,
        agents=merge_agent_layers(city_agents, rig_agents),
        automations=automations,
        controller=controller,
    )
