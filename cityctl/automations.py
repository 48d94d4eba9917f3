"""Automation definitions, discovery and gate evaluation.

Automations live in formula layers as
``<layer>/automations/<name>/automation.yaml``. Later layers override
earlier ones by directory name. Each automation has a gate deciding when it
is due:

  cooldown:  interval elapsed since the last tracked run
  cron:      five-field schedule matched this minute
  condition: check command exits 0
  event:     matching events recorded since the last run
  manual:    never fires automatically
"""

import logging
import os
import subprocess
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import yaml

from .config import CityConfig, parse_duration
from .errors import AutomationError, ConfigError
from .events import EventRecorder

logger = logging.getLogger(__name__)

AUTOMATIONS_DIR = "automations"
AUTOMATION_FILE = "automation.yaml"

GATES = ("cooldown", "cron", "condition", "event", "manual")

DEFAULT_EXEC_TIMEOUT = 60
DEFAULT_FORMULA_TIMEOUT = 30

# Condition gate check commands get this long to answer
CONDITION_CHECK_TIMEOUT = 30

# Fields an override may change
_OVERRIDABLE = ("enabled", "gate", "interval", "schedule", "check", "on", "pool", "timeout")


def _normalize_keys(data: dict) -> dict:
    # YAML 1.1 reads a bare `on:` key as boolean True
    return {("on" if k is True else k): v for k, v in data.items()}


@dataclass
class Automation:
    """A parsed automation definition."""
    name: str
    gate: str = ""
    description: str = ""
    formula: str = ""
    exec: str = ""
    interval: str = ""
    schedule: str = ""
    check: str = ""
    on: str = ""
    pool: str = ""
    timeout: str = ""
    enabled: bool = True
    # Path of the automation.yaml this came from
    source: str = ""
    # Empty for city-wide automations
    rig: str = ""

    def scoped_name(self) -> str:
        """Tracking key: name, or name:rig:<rig> when rig-scoped."""
        if not self.rig:
            return self.name
        return f"{self.name}:rig:{self.rig}"

    def tracking_label(self) -> str:
        return f"automation-run:{self.scoped_name()}"

    def is_exec(self) -> bool:
        return bool(self.exec)

    def timeout_or_default(self) -> float:
        """Declared timeout in seconds, else 60 for exec and 30 for formula."""
        if self.timeout:
            try:
                return parse_duration(self.timeout)
            except ConfigError:
                pass
        return DEFAULT_EXEC_TIMEOUT if self.is_exec() else DEFAULT_FORMULA_TIMEOUT

    def source_dir(self) -> str:
        return os.path.dirname(self.source) if self.source else ""

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "Automation":
        data = _normalize_keys(data)
        known = {f.name for f in fields(cls)} - {"name", "source", "rig"}
        unknown = set(data) - known
        if unknown:
            raise AutomationError(f"automation {name!r}: unknown keys {sorted(unknown)}")
        values = {k: v for k, v in data.items() if k in known}
        for key in ("interval", "timeout"):
            if key in values and values[key] is not None:
                values[key] = str(values[key])
        if "enabled" in values:
            values["enabled"] = bool(values["enabled"])
        return cls(name=name, **values)


def validate_automation(a: Automation) -> None:
    """Check an automation for structural correctness.

    Raises:
        AutomationError: Describing the first problem found.
    """
    if not a.formula and not a.exec:
        raise AutomationError(f"automation {a.name!r}: formula or exec is required")
    if a.formula and a.exec:
        raise AutomationError(f"automation {a.name!r}: formula and exec are mutually exclusive")
    if a.exec and a.pool:
        raise AutomationError(f"automation {a.name!r}: exec automations cannot have a pool")
    if a.timeout:
        try:
            parse_duration(a.timeout)
        except ConfigError as e:
            raise AutomationError(f"automation {a.name!r}: invalid timeout: {e}") from e

    if not a.gate:
        raise AutomationError(f"automation {a.name!r}: gate is required")
    if a.gate not in GATES:
        raise AutomationError(f"automation {a.name!r}: unknown gate type {a.gate!r}")
    if a.gate == "cooldown":
        if not a.interval:
            raise AutomationError(f"automation {a.name!r}: cooldown gate requires interval")
        try:
            parse_duration(a.interval)
        except ConfigError as e:
            raise AutomationError(f"automation {a.name!r}: invalid interval: {e}") from e
    elif a.gate == "cron" and not a.schedule:
        raise AutomationError(f"automation {a.name!r}: cron gate requires schedule")
    elif a.gate == "condition" and not a.check:
        raise AutomationError(f"automation {a.name!r}: condition gate requires check command")
    elif a.gate == "event" and not a.on:
        raise AutomationError(f"automation {a.name!r}: event gate requires on (event type)")


def parse_automation_file(path: Path, name: str) -> Automation:
    """Load one automation.yaml.

    Raises:
        AutomationError: If the file is not valid YAML or has unknown keys.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise AutomationError(f"automation {name!r} in {path}: {e}") from e
    if not isinstance(data, dict):
        raise AutomationError(f"automation {name!r} in {path}: expected a mapping")
    a = Automation.from_dict(name, data)
    a.source = str(path)
    return a


def scan_automations(layers: list[Path], skip: list[str] | None = None,
                     include_disabled: bool = False) -> list[Automation]:
    """Discover automations across formula layers.

    Layers are scanned lowest to highest priority; a later layer replaces an
    earlier automation of the same name. Order of first discovery is kept.
    Disabled and skipped automations are dropped.

    Raises:
        AutomationError: If an automation.yaml cannot be parsed.
    """
    skip_set = set(skip or [])
    found: dict[str, Automation] = {}

    for layer in layers:
        root = Path(layer) / AUTOMATIONS_DIR
        if not root.is_dir():
            continue
        for entry in sorted(root.iterdir()):
            path = entry / AUTOMATION_FILE
            if not entry.is_dir() or not path.is_file():
                continue
            found[entry.name] = parse_automation_file(path, entry.name)

    return [
        a for a in found.values()
        if (include_disabled or a.enabled) and a.name not in skip_set
    ]


def apply_overrides(automations: list[Automation], overrides: list[dict[str, Any]]) -> None:
    """Apply city.yaml overrides in place.

    Overrides match by name and, when given, rig. An override that matches
    nothing is an error rather than a silent no-op.

    Raises:
        AutomationError: On a nameless or unmatched override.
    """
    for i, ov in enumerate(overrides):
        ov = _normalize_keys(ov)
        name = ov.get("name", "")
        if not name:
            raise AutomationError(f"automations.overrides[{i}]: name is required")
        rig = ov.get("rig", "")
        matched = False
        for a in automations:
            if a.name != name or (rig and a.rig != rig):
                continue
            for key in _OVERRIDABLE:
                if key in ov:
                    value = ov[key]
                    if key == "enabled":
                        value = bool(value)
                    elif value is not None:
                        value = str(value)
                    setattr(a, key, value)
            matched = True
        if not matched:
            where = f" (rig {rig!r})" if rig else ""
            raise AutomationError(f"automations.overrides[{i}]: automation {name!r}{where} not found")


def load_automations(city: CityConfig) -> list[Automation]:
    """Load every automation the controller should consider.

    City layers are scanned first, then each rig's own layers with the rig
    stamped on. Overrides are applied, then disabled, manual and invalid
    automations are dropped (invalid ones with a warning).

    Raises:
        AutomationError: If a file cannot be parsed or an override is unmatched.
    """
    skip = city.automations.skip
    automations = scan_automations(city.automations.layers, skip, include_disabled=True)
    for rig in city.rigs:
        if not rig.automation_layers:
            continue
        for a in scan_automations(rig.automation_layers, skip, include_disabled=True):
            a.rig = rig.name
            automations.append(a)

    apply_overrides(automations, city.automations.overrides)

    result = []
    for a in automations:
        if not a.enabled or a.gate == "manual":
            continue
        try:
            validate_automation(a)
        except AutomationError as e:
            logger.warning("Skipping invalid automation: %s", e)
            continue
        result.append(a)
    return result


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


@dataclass
class GateResult:
    """Outcome of a gate check."""
    due: bool
    reason: str
    last_run: datetime | None = None


def _check_cooldown(a: Automation, now: datetime, last_run_fn) -> GateResult:
    try:
        interval = timedelta(seconds=parse_duration(a.interval))
    except ConfigError as e:
        return GateResult(False, f"bad interval: {e}")
    try:
        last = last_run_fn(a.scoped_name())
    except Exception as e:
        return GateResult(False, f"error querying last run: {e}")

    if last is None:
        return GateResult(True, "never run")
    elapsed = now - last
    if elapsed >= interval:
        return GateResult(True, f"elapsed {elapsed} >= interval {interval}", last)
    remaining = interval - elapsed
    return GateResult(False, f"cooldown: {int(remaining.total_seconds())}s remaining", last)


def cron_field_matches(field: str, value: int) -> bool:
    """Match one cron field: "*", an integer, or a comma-separated list."""
    if field == "*":
        return True
    for part in field.split(","):
        try:
            if int(part.strip()) == value:
                return True
        except ValueError:
            continue
    return False


def _check_cron(a: Automation, now: datetime, last_run_fn) -> GateResult:
    parts = a.schedule.split()
    if len(parts) != 5:
        return GateResult(False, f"bad cron schedule: want 5 fields, got {len(parts)}")
    minute, hour, dom, month, dow = parts
    # cron counts weekdays from Sunday=0
    weekday = (now.weekday() + 1) % 7
    if not (
        cron_field_matches(minute, now.minute)
        and cron_field_matches(hour, now.hour)
        and cron_field_matches(dom, now.day)
        and cron_field_matches(month, now.month)
        and cron_field_matches(dow, weekday)
    ):
        return GateResult(False, "cron: schedule not matched")

    try:
        last = last_run_fn(a.scoped_name())
    except Exception as e:
        return GateResult(False, f"error querying last run: {e}")
    this_minute = now.replace(second=0, microsecond=0)
    if last is not None and last.replace(second=0, microsecond=0) == this_minute:
        return GateResult(False, "cron: already run this minute", last)
    return GateResult(True, "cron: schedule matched", last)


def _check_condition(a: Automation) -> GateResult:
    env = dict(os.environ)
    if a.source:
        env["AUTOMATION_DIR"] = a.source_dir()
    try:
        result = subprocess.run(
            ["sh", "-c", a.check],
            capture_output=True,
            text=True,
            env=env,
            timeout=CONDITION_CHECK_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return GateResult(False, f"check command failed: {e}")
    if result.returncode != 0:
        return GateResult(False, f"check command exited {result.returncode}")
    return GateResult(True, "condition: check passed (exit 0)")


def _check_event(a: Automation, events: EventRecorder | None, cursor_fn) -> GateResult:
    if events is None:
        return GateResult(False, "event: no events provider")
    cursor = cursor_fn(a.scoped_name()) if cursor_fn is not None else 0
    try:
        matched = events.read(after_seq=cursor, event_type=a.on)
    except OSError as e:
        return GateResult(False, f"event: read error: {e}")
    if not matched:
        return GateResult(False, "event: no matching events")
    return GateResult(True, f"event: {len(matched)} {a.on} event(s)")


def check_gate(
    a: Automation,
    now: datetime,
    last_run_fn: Callable[[str], datetime | None],
    events: EventRecorder | None = None,
    cursor_fn: Callable[[str], int] | None = None,
) -> GateResult:
    """Decide whether an automation is due.

    last_run_fn maps a scoped name to its last run time (None if never run).
    cursor_fn maps a scoped name to the last event seq already handled.
    """
    if a.gate == "cooldown":
        return _check_cooldown(a, now, last_run_fn)
    if a.gate == "cron":
        return _check_cron(a, now, last_run_fn)
    if a.gate == "condition":
        return _check_condition(a)
    if a.gate == "event":
        return _check_event(a, events, cursor_fn)
    if a.gate == "manual":
        return GateResult(False, "manual gate")
    return GateResult(False, f"unknown gate {a.gate!r}")


def max_seq_from_labels(label_sets: list[list[str]]) -> int:
    """Highest seq:<N> label across the given label lists."""
    best = 0
    for labels in label_sets:
        for label in labels:
            if label.startswith("seq:"):
                try:
                    best = max(best, int(label[4:]))
                except ValueError:
                    continue
    return best
