"""Session reconciliation: converge running sessions onto the desired agents.

One pass per tick. Each desired agent is handled by an inner function that
raises on failure; the single outer loop in reconcile() logs the failure and
moves on, so one bad agent never blocks the others and the pass itself never
raises.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from . import events
from .errors import SessionError
from .events import DISCARD, EventRecorder
from .fingerprint import config_fingerprint
from .session import ReconcileOps, SessionProvider
from .trackers import CrashTracker, IdleTracker

logger = logging.getLogger(__name__)

ACTOR = "controller"

# Per-agent states
ABSENT = "absent"
RUNNING_HEALTHY = "running-healthy"
RUNNING_DRIFTED = "running-drifted"
RUNNING_SUSPENDED = "running-suspended"
ABSENT_SUSPENDED = "absent-suspended"


@dataclass
class ReconcileReport:
    """What one reconcile pass did."""
    lines: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    restarted: list[str] = field(default_factory=list)
    quarantined: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add(self, line: str) -> None:
        self.lines.append(line)

    def __str__(self) -> str:
        return "\n".join(self.lines)


def _stored_hash(ops: ReconcileOps, name: str) -> str:
    """Stored fingerprint, or "" when none is stored or the lookup fails."""
    try:
        return ops.config_hash(name)
    except Exception as e:
        logger.debug("Could not read config hash for %s: %s", name, e)
        return ""


def classify_agent(agent, suspended: set[str], provider: SessionProvider,
                   ops: ReconcileOps) -> str:
    """Return the reconcile state of one desired agent."""
    running = provider.is_running(agent.session_name)
    if agent.session_name in suspended:
        return RUNNING_SUSPENDED if running else ABSENT_SUSPENDED
    if not running:
        return ABSENT
    stored = _stored_hash(ops, agent.session_name)
    if stored and stored != config_fingerprint(agent.session_config()):
        return RUNNING_DRIFTED
    return RUNNING_HEALTHY


class _Reconciler:
    """State for one reconcile pass."""

    def __init__(self, provider, ops, recorder, crash_tracker, idle_tracker,
                 before_start, now, report):
        self.provider = provider
        self.ops = ops
        self.recorder = recorder
        self.crash_tracker = crash_tracker
        self.idle_tracker = idle_tracker
        self.before_start = before_start
        self.now = now
        self.report = report
        self.started = 0

    def _start(self, agent) -> None:
        """Start the agent's session and store its fingerprint."""
        name = agent.session_name
        cfg = agent.session_config()
        if self.before_start is not None:
            try:
                self.before_start(agent)
            except Exception as e:
                logger.warning("Pre-start hook for %s failed: %s", name, e)

        self.provider.start(name, cfg)
        self.started += 1
        try:
            self.ops.store_config_hash(name, config_fingerprint(cfg))
        except Exception as e:
            logger.warning("Could not store config hash for %s: %s", name, e)
        self.recorder.record(events.AGENT_STARTED, ACTOR, agent.qualified_name)

    def _stop(self, agent, reason: str) -> None:
        self.provider.stop(agent.session_name)
        self.recorder.record(events.AGENT_STOPPED, ACTOR, agent.qualified_name, reason)
        self.report.stopped.append(agent.session_name)

    def reconcile_agent(self, agent, suspended: set[str]) -> None:
        name = agent.session_name
        running = self.provider.is_running(name)

        if name in suspended:
            if running:
                self._stop(agent, "suspended")
                self.report.add(f"Stopped suspended agent '{agent.qualified_name}' ({name})")
            return

        if not running:
            if self.crash_tracker is not None and self.crash_tracker.is_quarantined(name, self.now):
                logger.debug("%s is quarantined, not starting", name)
                return
            self._start(agent)
            self.report.started.append(name)
            self.report.add(f"Started agent '{agent.qualified_name}' ({name})")
            if self.crash_tracker is not None and self.crash_tracker.record_start(name, self.now):
                self.recorder.record(
                    events.AGENT_QUARANTINED, ACTOR, agent.qualified_name,
                    f"{self.crash_tracker.max_restarts} starts within the crash window",
                )
                self.report.quarantined.append(name)
                self.report.add(f"Quarantined agent '{agent.qualified_name}' (restart loop)")
            return

        if (
            self.idle_tracker is not None
            and self.idle_tracker.is_idle(name, agent.idle_timeout, self.now)
        ):
            self.provider.stop(name)
            self.recorder.record(events.AGENT_IDLE_KILLED, ACTOR, agent.qualified_name,
                                 f"idle longer than {agent.idle_timeout:.0f}s")
            self._start(agent)
            self.report.restarted.append(name)
            self.report.add(f"Restarted idle agent '{agent.qualified_name}' ({name})")
            return

        stored = _stored_hash(self.ops, name)
        if not stored:
            return
        current = config_fingerprint(agent.session_config())
        if stored == current:
            return

        logger.info("Config drift for %s, restarting", name)
        try:
            self.provider.stop(name)
        except Exception as e:
            raise SessionError(f"stop for drift restart failed, not restarting: {e}",
                               session=name) from e
        self.recorder.record(events.AGENT_STOPPED, ACTOR, agent.qualified_name, "config drift")
        self._start(agent)
        self.report.restarted.append(name)
        self.report.add(f"Restarted agent '{agent.qualified_name}' ({name}): config changed")

    def sweep_orphans(self, desired: set[str], name_prefix: str) -> None:
        try:
            running = self.ops.list_running(name_prefix)
        except Exception as e:
            logger.warning("Listing sessions for orphan sweep failed: %s", e)
            self.report.errors.append(f"list_running: {e}")
            return

        for name in running:
            if name in desired:
                continue
            try:
                self.provider.stop(name)
            except Exception as e:
                logger.warning("Stopping orphan %s failed: %s", name, e)
                self.report.errors.append(f"{name}: {e}")
                continue
            if self.crash_tracker is not None:
                self.crash_tracker.clear(name)
            self.recorder.record(events.AGENT_STOPPED, ACTOR, name, "orphan")
            self.report.stopped.append(name)
            self.report.add(f"Stopped orphan session {name}")


def reconcile(
    agents: list,
    suspended: set[str],
    provider: SessionProvider,
    ops: ReconcileOps,
    name_prefix: str,
    *,
    recorder: EventRecorder = DISCARD,
    crash_tracker: CrashTracker | None = None,
    idle_tracker: IdleTracker | None = None,
    before_start: Callable | None = None,
    now: datetime | None = None,
) -> tuple[int, ReconcileReport]:
    """Converge running sessions onto agents and return (started, report).

    Agents are processed in order: suspended ones are stopped, absent ones
    started, and running ones restarted when their stored fingerprint
    differs from the current one (a missing fingerprint is not drift). Then
    every session under name_prefix that no desired agent owns is stopped.
    """
    report = ReconcileReport()
    r = _Reconciler(
        provider, ops, recorder, crash_tracker, idle_tracker, before_start,
        now or datetime.now(tz=timezone.utc), report,
    )

    for agent in agents:
        try:
            r.reconcile_agent(agent, suspended)
        except Exception as e:
            logger.warning("Agent %s (%s): %s", agent.qualified_name, agent.session_name, e)
            report.errors.append(f"{agent.session_name}: {e}")

    r.sweep_orphans({a.session_name for a in agents}, name_prefix)

    report.add("City started.")
    return r.started, report
