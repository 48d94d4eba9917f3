"""Automation dispatcher.

Each tick, every automation's gate is checked synchronously. For each due
automation a tracking bead is written to the store before its action is
handed to a worker thread, so the next tick sees the cooldown clock reset
even while the action is still running. Actions finish on their own time;
their events and outcome labels may land after dispatch() has returned.
"""

import logging
import os
import signal
import subprocess
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from concurrent.futures import wait as wait_futures
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from . import events
from .automations import Automation, check_gate, max_seq_from_labels
from .beads import Bead, BeadStore
from .errors import AutomationError, AutomationTimeout
from .events import EventRecorder

logger = logging.getLogger(__name__)

ACTOR = "controller"

# (timeout, work_dir, command, env) -> output
ExecRunner = Callable[[float, str, str, dict], str]


def shell_exec_runner(timeout: float, work_dir: str, command: str, env: dict[str, str]) -> str:
    """Run an exec automation through sh and return its combined output.

    The command runs in its own process group so a timeout kills the whole
    tree, not just the shell.

    Raises:
        AutomationTimeout: If the command outlives timeout.
        AutomationError: On a non-zero exit or launch failure.
    """
    try:
        proc = subprocess.Popen(
            ["sh", "-c", command],
            cwd=work_dir or None,
            env={**os.environ, **env},
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=True,
        )
    except OSError as e:
        raise AutomationError(f"could not run {command!r}: {e}") from e

    try:
        output, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.communicate()
        raise AutomationTimeout(f"{command!r} timed out after {timeout:g}s", timeout)

    if proc.returncode != 0:
        raise AutomationError(f"exit status {proc.returncode}: {output.strip()[-500:]}")
    return output


def qualify_pool(pool: str, rig: str) -> str:
    """Prefix an unqualified pool with the rig of a rig-scoped automation."""
    if not rig or "/" in pool:
        return pool
    return f"{rig}/{pool}"


def effective_timeout(a: Automation, max_timeout: float | None) -> float:
    """Declared timeout (or the action default), capped by max_timeout."""
    timeout = a.timeout_or_default()
    if max_timeout and timeout > max_timeout:
        return max_timeout
    return timeout


class AutomationDispatcher:
    """Fires due automations on a thread pool.

    Args:
        automations: Automations to consider each tick (manual ones excluded)
        store: Where tracking beads and cooked formulas go
        recorder: Event sink; also the event source for event gates
        exec_runner: Runs exec actions (shell_exec_runner in production)
        max_timeout: Global cap on any action's timeout, in seconds
        max_workers: Upper bound on concurrently running actions
    """

    def __init__(
        self,
        automations: list[Automation],
        store: BeadStore,
        recorder: EventRecorder,
        exec_runner: ExecRunner = shell_exec_runner,
        *,
        max_timeout: float | None = None,
        max_workers: int = 8,
    ):
        self.automations = [a for a in automations if a.gate != "manual"]
        self.store = store
        self.recorder = recorder
        self.exec_runner = exec_runner
        self.max_timeout = max_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="automation")
        # Formula cooks run here so a hung store call can be timed out
        self._cook_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cook")
        self._futures: list[Future] = []

    # --- Tracking queries ---

    def last_run(self, scoped_name: str) -> datetime | None:
        """Creation time of the newest tracking bead, or None if never run."""
        beads = self.store.list_by_label(f"automation-run:{scoped_name}", limit=1)
        return beads[0].created_at if beads else None

    def event_cursor(self, scoped_name: str) -> int:
        """Highest event seq an event-gated automation has already consumed."""
        beads = self.store.list_by_label(f"automation-run:{scoped_name}")
        return max_seq_from_labels([b.labels for b in beads])

    # --- Dispatch ---

    def dispatch(self, city_root: Path | str, now: datetime | None = None) -> int:
        """Fire every due automation and return how many were fired.

        The count reflects gate decisions only; the actions themselves may
        still be running when this returns.
        """
        # Naive times are local; bead timestamps are UTC
        now = now.astimezone(timezone.utc) if now else datetime.now(tz=timezone.utc)
        self._futures = [f for f in self._futures if not f.done()]
        fired = 0

        for a in self.automations:
            scoped = a.scoped_name()
            try:
                result = check_gate(a, now, self.last_run, self.recorder, self.event_cursor)
                if not result.due:
                    logger.debug("Automation %s not due: %s", scoped, result.reason)
                    continue

                labels = [a.tracking_label()]
                if a.gate == "event":
                    labels.append(f"seq:{self.recorder.latest_seq()}")
                tracking = self.store.create(Bead(title=f"automation:{scoped}", labels=labels))
            except Exception as e:
                logger.warning("Automation %s: could not dispatch: %s", scoped, e)
                continue

            logger.info("Automation %s due (%s), dispatching", scoped, result.reason)
            self._futures.append(
                self._executor.submit(self._run_one, a, str(city_root), tracking.id)
            )
            fired += 1

        return fired

    def _run_one(self, a: Automation, city_root: str, tracking_id: str) -> None:
        scoped = a.scoped_name()
        try:
            self.recorder.record(events.AUTOMATION_FIRED, ACTOR, scoped)
            timeout = effective_timeout(a, self.max_timeout)
            if a.is_exec():
                self._run_exec(a, city_root, tracking_id, timeout)
            else:
                self._run_formula(a, timeout)
        except Exception as e:
            logger.exception("Automation %s crashed: %s", scoped, e)
            self.recorder.record(events.AUTOMATION_FAILED, ACTOR, scoped, str(e))

    def _run_exec(self, a: Automation, city_root: str, tracking_id: str, timeout: float) -> None:
        scoped = a.scoped_name()
        env = {}
        if a.source:
            env["AUTOMATION_DIR"] = a.source_dir()

        labels = ["exec"]
        try:
            self.exec_runner(timeout, city_root, a.exec, env)
        except Exception as e:
            labels.append("exec-failed")
            logger.warning("Automation exec %s failed: %s", scoped, e)
            self.recorder.record(events.AUTOMATION_FAILED, ACTOR, scoped, str(e))
        else:
            self.recorder.record(events.AUTOMATION_COMPLETED, ACTOR, scoped)

        try:
            self.store.update(tracking_id, labels=labels)
        except Exception as e:
            logger.warning("Could not label tracking bead %s: %s", tracking_id, e)

    def _run_formula(self, a: Automation, timeout: float) -> None:
        scoped = a.scoped_name()
        labels = [a.tracking_label()]
        if a.pool:
            labels.append(f"pool:{qualify_pool(a.pool, a.rig)}")

        future = self._cook_executor.submit(self.store.mol_cook, a.formula, "", labels)
        try:
            root_id = future.result(timeout=timeout)
        except FutureTimeout:
            message = f"formula {a.formula!r} timed out after {timeout:g}s"
            logger.warning("Automation %s: %s", scoped, message)
            self.recorder.record(events.AUTOMATION_FAILED, ACTOR, scoped, message)
            return
        except Exception as e:
            logger.warning("Automation %s: cooking %s failed: %s", scoped, a.formula, e)
            self.recorder.record(events.AUTOMATION_FAILED, ACTOR, scoped, str(e))
            return

        logger.info("Automation %s cooked %s as %s", scoped, a.formula, root_id)
        self.recorder.record(events.AUTOMATION_COMPLETED, ACTOR, scoped)

    # --- Lifecycle ---

    def wait(self, timeout: float | None = None) -> bool:
        """Block until outstanding actions finish. Returns False on timeout."""
        pending = [f for f in self._futures if not f.done()]
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._cook_executor.shutdown(wait=False)
