#!/usr/bin/env python3
"""City controller: runs reconcile and automation dispatch on a fixed tick."""

import argparse
import fcntl
import logging
import os
import signal
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generator

from . import events
from .agents import build_desired_agents
from .automations import load_automations
from .beads import BeadStore, FileBeadStore
from .config import (
    CityConfig,
    find_city_root,
    get_logs_dir,
    get_state_dir,
    load_city_config,
)
from .dispatch import AutomationDispatcher, shell_exec_runner
from .errors import CityError
from .events import EventRecorder, FileEventRecorder
from .pool import ScaleMemory, shell_scale_check
from .reconcile import ReconcileReport, reconcile
from .session import ReconcileOps, SessionProvider, TmuxSessionProvider
from .trackers import CrashTracker, IdleTracker
from .worktrees import sweep_worktrees, sync_worktree

logger = logging.getLogger(__name__)

ACTOR = "controller"

LOG_FORMAT = "[%(asctime)s] [CONTROLLER] %(message)s"


@dataclass
class CityContext:
    """Everything one tick needs, threaded through explicitly."""
    config: CityConfig
    provider: SessionProvider
    ops: ReconcileOps
    store: BeadStore
    recorder: EventRecorder
    dispatcher: AutomationDispatcher
    crash_tracker: CrashTracker
    idle_tracker: IdleTracker
    scale_memory: ScaleMemory = field(default_factory=ScaleMemory)
    scale_runner: Callable[[str], str] = shell_scale_check


@dataclass
class TickResult:
    """Counts from one tick."""
    agents: int = 0
    started: int = 0
    stopped: int = 0
    restarted: int = 0
    automations_fired: int = 0
    report: ReconcileReport | None = None
    errors: list[str] = field(default_factory=list)


def setup_logging(city_root: Path, debug: bool = False) -> Path:
    """Send cityctl logs to .gc/logs/controller.log, warnings also to stderr.

    Returns the log file path.
    """
    logs_dir = get_logs_dir(city_root)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / "controller.log"

    root = logging.getLogger("cityctl")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.propagate = False

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.setFormatter(logging.Formatter("cityctl: %(levelname)s: %(message)s"))
    root.addHandler(stderr_handler)
    return log_file


def build_context(
    config: CityConfig,
    provider: SessionProvider | None = None,
    *,
    exec_runner=shell_exec_runner,
) -> CityContext:
    """Wire up the production collaborators for a city."""
    state_dir = get_state_dir(config.root)
    provider = provider or TmuxSessionProvider(socket_name=config.controller.get("tmux_socket", ""))
    store = FileBeadStore(state_dir / "beads.json")
    recorder = FileEventRecorder(state_dir / "events.jsonl")

    try:
        automations = load_automations(config)
    except CityError as e:
        logger.warning("Automations disabled: %s", e)
        automations = []

    return CityContext(
        config=config,
        provider=provider,
        ops=ReconcileOps(provider),
        store=store,
        recorder=recorder,
        dispatcher=AutomationDispatcher(
            automations, store, recorder, exec_runner,
            max_timeout=config.automations.max_timeout or None,
        ),
        crash_tracker=CrashTracker(
            max_restarts=int(config.controller["crash_max_restarts"]),
            window=config.controller["crash_window"],
        ),
        idle_tracker=IdleTracker(provider),
    )


def _sync_before_start(agent) -> None:
    # Only worktree-isolated agents carry a branch
    if agent.branch:
        sync_worktree(Path(agent.dir), agent.qualified_name)


def _reload(city: CityContext) -> None:
    """Pick up city.yaml and automation changes; keep the old ones on error."""
    try:
        city.config = load_city_config(city.config.root)
    except CityError as e:
        logger.warning("Keeping previous city config: %s", e)
        return
    except Exception as e:
        logger.exception("Unexpected error reloading city config, keeping previous: %s", e)
        return
    try:
        city.dispatcher.automations = [
            a for a in load_automations(city.config) if a.gate != "manual"
        ]
    except CityError as e:
        logger.warning("Keeping previous automations: %s", e)
    except Exception as e:
        logger.exception("Unexpected error reloading automations, keeping previous: %s", e)
    city.dispatcher.max_timeout = city.config.automations.max_timeout or None


def run_tick(city: CityContext, now: datetime | None = None, reload: bool = True) -> TickResult:
    """Run one reconcile pass and one dispatch pass. Never raises."""
    now = now or datetime.now(tz=timezone.utc)
    result = TickResult()
    if reload:
        _reload(city)
    config = city.config

    try:
        agents, suspended = build_desired_agents(
            config, scale_runner=city.scale_runner, scale_memory=city.scale_memory
        )
        result.agents = len(agents)
        result.started, report = reconcile(
            agents,
            suspended,
            city.provider,
            city.ops,
            config.session_prefix,
            recorder=city.recorder,
            crash_tracker=city.crash_tracker,
            idle_tracker=city.idle_tracker,
            before_start=_sync_before_start,
            now=now,
        )
        result.report = report
        result.stopped = len(report.stopped)
        result.restarted = len(report.restarted)
        result.errors.extend(report.errors)
        for line in report.lines:
            logger.info(line)
    except Exception as e:
        logger.exception("Reconcile failed: %s", e)
        result.errors.append(f"reconcile: {e}")

    try:
        result.automations_fired = city.dispatcher.dispatch(config.root, now)
    except Exception as e:
        logger.exception("Automation dispatch failed: %s", e)
        result.errors.append(f"dispatch: {e}")

    print(
        f"[{datetime.now().isoformat()}] Tick: {result.agents} agents, "
        f"{result.started} started, {result.stopped} stopped, "
        f"{result.automations_fired} automations fired"
        + (f", {len(result.errors)} errors" if result.errors else "")
    )
    return result


@contextmanager
def controller_lock(city_root: Path) -> Generator[bool, None, None]:
    """Hold .gc/controller.lock for the life of the block.

    Yields False without waiting if another controller holds it.
    """
    path = get_state_dir(city_root) / "controller.lock"
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        os.close(fd)
        yield False
        return
    try:
        yield True
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError:
            pass
        os.close(fd)


def run_controller(city: CityContext, *, once: bool = False,
                   stop: threading.Event | None = None) -> None:
    """Tick until stopped. Waits for running automations before returning."""
    stop = stop or threading.Event()
    interval = float(city.config.controller["interval"])
    city.recorder.record(events.CONTROLLER_STARTED, ACTOR, city.config.name)
    print(f"[{datetime.now().isoformat()}] Controller starting for city {city.config.name}")
    try:
        while not stop.is_set():
            run_tick(city)
            if once:
                break
            stop.wait(interval)
    except KeyboardInterrupt:
        print(f"[{datetime.now().isoformat()}] Interrupted, stopping")
    finally:
        city.dispatcher.wait()
        city.dispatcher.close()
        city.recorder.record(events.CONTROLLER_STOPPED, ACTOR, city.config.name)
        print(f"[{datetime.now().isoformat()}] Controller stopped")


def main(argv: list[str] | None = None) -> None:
    """Entry point for cityctl-controller."""
    parser = argparse.ArgumentParser(description="Run the city controller")
    parser.add_argument("--city", help="City root (default: search upward for .gc/)")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--debug", action="store_true", help="Log debug detail to .gc/logs/")
    parser.add_argument(
        "--sweep-worktrees",
        action="store_true",
        help="Remove agent worktrees that hold no unsaved work, then exit",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="With --sweep-worktrees, remove worktrees even if they hold unsaved work",
    )
    args = parser.parse_args(argv)

    try:
        city_root = Path(args.city).resolve() if args.city else find_city_root()
        setup_logging(city_root, args.debug)
        config = load_city_config(city_root)
    except CityError as e:
        print(f"cityctl: {e}", file=sys.stderr)
        sys.exit(1)

    if args.debug:
        print(f"Debug mode enabled - logs in {get_logs_dir(city_root)}")

    if args.sweep_worktrees:
        result = sweep_worktrees(city_root, config.rigs, force=args.force)
        print(f"Removed {len(result.removed)} worktrees, kept {len(result.skipped)}")
        for path, reasons in result.skipped:
            print(f"  kept {path}: {', '.join(reasons)}")
        return

    with controller_lock(city_root) as acquired:
        if not acquired:
            print("Another controller is running for this city, exiting")
            sys.exit(0)

        city = build_context(config)
        stop = threading.Event()
        signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
        run_controller(city, once=args.once, stop=stop)


if __name__ == "__main__":
    main()
