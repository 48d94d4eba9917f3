"""Tests for session reconciliation."""

from datetime import datetime, timedelta, timezone

import pytest

from cityctl import events
from cityctl.fingerprint import config_fingerprint
from cityctl.reconcile import (
    ABSENT,
    ABSENT_SUSPENDED,
    RUNNING_DRIFTED,
    RUNNING_HEALTHY,
    RUNNING_SUSPENDED,
    classify_agent,
    reconcile,
)
from cityctl.session import CONFIG_HASH_KEY, SessionConfig
from cityctl.trackers import CrashTracker, IdleTracker
from helpers import make_agent

PREFIX = "gc-demo-"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def start_with_hash(provider, agent, config_hash=None):
    """Put a running session in place with a stored fingerprint."""
    provider.start(agent.session_name, agent.session_config())
    if config_hash is None:
        config_hash = config_fingerprint(agent.session_config())
    provider.meta[agent.session_name][CONFIG_HASH_KEY] = config_hash
    provider.calls.clear()


class TestClassifyAgent:
    def test_states(self, fake_provider, ops):
        agent = make_agent("mayor")
        assert classify_agent(agent, set(), fake_provider, ops) == ABSENT
        assert classify_agent(agent, {agent.session_name}, fake_provider, ops) == ABSENT_SUSPENDED

        start_with_hash(fake_provider, agent)
        assert classify_agent(agent, set(), fake_provider, ops) == RUNNING_HEALTHY
        assert classify_agent(agent, {agent.session_name}, fake_provider, ops) == RUNNING_SUSPENDED

        fake_provider.meta[agent.session_name][CONFIG_HASH_KEY] = "stale"
        assert classify_agent(agent, set(), fake_provider, ops) == RUNNING_DRIFTED

    def test_missing_hash_is_healthy(self, fake_provider, ops):
        agent = make_agent("mayor")
        fake_provider.start(agent.session_name, agent.session_config())
        assert classify_agent(agent, set(), fake_provider, ops) == RUNNING_HEALTHY


class TestReconcile:
    def test_starts_absent_agents(self, fake_provider, ops, recorder):
        agents = [make_agent("mayor"), make_agent("worker", rig="api")]
        started, report = reconcile(agents, set(), fake_provider, ops, PREFIX, recorder=recorder)

        assert started == 2
        assert fake_provider.calls_for("start") == ["gc-demo-mayor", "gc-demo-api--worker"]
        assert ops.config_hash("gc-demo-mayor") == config_fingerprint(agents[0].session_config())
        assert [e.subject for e in recorder.of_type(events.AGENT_STARTED)] == ["mayor", "api/worker"]
        assert report.lines[-1] == "City started."

    def test_healthy_agent_untouched(self, fake_provider, ops):
        agent = make_agent("mayor")
        start_with_hash(fake_provider, agent)
        started, _ = reconcile([agent], set(), fake_provider, ops, PREFIX)
        assert started == 0
        assert fake_provider.calls_for("start") == []
        assert fake_provider.calls_for("stop") == []

    def test_empty_stored_hash_is_not_drift(self, fake_provider, ops):
        agent = make_agent("mayor")
        start_with_hash(fake_provider, agent, config_hash="")
        reconcile([agent], set(), fake_provider, ops, PREFIX)
        assert fake_provider.calls_for("stop") == []

    def test_hash_read_failure_is_not_drift(self, fake_provider, ops):
        agent = make_agent("mayor")
        start_with_hash(fake_provider, agent, config_hash="stale")
        fake_provider.fail_meta.add(agent.session_name)
        reconcile([agent], set(), fake_provider, ops, PREFIX)
        assert fake_provider.calls_for("stop") == []

    def test_drift_restarts(self, fake_provider, ops, recorder):
        agent = make_agent("mayor")
        start_with_hash(fake_provider, agent, config_hash="stale")

        started, report = reconcile([agent], set(), fake_provider, ops, PREFIX, recorder=recorder)

        assert started == 1
        assert [m for m, _ in fake_provider.calls if m in ("stop", "start")] == ["stop", "start"]
        assert report.restarted == ["gc-demo-mayor"]
        assert ops.config_hash("gc-demo-mayor") == config_fingerprint(agent.session_config())
        stopped = recorder.of_type(events.AGENT_STOPPED)
        assert stopped[0].message == "config drift"

    def test_drift_stop_failure_does_not_start(self, fake_provider, ops):
        agent = make_agent("mayor")
        start_with_hash(fake_provider, agent, config_hash="stale")
        fake_provider.fail_stop.add(agent.session_name)

        started, report = reconcile([agent], set(), fake_provider, ops, PREFIX)

        assert started == 0
        assert fake_provider.calls_for("start") == []
        assert len(report.errors) == 1
        assert report.lines[-1] == "City started."

    def test_start_failure_does_not_block_others(self, fake_provider, ops):
        agents = [make_agent("a"), make_agent("b"), make_agent("c")]
        fake_provider.fail_start.add("gc-demo-b")

        started, report = reconcile(agents, set(), fake_provider, ops, PREFIX)

        assert started == 2
        assert set(fake_provider.sessions) == {"gc-demo-a", "gc-demo-c"}
        assert report.errors[0].startswith("gc-demo-b")

    def test_hash_store_failure_still_counts_start(self, fake_provider, ops):
        agent = make_agent("mayor")
        fake_provider.fail_meta.add(agent.session_name)
        started, report = reconcile([agent], set(), fake_provider, ops, PREFIX)
        assert started == 1
        assert report.errors == []

    def test_suspended_running_agent_stopped(self, fake_provider, ops, recorder):
        agent = make_agent("mayor")
        start_with_hash(fake_provider, agent)

        started, report = reconcile([agent], {agent.session_name}, fake_provider, ops, PREFIX,
                                    recorder=recorder)

        assert started == 0
        assert fake_provider.calls_for("stop") == ["gc-demo-mayor"]
        assert recorder.of_type(events.AGENT_STOPPED)[0].message == "suspended"

    def test_suspended_absent_agent_not_started(self, fake_provider, ops):
        agent = make_agent("mayor")
        started, _ = reconcile([agent], {agent.session_name}, fake_provider, ops, PREFIX)
        assert started == 0
        assert fake_provider.calls_for("start") == []

    def test_orphans_stopped(self, fake_provider, ops, recorder):
        fake_provider.start("gc-demo-old", SessionConfig(command="x"))
        fake_provider.start("other-city-x", SessionConfig(command="x"))
        agent = make_agent("mayor")

        _, report = reconcile([agent], set(), fake_provider, ops, PREFIX, recorder=recorder)

        assert "gc-demo-old" not in fake_provider.sessions
        assert "other-city-x" in fake_provider.sessions
        assert "gc-demo-mayor" in fake_provider.sessions
        assert "gc-demo-old" in report.stopped
        orphan = recorder.of_type(events.AGENT_STOPPED)[0]
        assert (orphan.subject, orphan.message) == ("gc-demo-old", "orphan")

    def test_list_failure_skips_orphan_sweep(self, fake_provider, ops):
        fake_provider.start("gc-demo-old", SessionConfig(command="x"))
        fake_provider.fail_list = True

        started, report = reconcile([make_agent("mayor")], set(), fake_provider, ops, PREFIX)

        assert started == 1
        assert "gc-demo-old" in fake_provider.sessions
        assert report.errors == ["list_running: listing sessions failed"]

    def test_orphan_stop_failure_recorded(self, fake_provider, ops):
        fake_provider.start("gc-demo-old", SessionConfig(command="x"))
        fake_provider.fail_stop.add("gc-demo-old")
        _, report = reconcile([], set(), fake_provider, ops, PREFIX)
        assert report.errors[0].startswith("gc-demo-old")

    def test_before_start_hook_failure_only_warns(self, fake_provider, ops):
        seen = []

        def hook(agent):
            seen.append(agent.session_name)
            raise RuntimeError("sync failed")

        started, _ = reconcile([make_agent("mayor")], set(), fake_provider, ops, PREFIX,
                               before_start=hook)
        assert seen == ["gc-demo-mayor"]
        assert started == 1


class TestQuarantine:
    def test_restart_loop_quarantined(self, fake_provider, ops, recorder):
        agent = make_agent("mayor")
        tracker = CrashTracker(max_restarts=2, window=600)

        for minute in range(2):
            reconcile([agent], set(), fake_provider, ops, PREFIX, recorder=recorder,
                      crash_tracker=tracker, now=T0 + timedelta(minutes=minute))
            fake_provider.sessions.clear()  # session died

        started, report = reconcile([agent], set(), fake_provider, ops, PREFIX, recorder=recorder,
                                    crash_tracker=tracker, now=T0 + timedelta(minutes=2))

        assert started == 0
        assert len(recorder.of_type(events.AGENT_QUARANTINED)) == 1
        assert fake_provider.calls_for("start") == ["gc-demo-mayor", "gc-demo-mayor"]

    def test_quarantine_lifts_after_window(self, fake_provider, ops):
        agent = make_agent("mayor")
        tracker = CrashTracker(max_restarts=1, window=60)
        reconcile([agent], set(), fake_provider, ops, PREFIX, crash_tracker=tracker, now=T0)
        fake_provider.sessions.clear()

        started, _ = reconcile([agent], set(), fake_provider, ops, PREFIX,
                               crash_tracker=tracker, now=T0 + timedelta(seconds=61))
        assert started == 1


class TestIdleRestart:
    def test_idle_agent_restarted(self, fake_provider, ops, recorder):
        agent = make_agent("mayor", idle_timeout=60)
        start_with_hash(fake_provider, agent)
        fake_provider.activity[agent.session_name] = T0

        started, report = reconcile(
            [agent], set(), fake_provider, ops, PREFIX, recorder=recorder,
            idle_tracker=IdleTracker(fake_provider), now=T0 + timedelta(minutes=5),
        )

        assert started == 1
        assert report.restarted == ["gc-demo-mayor"]
        assert events.AGENT_IDLE_KILLED in recorder.types()

    @pytest.mark.parametrize("timeout", [0, 3600])
    def test_not_idle(self, fake_provider, ops, timeout):
        agent = make_agent("mayor", idle_timeout=timeout)
        start_with_hash(fake_provider, agent)
        fake_provider.activity[agent.session_name] = T0
        started, _ = reconcile([agent], set(), fake_provider, ops, PREFIX,
                               idle_tracker=IdleTracker(fake_provider),
                               now=T0 + timedelta(minutes=5))
        assert started == 0
