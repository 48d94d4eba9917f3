"""Tests for pool scaling and materialization."""

from pathlib import Path
from unittest.mock import patch

import pytest

from cityctl.agents import Agent
from cityctl.errors import ScaleCheckError, WorktreeError
from cityctl.pool import (
    PoolContext,
    PoolSpec,
    evaluate_scale,
    evaluate_scale_checked,
    expand_template,
    materialize_pool,
    shell_scale_check,
)


def runner_returning(output):
    return lambda command: output


def failing_runner(command):
    raise ScaleCheckError("boom")


class TestEvaluateScale:
    @pytest.mark.parametrize("output,expected", [
        ("3", 3),
        ("  3\n", 3),
        ("9", 5),   # clamped to max
        ("0", 1),   # clamped to min
        ("-4", 1),
    ])
    def test_clamps(self, output, expected):
        pool = PoolSpec(min=1, max=5, check="x")
        assert evaluate_scale(pool, runner_returning(output)) == expected

    @pytest.mark.parametrize("output", ["", "  \n", "three", "3.5"])
    def test_bad_output_uses_min(self, output):
        pool = PoolSpec(min=2, max=5, check="x")
        assert evaluate_scale(pool, runner_returning(output)) == 2

    def test_runner_error_uses_min(self):
        pool = PoolSpec(min=1, max=5, check="x")
        count, err = evaluate_scale_checked(pool, failing_runner)
        assert count == 1
        assert isinstance(err, ScaleCheckError)

    def test_no_check_means_one_within_bounds(self):
        assert evaluate_scale(PoolSpec(min=0, max=4), failing_runner) == 1
        assert evaluate_scale(PoolSpec(min=2, max=4), failing_runner) == 2


class TestShellScaleCheck:
    def test_returns_stdout(self):
        assert shell_scale_check("echo 3").strip() == "3"

    def test_nonzero_exit_raises(self):
        with pytest.raises(ScaleCheckError):
            shell_scale_check("exit 2")


class TestExpandTemplate:
    def test_substitutes(self):
        assert expand_template("$city_root/$name", {"city_root": "/c", "name": "w-1"}) == "/c/w-1"

    def test_unknown_key_returns_raw(self):
        assert expand_template("$nope/x", {"name": "w"}) == "$nope/x"

    def test_malformed_returns_raw(self):
        assert expand_template("cost $", {}) == "cost $"


@pytest.fixture
def ctx(tmp_path):
    return PoolContext(city_root=tmp_path, city_name="demo")


class TestMaterializePool:
    def test_suffixed_instances(self, ctx):
        template = Agent(name="worker", command="claude", pool=PoolSpec(min=0, max=5))
        instances = materialize_pool(template, 3, ctx)
        assert [a.name for a in instances] == ["worker-1", "worker-2", "worker-3"]
        assert [a.session_name for a in instances] == [
            "gc-demo-worker-1", "gc-demo-worker-2", "gc-demo-worker-3",
        ]
        assert instances[0].env["CITY_AGENT"] == "worker-1"
        assert instances[1].env["CITY_AGENT"] == "worker-2"
        assert all(a.pool_name == "worker" for a in instances)

    def test_bare_name_when_max_one(self, ctx):
        template = Agent(name="refinery", pool=PoolSpec(min=1, max=1))
        assert [a.name for a in materialize_pool(template, 1, ctx)] == ["refinery"]

    def test_zero_desired(self, ctx):
        template = Agent(name="worker", pool=PoolSpec(min=0, max=5))
        assert materialize_pool(template, 0, ctx) == []

    def test_desired_clamped_to_max(self, ctx):
        template = Agent(name="worker", pool=PoolSpec(min=0, max=2))
        assert len(materialize_pool(template, 7, ctx)) == 2

    def test_rig_qualified(self, tmp_path):
        ctx = PoolContext(city_root=tmp_path, city_name="demo", repo_dir=tmp_path / "api")
        template = Agent(name="worker", rig="api", pool=PoolSpec(min=0, max=2))
        first = materialize_pool(template, 1, ctx)[0]
        assert first.qualified_name == "api/worker-1"
        assert first.session_name == "gc-demo-api--worker-1"
        assert first.env["CITY_RIG"] == "api"
        assert first.dir == str(tmp_path / "api")

    def test_env_and_fingerprint_extra(self, ctx):
        template = Agent(name="worker", env={"MODEL": "x"}, pool=PoolSpec(min=0, max=3))
        inst = materialize_pool(template, 1, ctx)[0]
        assert inst.env["MODEL"] == "x"
        assert inst.env["CITY_ROOT"] == str(ctx.city_root)
        assert inst.env["CITY_DIR"] == inst.dir
        assert inst.fingerprint_extra == {"pool.min": "0", "pool.max": "3"}
        assert template.env == {"MODEL": "x"}

    def test_dir_and_setup_templates(self, ctx):
        template = Agent(
            name="worker",
            dir="work/$name",
            session_setup=["echo $session in $work_dir", "echo $missing"],
            pool=PoolSpec(min=0, max=2),
        )
        inst = materialize_pool(template, 1, ctx)[0]
        assert inst.dir == str(ctx.city_root / "work" / "worker-1")
        assert inst.session_setup == [
            f"echo gc-demo-worker-1 in {inst.dir}",
            "echo $missing",
        ]

    def test_worktree_per_instance(self, tmp_path):
        ctx = PoolContext(city_root=tmp_path, city_name="demo", repo_dir=tmp_path / "api")
        template = Agent(name="worker", rig="api", isolation="worktree", pool=PoolSpec(min=0, max=2))

        def fake_ensure(repo_dir, city_root, rig, agent):
            return Path(f"/wt/{rig}/{agent}"), f"gc/{agent}-abc"

        with patch("cityctl.pool.ensure_worktree", side_effect=fake_ensure) as mock_ensure:
            instances = materialize_pool(template, 2, ctx)

        assert mock_ensure.call_count == 2
        assert instances[0].dir == "/wt/api/worker-1"
        assert instances[0].branch == "gc/worker-1-abc"
        assert instances[0].env["CITY_BRANCH"] == "gc/worker-1-abc"
        assert instances[0].fingerprint_extra["isolation"] == "worktree"

    def test_worktree_failure_falls_back(self, tmp_path):
        ctx = PoolContext(city_root=tmp_path, city_name="demo", repo_dir=tmp_path / "api")
        template = Agent(name="worker", rig="api", isolation="worktree", pool=PoolSpec(min=0, max=2))

        with patch("cityctl.pool.ensure_worktree", side_effect=WorktreeError("locked")):
            instances = materialize_pool(template, 2, ctx)

        assert len(instances) == 2
        assert instances[0].dir == str(tmp_path / "api")
        assert "CITY_BRANCH" not in instances[0].env

    def test_no_worktrees_when_disabled(self, tmp_path):
        ctx = PoolContext(city_root=tmp_path, city_name="demo", repo_dir=tmp_path / "api",
                          create_worktrees=False)
        template = Agent(name="worker", rig="api", isolation="worktree", pool=PoolSpec(min=0, max=2))
        with patch("cityctl.pool.ensure_worktree") as mock_ensure:
            materialize_pool(template, 2, ctx)
        mock_ensure.assert_not_called()
