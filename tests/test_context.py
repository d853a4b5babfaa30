#!/usr/bin/env python3
"""
Tests for context probes and snapshot assembly.

Covers:
- ProbeRunner joins concurrent probes with a timeout
- Failed and late probes become UNAVAILABLE
- SnapshotBuilder fails closed for every unavailable probe
- The sliding window is FIFO and bounded
"""
import subprocess
import threading
from unittest.mock import patch

import pytest

from vigil.config.models import ContextConfig
from vigil.context.probes import (
    CI,
    CLOCK,
    CONTAINER,
    ENVIRONMENT,
    GIT,
    PROBE_NAMES,
    REMOTE_SESSION,
    UNAVAILABLE,
    WORKING_DIR,
    ProbeRunner,
    probe_ci,
    probe_git,
    probe_remote_session,
)
from vigil.context.snapshot import SnapshotBuilder, environment_is_production
from vigil.errors import ProbeUnavailable

from conftest import T0, make_facts, shell

pytestmark = pytest.mark.context


class TestProbeRunner:

    def test_collects_results(self):
        runner = ProbeRunner({"a": lambda: 1, "b": lambda: "two"}, timeout=1.0)
        assert runner.run() == {"a": 1, "b": "two"}

    def test_failing_probe_is_unavailable(self):
        def boom():
            raise RuntimeError("disk on fire")

        results = ProbeRunner({"a": boom, "b": lambda: True}, timeout=1.0).run()
        assert results["a"] is UNAVAILABLE
        assert results["b"] is True

    def test_probe_unavailable_is_unavailable(self):
        def missing():
            raise ProbeUnavailable(GIT, "not installed")

        assert ProbeRunner({GIT: missing}, timeout=1.0).run()[GIT] is UNAVAILABLE

    def test_slow_probe_times_out(self):
        release = threading.Event()

        def slow():
            release.wait(5)
            return "late"

        try:
            results = ProbeRunner({"slow": slow, "fast": lambda: "ok"}, timeout=0.1).run()
        finally:
            release.set()
        assert results["slow"] is UNAVAILABLE
        assert results["fast"] == "ok"

    def test_no_probes(self):
        assert ProbeRunner({}, timeout=1.0).run() == {}

    def test_unavailable_is_falsy_singleton(self):
        assert not UNAVAILABLE
        assert type(UNAVAILABLE)() is UNAVAILABLE


class TestDefaultProbes:

    def test_ci_detection(self):
        assert probe_ci({"GITHUB_ACTIONS": "true"})
        assert not probe_ci({"CI": "false"})
        assert not probe_ci({})

    def test_remote_detection(self):
        assert probe_remote_session({"SSH_CONNECTION": "10.0.0.1 22 10.0.0.2 22"})
        assert not probe_remote_session({})

    def test_git_outside_repo(self):
        result = subprocess.CompletedProcess([], 128, stdout="", stderr="not a git repository")
        with patch("vigil.context.probes.subprocess.run", return_value=result):
            assert probe_git("/tmp") == {"is_repo": False, "branch": None, "dirty": False}

    def test_git_dirty_branch(self):
        outputs = iter([
            subprocess.CompletedProcess([], 0, stdout="true\n", stderr=""),
            subprocess.CompletedProcess([], 0, stdout="main\n", stderr=""),
            subprocess.CompletedProcess([], 0, stdout=" M app.py\n", stderr=""),
        ])
        with patch("vigil.context.probes.subprocess.run", side_effect=lambda *a, **k: next(outputs)):
            assert probe_git("/repo") == {"is_repo": True, "branch": "main", "dirty": True}

    def test_git_missing_is_unavailable(self):
        with patch("vigil.context.probes.subprocess.run", side_effect=FileNotFoundError("git")):
            with pytest.raises(ProbeUnavailable):
                probe_git("/repo")

    def test_git_timeout_is_unavailable(self):
        with patch("vigil.context.probes.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(["git"], 2)):
            with pytest.raises(ProbeUnavailable):
                probe_git("/repo")


class TestSnapshotBuilder:

    def test_builds_from_facts(self):
        snapshot = SnapshotBuilder().build(make_facts(dirty=True), now=T0)
        assert snapshot.working_dir == "/home/dev/project"
        assert snapshot.git_branch == "feature/x"
        assert snapshot.has_uncommitted_changes
        assert not snapshot.is_production
        assert snapshot.time_of_day == 12
        assert snapshot.degraded == ()

    def test_production_branch_glob(self):
        snapshot = SnapshotBuilder().build(make_facts(branch="release/2.0"), now=T0)
        assert snapshot.is_production

    def test_production_environment(self):
        snapshot = SnapshotBuilder().build(make_facts(environment={"NODE_ENV": "Production"}), now=T0)
        assert snapshot.is_production

    def test_environment_is_production_checks_configured_keys(self):
        settings = ContextConfig()
        assert environment_is_production({"DEPLOY_ENV": "live"}, settings)
        assert not environment_is_production({"SOMETHING": "prod"}, settings)

    def test_fails_closed_when_everything_is_missing(self):
        snapshot = SnapshotBuilder().build({}, now=T0)
        assert snapshot.is_production
        assert snapshot.has_uncommitted_changes
        assert snapshot.git_branch is None
        assert snapshot.is_ci
        assert snapshot.is_remote_session
        assert not snapshot.is_container
        assert snapshot.time_of_day == -1
        assert snapshot.working_dir == ""
        assert set(snapshot.degraded) == set(PROBE_NAMES)

    @pytest.mark.parametrize("probe", [GIT, ENVIRONMENT])
    def test_unavailable_git_or_env_means_production(self, probe):
        facts = make_facts()
        facts[probe] = UNAVAILABLE
        snapshot = SnapshotBuilder().build(facts, now=T0)
        assert snapshot.is_production
        assert snapshot.degraded == (probe,)

    @pytest.mark.parametrize("probe,field,expected", [
        (CI, "is_ci", True),
        (REMOTE_SESSION, "is_remote_session", True),
        (CONTAINER, "is_container", False),
        (CLOCK, "time_of_day", -1),
        (WORKING_DIR, "working_dir", ""),
    ])
    def test_single_probe_degrades(self, probe, field, expected):
        facts = make_facts()
        facts[probe] = UNAVAILABLE
        snapshot = SnapshotBuilder().build(facts, now=T0)
        assert getattr(snapshot, field) == expected
        assert snapshot.degraded == (probe,)

    @pytest.mark.parametrize("hour", [0, 14, 23])
    def test_clock_accepts_bare_hour(self, hour):
        snapshot = SnapshotBuilder().build(make_facts(clock=hour), now=T0)
        assert snapshot.time_of_day == hour
        assert snapshot.degraded == ()

    @pytest.mark.parametrize("probe,value,field,expected", [
        (CLOCK, None, "time_of_day", -1),
        (CLOCK, 24, "time_of_day", -1),
        (CLOCK, "14:00", "time_of_day", -1),
        (CLOCK, True, "time_of_day", -1),
        (GIT, None, "is_production", True),
        (GIT, "main", "has_uncommitted_changes", True),
        (GIT, {"branch": 3, "dirty": False}, "is_production", True),
        (ENVIRONMENT, ["ENV=dev"], "is_production", True),
        (CI, None, "is_ci", True),
        (CI, "false", "is_ci", True),
        (REMOTE_SESSION, 0, "is_remote_session", True),
        (CONTAINER, "yes", "is_container", False),
        (WORKING_DIR, None, "working_dir", ""),
    ])
    def test_malformed_value_degrades(self, probe, value, field, expected):
        facts = make_facts()
        facts[probe] = value
        snapshot = SnapshotBuilder().build(facts, now=T0)
        assert getattr(snapshot, field) == expected
        assert snapshot.degraded == (probe,)

    def test_malformed_probe_never_breaks_evaluate(self, make_engine):
        engine = make_engine(facts=make_facts(clock=None, git=None, ci="no"))
        decision = engine.evaluate(shell("ls"), "alice")
        assert any("context unavailable" in r for r in decision.reasons)

    def test_probe_returning_none_degrades(self):
        results = ProbeRunner({CLOCK: lambda: None}, timeout=1.0).run()
        snapshot = SnapshotBuilder().build(results, now=T0)
        assert snapshot.time_of_day == -1
        assert CLOCK in snapshot.degraded

    def test_window_is_fifo_and_bounded(self):
        builder = SnapshotBuilder(ContextConfig(window_size=3))
        ops = [shell(f"echo {i}") for i in range(5)]
        for op in ops:
            snapshot = builder.build(make_facts(), op, now=T0)
        assert snapshot.recent_operations == tuple(ops[2:])
        assert snapshot.current_operation == ops[-1]

    def test_snapshot_window_is_a_copy(self):
        builder = SnapshotBuilder()
        first = builder.build(make_facts(), shell("ls"), now=T0)
        builder.build(make_facts(), shell("pwd"), now=T0)
        assert len(first.recent_operations) == 1

    def test_seed_and_clear(self):
        builder = SnapshotBuilder()
        builder.seed([shell("ls"), shell("pwd")])
        assert len(builder.window) == 2
        builder.clear_window()
        assert builder.window == ()

    def test_negative_idle_is_clamped(self):
        assert SnapshotBuilder().build(make_facts(), idle_seconds=-5, now=T0).idle_seconds == 0
