#!/usr/bin/env python3
"""
Tests for the trust ledger and its persistence.

Covers:
- Approvals accumulate only through record_outcome
- Auto-trust at the configured threshold
- Mistakes: cool-down flag, log preserved across resets
- Reset triggers: working dir, branch, CI/container/remote flips, idle
- SessionRepository round trips and in-memory fallback
"""
from datetime import timedelta

import pytest

from vigil.config.models import TrustConfig
from vigil.schemas import ModeName, ModeState
from vigil.store import InMemoryStore
from vigil.trust.ledger import TrustLedger
from vigil.trust.repository import SessionRepository

from conftest import T0, FailingStore, make_snapshot, shell

pytestmark = pytest.mark.trust

KEY = "shell:git_force_push:git push"


@pytest.fixture
def ledger():
    return TrustLedger(TrustConfig(), session_started_at=T0)


class TestApprovals:

    def test_lookup_unknown_pattern(self, ledger):
        info = ledger.lookup(KEY)
        assert info.approval_count == 0
        assert not info.auto_trusted

    def test_auto_trust_at_threshold(self, ledger):
        for i in range(2):
            assert not ledger.record_outcome(KEY, approved=True, was_mistake=False, now=T0).auto_trusted
        info = ledger.record_outcome(KEY, approved=True, was_mistake=False, now=T0)
        assert info.approval_count == 3
        assert info.auto_trusted
        assert info.last_approved_at == T0

    def test_declined_outcome_does_not_count(self, ledger):
        ledger.record_outcome(KEY, approved=False, was_mistake=False, now=T0)
        assert ledger.lookup(KEY).approval_count == 0

    def test_custom_threshold(self):
        ledger = TrustLedger(TrustConfig(auto_trust_threshold=1), session_started_at=T0)
        assert ledger.record_outcome(KEY, True, False, now=T0).auto_trusted

    def test_observation_day(self, ledger):
        ledger.record_outcome(KEY, True, False, now=T0 + timedelta(days=3, hours=2))
        assert ledger.observation_day == 3


class TestMistakes:

    def test_mistake_sets_cooldown(self, ledger):
        ledger.record_outcome(KEY, approved=True, was_mistake=True, now=T0)
        assert ledger.recent_mistake(T0 + timedelta(minutes=59))
        assert not ledger.recent_mistake(T0 + timedelta(hours=1))

    def test_mistake_removes_pattern_trust(self, ledger):
        for _ in range(3):
            ledger.record_outcome(KEY, True, False, now=T0)
        ledger.record_outcome(KEY, True, True, now=T0)
        assert ledger.lookup(KEY).approval_count == 0
        assert len(ledger.mistake_log) == 1


class TestResetTriggers:

    def _trusted(self, ledger):
        for _ in range(3):
            ledger.record_outcome(KEY, True, False, now=T0)

    def test_first_snapshot_only_records_context(self, ledger):
        self._trusted(ledger)
        assert not ledger.reset_if_triggered(make_snapshot())
        assert ledger.lookup(KEY).auto_trusted

    def test_same_context_keeps_trust(self, ledger):
        self._trusted(ledger)
        ledger.reset_if_triggered(make_snapshot())
        assert not ledger.reset_if_triggered(make_snapshot())
        assert ledger.lookup(KEY).auto_trusted

    def test_branch_change_resets_but_keeps_mistakes(self, ledger):
        ledger.record_outcome("shell:rm:rm", True, True, now=T0)
        self._trusted(ledger)
        ledger.reset_if_triggered(make_snapshot(git_branch="feature/x"))
        assert ledger.reset_if_triggered(make_snapshot(git_branch="main"))
        assert not ledger.lookup(KEY).auto_trusted
        assert ledger.lookup(KEY).approval_count == 0
        assert len(ledger.mistake_log) == 1
        assert ledger.last_reset_reasons == ["git branch changed"]

    @pytest.mark.parametrize("field,value,reason", [
        ("working_dir", "/srv/other", "working directory changed"),
        ("is_ci", True, "CI status changed"),
        ("is_container", True, "container status changed"),
        ("is_remote_session", True, "remote-session status changed"),
    ])
    def test_context_flips_reset(self, ledger, field, value, reason):
        self._trusted(ledger)
        ledger.reset_if_triggered(make_snapshot())
        assert ledger.reset_if_triggered(make_snapshot(**{field: value}))
        assert reason in ledger.last_reset_reasons
        assert ledger.trusted_patterns == {}

    def test_idle_resets(self, ledger):
        self._trusted(ledger)
        ledger.reset_if_triggered(make_snapshot())
        assert not ledger.reset_if_triggered(make_snapshot(idle_seconds=1800))
        assert ledger.reset_if_triggered(make_snapshot(idle_seconds=1801))
        assert ledger.trusted_patterns == {}


class TestSerialization:

    def test_round_trip(self, ledger):
        for _ in range(3):
            ledger.record_outcome(KEY, True, False, now=T0)
        ledger.record_outcome("shell:rm:rm", True, True, now=T0)
        ledger.reset_if_triggered(make_snapshot())
        ledger.last_activity_at = T0

        restored = TrustLedger.from_dict(ledger.to_dict())
        assert restored.lookup(KEY) == ledger.lookup(KEY)
        assert restored.mistake_log == ledger.mistake_log
        assert restored.last_context == ledger.last_context
        assert restored.last_activity_at == T0
        assert restored.session_started_at == T0


class TestSessionRepository:

    def test_ledger_round_trip(self):
        repo = SessionRepository(InMemoryStore())
        ledger = TrustLedger(session_started_at=T0)
        ledger.record_outcome(KEY, True, False, now=T0)
        assert repo.save_ledger("alice", ledger)
        assert repo.load_ledger("alice").lookup(KEY).approval_count == 1
        assert repo.load_ledger("bob") is None

    def test_mode_and_window_round_trip(self):
        repo = SessionRepository(InMemoryStore())
        state = ModeState(ModeName.PARANOID, started_at=T0)
        repo.save_mode("alice", state)
        repo.save_window("alice", [shell("ls"), shell("pwd")])
        assert repo.load_mode("alice") == state
        assert [op.raw_text for op in repo.load_window("alice")] == ["ls", "pwd"]
        assert repo.identities() == {"alice"}

    def test_window_with_non_json_params_is_saved(self):
        repo = SessionRepository(InMemoryStore())
        assert repo.save_window("alice", [shell("deploy", started=T0)])
        assert not repo.is_degraded("alice")
        [op] = repo.load_window("alice")
        assert op.params["started"] == str(T0)

    def test_failing_store_degrades_without_raising(self):
        repo = SessionRepository(FailingStore())
        assert repo.load_ledger("alice") is None
        assert repo.load_mode("alice") is None
        assert repo.load_window("alice") == []
        assert not repo.save_ledger("alice", TrustLedger())
        assert repo.is_degraded("alice")
        assert not repo.is_degraded("bob")

    def test_successful_write_clears_degraded_mark(self):
        store = InMemoryStore()
        repo = SessionRepository(store)
        repo._mark("alice", RuntimeError("blip"))
        assert repo.is_degraded("alice")
        repo.save_ledger("alice", TrustLedger())
        assert not repo.is_degraded("alice")
