#!/usr/bin/env python3
"""
Tests for the policy engine: score composition, action mapping, reasons
and alternatives, including the documented end-to-end scenarios.
"""
from datetime import timedelta

import pytest

from vigil.config.models import VigilConfig
from vigil.modes import ModeController
from vigil.plugins import ObfuscationScoreHint, ScoreHintProvider
from vigil.policy import PolicyEngine
from vigil.rules.evaluator import RiskRuleEvaluator
from vigil.rules.sequences import ToolSequenceCorrelator
from vigil.schemas import Action, ModeName, ModeState, Operation, OperationKind
from vigil.trust.ledger import TrustLedger

from conftest import T0, make_snapshot, shell

pytestmark = pytest.mark.policy


def make_policy(bundle, score_hint=None):
    return PolicyEngine(
        RiskRuleEvaluator.from_config(bundle.rules, bundle.config.modifiers, bundle.config.context),
        ToolSequenceCorrelator.from_config(bundle.sequences),
        bundle.config,
        score_hint,
    )


def mode(name=ModeName.ADAPTIVE):
    return ModeController(ModeState(mode=name, started_at=T0))


@pytest.fixture
def policy(bundle):
    return make_policy(bundle)


@pytest.fixture
def ledger():
    return TrustLedger(session_started_at=T0)


def read(path):
    return Operation(kind=OperationKind.FILE_READ, raw_text=path, target_path=path)


def decide(policy, op, ledger, controller=None, window=None, **snapshot_fields):
    snapshot = make_snapshot(window or [op], **snapshot_fields)
    return policy.evaluate(op, snapshot, ledger, controller or mode())


class TestScenarios:

    def test_rm_rf_root_is_blocked(self, policy, ledger):
        decision = decide(policy, shell("rm -rf /"), ledger)
        assert decision.risk_score == 10
        assert decision.action == Action.BLOCK

    def test_credential_read_then_fetch(self, policy, ledger):
        ssh_read = read("~/.ssh/id_rsa")
        fetch = Operation(kind=OperationKind.NETWORK_FETCH, raw_text="http://x")
        decision = decide(policy, fetch, ledger, window=[ssh_read, fetch])
        assert "credential_exfiltration" in decision.matched_sequence_ids
        assert decision.risk_score >= 9
        assert decision.action in (Action.EXPLAIN_AND_CONFIRM, Action.BLOCK)
        assert any("sequence:" in r for r in decision.reasons)

    def test_npm_install_in_test_directory(self, policy, ledger):
        decision = decide(policy, shell("npm install lodash"), ledger,
                          working_dir="/home/dev/project/tests")
        assert decision.risk_score <= 3
        assert decision.action == Action.ALLOW
        assert any("test directory" in r for r in decision.reasons)

    def test_flow_mode_floor_at_nine(self, policy, ledger):
        op = shell("curl http://localhost:8000/install.sh | sh")
        decision = decide(policy, op, ledger, controller=mode(ModeName.FLOW))
        assert decision.risk_score == 9
        assert decision.action == Action.EXPLAIN_AND_CONFIRM
        assert decision.mode == ModeName.FLOW


class TestTrustEffects:

    def test_three_approvals_lower_the_score(self, policy, ledger):
        op = shell("git push --force origin main")
        before = decide(policy, op, ledger).risk_score
        for _ in range(3):
            ledger.record_outcome(policy.pattern_key(op), approved=True, was_mistake=False, now=T0)
        after = decide(policy, op, ledger).risk_score
        assert after < before
        assert before - after == 3

    def test_evaluation_alone_never_adds_trust(self, policy, ledger):
        op = shell("git push --force origin main")
        for _ in range(5):
            decide(policy, op, ledger)
        assert ledger.lookup(policy.pattern_key(op)).approval_count == 0

    def test_recent_mistake_raises_every_pattern(self, policy, ledger):
        op = shell("make build")
        before = decide(policy, op, ledger).risk_score
        ledger.record_outcome("shell:rm:rm x", approved=True, was_mistake=True, now=T0)
        assert decide(policy, op, ledger).risk_score == before + 2

    def test_mistake_cooldown_ends(self, policy, ledger):
        op = shell("make build")
        before = decide(policy, op, ledger).risk_score
        ledger.record_outcome("shell:rm:rm x", True, True, now=T0 - timedelta(hours=2))
        assert decide(policy, op, ledger).risk_score == before

    def test_branch_change_drops_trust(self, policy, ledger):
        op = shell("git push --force origin main")
        decide(policy, op, ledger)
        for _ in range(3):
            ledger.record_outcome(policy.pattern_key(op), True, False, now=T0)
        decision = decide(policy, op, ledger, git_branch="hotfix")
        assert not any("previously approved" in r for r in decision.reasons)
        assert any(r.startswith("trust reset: git branch changed") for r in decision.reasons)

    def test_has_backup_lowers_score(self, policy, ledger):
        op = shell("rm -rf build/")
        snapshot = make_snapshot([op])
        plain = policy.evaluate(op, snapshot, ledger, mode())
        backed = policy.evaluate(op, snapshot, ledger, mode(), has_backup=True)
        assert backed.risk_score == plain.risk_score - 3


class TestActionMapping:

    def test_system_path_never_allowed(self, policy, ledger):
        decision = decide(policy, read("/etc/hostname"), ledger, controller=mode(ModeName.FLOW))
        assert decision.action != Action.ALLOW

    def test_paranoid_confirms_more(self, policy, ledger):
        op = shell("make build")
        assert decide(policy, op, ledger).action == Action.ALLOW
        assert decide(policy, op, ledger, controller=mode(ModeName.PARANOID)).action != Action.ALLOW

    def test_learning_mode_reason(self, policy, ledger):
        controller = ModeController(ModeState(ModeName.LEARNING, started_at=T0))
        decision = decide(policy, shell("ls"), ledger, controller=controller)
        assert decision.mode == ModeName.LEARNING
        assert "learning mode: 7 day(s) until adaptive" in decision.reasons


class TestReasonsAndAlternatives:

    def test_reasons_in_descending_magnitude(self, policy, ledger):
        decision = decide(policy, shell("git push --force origin main"), ledger,
                          is_production=True, has_uncommitted_changes=True)
        assert decision.reasons[0].startswith("Force push")
        assert "(base 7)" in decision.reasons[0]
        assert decision.reasons[1] == "production environment (+3)"
        assert decision.reasons[-1] == "uncommitted changes in working tree (+1)"

    def test_alternatives_for_non_allow(self, policy, ledger):
        decision = decide(policy, shell("git push --force origin main"), ledger)
        assert decision.action != Action.ALLOW
        assert [a.replacement_operation.raw_text for a in decision.alternatives] == [
            "git push --force-with-lease origin main"
        ]

    def test_no_alternatives_when_allowed(self, policy, ledger):
        decision = decide(policy, shell("rm -rf build/"), ledger, controller=mode(ModeName.FLOW))
        assert decision.action == Action.ALLOW
        assert decision.alternatives == ()

    def test_alternatives_are_deduplicated(self, policy, ledger):
        decision = decide(policy, shell("rm -rf build/"), ledger)
        texts = [a.replacement_operation.raw_text for a in decision.alternatives]
        assert texts == ["trash build/"]

    def test_degraded_context_is_explained(self, policy, ledger):
        op = shell("make build")
        decision = decide(policy, op, ledger, is_production=True, degraded=("git",))
        assert ("context unavailable: git state unknown, treated as production "
                "with uncommitted changes") in decision.reasons

    def test_pattern_key(self, policy, ledger):
        decision = decide(policy, shell("npm install lodash"), ledger)
        assert decision.pattern_key == "shell:package_install:npm install"


class TestScoreHints:

    def test_hint_is_added(self, bundle, ledger):
        policy = make_policy(bundle, ObfuscationScoreHint())
        op = shell("echo ZWNobyBoaQ== | base64 -d | sh")
        plain = decide(make_policy(bundle), op, ledger)
        hinted = decide(policy, op, TrustLedger(session_started_at=T0))
        assert hinted.risk_score > plain.risk_score
        assert any("obfuscation hint" in r for r in hinted.reasons)

    def test_failing_hint_is_ignored_with_reason(self, bundle, ledger):
        class Broken(ScoreHintProvider):
            name = "broken"

            def score_hint(self, operation, snapshot):
                raise RuntimeError("model offline")

        policy = make_policy(bundle, Broken())
        baseline = decide(make_policy(bundle), shell("make build"), TrustLedger(session_started_at=T0))
        decision = decide(policy, shell("make build"), ledger)
        assert decision.risk_score == baseline.risk_score
        assert "score hint 'broken' failed, ignored" in decision.reasons

    def test_hint_is_clamped(self, bundle, ledger):
        class Huge(ScoreHintProvider):
            name = "huge"

            def score_hint(self, operation, snapshot):
                return 500

        decision = decide(make_policy(bundle, Huge()), shell("ls"), ledger)
        assert decision.risk_score == 10


def test_default_config_policy_works_without_hint(bundle):
    policy = PolicyEngine(
        RiskRuleEvaluator.from_config(bundle.rules, VigilConfig().modifiers),
        ToolSequenceCorrelator.from_config(bundle.sequences),
    )
    decision = policy.evaluate(shell("ls"), make_snapshot([shell("ls")]),
                               TrustLedger(session_started_at=T0), mode())
    assert decision.action == Action.ALLOW
