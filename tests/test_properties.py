#!/usr/bin/env python3
"""
Property-based tests for the policy engine.

Whatever the operation, context and mode:
- the score stays within 1..10
- system paths are never silently allowed
- scores at or above the critical floor always need explicit confirmation
- the same inputs always give the same decision
"""
import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from vigil.config.loader import BUNDLED_RULES, BUNDLED_SEQUENCES, load_rules, load_sequences
from vigil.config.models import VigilConfig
from vigil.modes import ModeController
from vigil.policy import PolicyEngine
from vigil.rules.evaluator import RiskRuleEvaluator
from vigil.rules.sequences import ToolSequenceCorrelator
from vigil.schemas import Action, ModeName, ModeState, Operation, OperationKind
from vigil.trust.ledger import TrustLedger

from conftest import T0, make_snapshot

pytestmark = pytest.mark.policy

settings.register_profile("vigil", deadline=None, suppress_health_check=[HealthCheck.too_slow])
settings.load_profile("vigil")

CONFIG = VigilConfig()
POLICY = PolicyEngine(
    RiskRuleEvaluator.from_config(load_rules(BUNDLED_RULES), CONFIG.modifiers, CONFIG.context),
    ToolSequenceCorrelator.from_config(load_sequences(BUNDLED_SEQUENCES)),
    CONFIG,
)

WORDS = st.sampled_from([
    "rm", "-rf", "/", "~", "build/", "git", "push", "--force", "reset", "--hard",
    "curl", "https://example.com", "|", "sh", "sudo", "npm", "install", "ls",
    "cat", "~/.ssh/id_rsa", "grep", "password", "&&", "echo", "chmod", "777",
    "/etc/passwd", "mkfs", "docker", "kubectl", "delete", "deploy",
])
COMMANDS = st.lists(WORDS, min_size=1, max_size=6).map(" ".join)
SHELL_OPS = COMMANDS.map(lambda c: Operation(kind=OperationKind.SHELL, raw_text=c))
PATHS = st.sampled_from([
    "/etc/hosts", "/usr/bin/python", "/home/dev/project/app.py", "~/.aws/credentials",
    "/home/dev/project/config.yaml", "/var/log/syslog", "README.md",
])
FILE_OPS = st.builds(
    lambda kind, path: Operation(kind=kind, raw_text=path, target_path=path),
    st.sampled_from([OperationKind.FILE_READ, OperationKind.FILE_WRITE]),
    PATHS,
)
OPERATIONS = st.one_of(SHELL_OPS, FILE_OPS)
MODES = st.sampled_from(list(ModeName))
SNAPSHOT_FLAGS = st.fixed_dictionaries({
    "is_production": st.booleans(),
    "has_uncommitted_changes": st.booleans(),
    "is_ci": st.booleans(),
    "is_remote_session": st.booleans(),
    "is_container": st.booleans(),
    "time_of_day": st.integers(min_value=-1, max_value=23),
})


def decide(operation, mode, flags, window=()):
    snapshot = make_snapshot(list(window) + [operation], **flags)
    controller = ModeController(ModeState(mode=mode, started_at=T0))
    return POLICY.evaluate(operation, snapshot, TrustLedger(session_started_at=T0), controller)


@given(OPERATIONS, MODES, SNAPSHOT_FLAGS, st.lists(OPERATIONS, max_size=4))
def test_score_is_clamped(operation, mode, flags, window):
    decision = decide(operation, mode, flags, window)
    assert 1 <= decision.risk_score <= 10


@given(OPERATIONS, MODES, SNAPSHOT_FLAGS)
def test_critical_scores_always_confirm(operation, mode, flags):
    decision = decide(operation, mode, flags)
    if decision.risk_score >= CONFIG.modes.critical_floor_score:
        assert decision.action.at_least(Action.EXPLAIN_AND_CONFIRM) == decision.action


@given(st.sampled_from(["/etc/hosts", "/usr/bin/python", "/var/log/syslog"]), MODES, SNAPSHOT_FLAGS)
def test_system_paths_never_allowed(path, mode, flags):
    op = Operation(kind=OperationKind.FILE_READ, raw_text=path, target_path=path)
    assert decide(op, mode, flags).action != Action.ALLOW


@given(OPERATIONS, MODES, SNAPSHOT_FLAGS, st.lists(OPERATIONS, max_size=4))
def test_decisions_are_deterministic(operation, mode, flags, window):
    assert decide(operation, mode, flags, window) == decide(operation, mode, flags, window)


@given(OPERATIONS, SNAPSHOT_FLAGS)
def test_every_decision_has_a_reason(operation, flags):
    decision = decide(operation, ModeName.ADAPTIVE, flags)
    assert decision.reasons
