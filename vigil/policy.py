"""
Vigil Policy Engine

Combines rule risk, compound sequence risk, trust and the score-hint
collaborator into one clamped score, then maps it to an action through
the session's mode:

    score = clamp(rule base + modifiers + min(compound, 10) + hint, 1, 10)

Given the same operation, snapshot, ledger state and mode state the
result is identical. The only mutation is the ledger's reset check.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from vigil.config.models import VigilConfig
from vigil.context.snapshot import DEGRADED_NOTES
from vigil.modes import ModeController
from vigil.plugins import NullScoreHint, ScoreHintProvider, clamp_hint
from vigil.rules.evaluator import Contribution, RiskRuleEvaluator, clamp_score
from vigil.rules.modifiers import TrustSignals
from vigil.rules.sequences import ToolSequenceCorrelator
from vigil.schemas import (
    Action,
    Alternative,
    ContextSnapshot,
    Decision,
    ModeName,
    Operation,
)
from vigil.trust.ledger import TrustLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Scored:
    """Intermediate result: everything that went into the score."""
    score: int
    contributions: Tuple[Contribution, ...]
    matched_rule_ids: Tuple[str, ...]
    matched_sequence_ids: Tuple[str, ...]
    applied_modifiers: Tuple[str, ...]
    notes: Tuple[str, ...]


def _format_contribution(c: Contribution) -> str:
    if c.source == "rule":
        return f"{c.label} (base {c.delta})"
    return f"{c.label} ({c.delta:+d})"


class PolicyEngine:
    """The decision primitive: (operation, snapshot, ledger, mode) -> Decision."""

    def __init__(
        self,
        evaluator: RiskRuleEvaluator,
        correlator: ToolSequenceCorrelator,
        config: Optional[VigilConfig] = None,
        score_hint: Optional[ScoreHintProvider] = None,
    ):
        self.evaluator = evaluator
        self.correlator = correlator
        self.config = config or VigilConfig()
        self.score_hint = score_hint or NullScoreHint()

    def primary_rule_id(self, operation: Operation) -> str:
        matched = self.evaluator.matching_rules(operation)
        return matched[0].id if matched else "unclassified"

    def pattern_key(self, operation: Operation) -> str:
        return operation.pattern_key(self.primary_rule_id(operation))

    def _hint(self, operation: Operation, snapshot: ContextSnapshot) -> Tuple[int, Optional[str]]:
        try:
            return clamp_hint(self.score_hint.score_hint(operation, snapshot)), None
        except Exception as e:
            # The collaborator is optional; its failure must not stop evaluation
            logger.warning("Score hint provider %s failed: %s", self.score_hint.name, e)
            return 0, f"score hint '{self.score_hint.name}' failed, ignored"

    def score(
        self,
        operation: Operation,
        snapshot: ContextSnapshot,
        ledger: TrustLedger,
        has_backup: bool = False,
    ) -> Scored:
        now = snapshot.taken_at
        notes: List[str] = []

        if ledger.reset_if_triggered(snapshot):
            notes.append("trust reset: " + "; ".join(ledger.last_reset_reasons))

        trust = ledger.lookup(self.pattern_key(operation))
        signals = TrustSignals(
            previously_approved=trust.auto_trusted,
            recent_mistake=ledger.recent_mistake(now),
            has_backup=has_backup,
        )
        assessment = self.evaluator.base_risk(operation, snapshot, signals)
        contributions = list(assessment.contributions)
        total = assessment.raw_score

        compound = self.correlator.compound_risk(snapshot.recent_operations)
        for match in compound.matches:
            contributions.append(Contribution(
                "sequence", match.pattern_id,
                f"sequence: {match.description} [{match.pattern_id}]", match.risk,
            ))
        total += compound.extra_risk

        hint, hint_note = self._hint(operation, snapshot)
        if hint:
            contributions.append(Contribution("hint", self.score_hint.name, f"{self.score_hint.name} hint", hint))
        if hint_note:
            notes.append(hint_note)
        total += hint

        for probe in snapshot.degraded:
            notes.append(f"context unavailable: {DEGRADED_NOTES.get(probe, probe)}")

        return Scored(
            score=clamp_score(total),
            contributions=tuple(contributions),
            matched_rule_ids=assessment.matched_rule_ids,
            matched_sequence_ids=compound.matched_pattern_ids,
            applied_modifiers=assessment.applied_modifiers,
            notes=tuple(notes),
        )

    def evaluate(
        self,
        operation: Operation,
        snapshot: ContextSnapshot,
        ledger: TrustLedger,
        mode: ModeController,
        has_backup: bool = False,
        extra_notes: Sequence[str] = (),
    ) -> Decision:
        scored = self.score(operation, snapshot, ledger, has_backup)

        action = mode.action_for(scored.score)
        if "affects_system_path" in scored.applied_modifiers:
            action = action.at_least(Action.HINT_ONLY)

        # Largest contribution first; ties keep their natural order
        ordered = sorted(scored.contributions, key=lambda c: -abs(c.delta))
        reasons = [_format_contribution(c) for c in ordered if c.delta]
        reasons.extend(scored.notes)
        reasons.extend(extra_notes)
        if mode.mode == ModeName.LEARNING:
            remaining = mode.learning_days_remaining(snapshot.taken_at)
            reasons.append(f"learning mode: {remaining} day(s) until adaptive")

        alternatives: List[Alternative] = []
        if action != Action.ALLOW:
            seen = set()
            for rule_id in scored.matched_rule_ids:
                rule = self.evaluator.rule(rule_id)
                for alt in rule.suggest(operation) if rule else ():
                    text = alt.replacement_operation.raw_text
                    if text not in seen:
                        seen.add(text)
                        alternatives.append(alt)

        primary = scored.matched_rule_ids[0] if scored.matched_rule_ids else "unclassified"
        return Decision(
            risk_score=scored.score,
            action=action,
            reasons=tuple(reasons),
            alternatives=tuple(alternatives),
            mode=mode.mode,
            matched_rule_ids=scored.matched_rule_ids,
            matched_sequence_ids=scored.matched_sequence_ids,
            pattern_key=operation.pattern_key(primary),
        )
