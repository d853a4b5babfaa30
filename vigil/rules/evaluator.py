"""
Vigil Risk Rule Evaluator

Maps an operation plus its context to a base risk score by declarative
rule matching:

    score = base(first matching rule)
          + sum(global weight of every applicable modifier)
          + sum(rule weight of every applicable modifier, over ALL matching rules)

Operations no rule matches are unclassified and start at 5.
The evaluator reports the unclamped parts; clamping to [1, 10] is done
once, by the policy engine, after compound risk has been added.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Pattern, Sequence, Tuple

from vigil.config.models import (
    AlternativeDefinition,
    ContextConfig,
    OperationMatcherDefinition,
    RiskRuleDefinition,
    RulesConfig,
)
from vigil.rules.modifiers import (
    MODIFIER_LABELS,
    ModifierContext,
    TrustSignals,
    applicable_modifiers,
)
from vigil.schemas import Alternative, ContextSnapshot, Operation

UNCLASSIFIED_BASE_RISK = 5


def clamp_score(value: int, low: int = 1, high: int = 10) -> int:
    return max(low, min(high, value))


# =============================================================================
# Matchers
# =============================================================================


class OperationMatcher:
    """Compiled form of an OperationMatcherDefinition."""

    def __init__(self, definition: OperationMatcherDefinition):
        self.kinds = frozenset(definition.kinds)
        self.tools = frozenset(t.lower() for t in definition.tools)
        self.pattern: Optional[Pattern] = (
            re.compile(definition.pattern, re.IGNORECASE) if definition.pattern else None
        )
        self.path_pattern: Optional[Pattern] = (
            re.compile(definition.path_pattern, re.IGNORECASE)
            if definition.path_pattern else None
        )

    def __call__(self, operation: Operation) -> bool:
        if self.kinds and operation.kind not in self.kinds:
            return False
        if self.tools and (operation.tool_name or "").lower() not in self.tools:
            return False
        if self.path_pattern is not None:
            if not operation.target_path or not self.path_pattern.search(operation.target_path):
                return False
        if self.pattern is not None and not self.pattern.search(operation.text_for_matching()):
            return False
        return True


@dataclass(frozen=True)
class RiskRule:
    """A loaded rule: id, matcher predicate, base risk and modifiers."""

    id: str
    description: str
    matcher: Callable[[Operation], bool]
    base_risk: int
    context_modifiers: Mapping[str, int] = field(default_factory=dict)
    reversible: bool = False
    alternatives: Tuple[AlternativeDefinition, ...] = ()

    @classmethod
    def from_definition(cls, definition: RiskRuleDefinition) -> RiskRule:
        return cls(
            id=definition.id,
            description=definition.description,
            matcher=OperationMatcher(definition),
            base_risk=definition.base_risk,
            context_modifiers=dict(definition.context_modifiers),
            reversible=definition.reversible,
            alternatives=tuple(definition.alternatives),
        )

    def suggest(self, operation: Operation) -> List[Alternative]:
        """Static suggestions for this rule, made concrete for operation."""
        suggestions = []
        for alt in self.alternatives:
            if alt.command is not None:
                replacement_text = alt.command
            else:
                replacement_text = re.sub(
                    alt.rewrite.pattern, alt.rewrite.replacement,
                    operation.raw_text, flags=re.IGNORECASE,
                )
                if replacement_text == operation.raw_text:
                    continue  # Rewrite does not apply to this command
            suggestions.append(Alternative(
                description=alt.description,
                replacement_operation=Operation(
                    kind=operation.kind,
                    raw_text=replacement_text,
                    target_path=operation.target_path,
                    tool_name=operation.tool_name,
                ),
            ))
        return suggestions


# =============================================================================
# Evaluation result
# =============================================================================


@dataclass(frozen=True)
class Contribution:
    """One labelled term of the risk sum."""
    source: str   # "rule", "modifier", "sequence", "hint"
    key: str
    label: str
    delta: int


@dataclass(frozen=True)
class RiskAssessment:
    """Output of the rule evaluator."""
    base_risk: int
    matched_rule_ids: Tuple[str, ...]
    contributions: Tuple[Contribution, ...]
    applied_modifiers: Tuple[str, ...]

    @property
    def raw_score(self) -> int:
        return sum(c.delta for c in self.contributions)

    @property
    def score(self) -> int:
        return clamp_score(self.raw_score)


# =============================================================================
# Evaluator
# =============================================================================


class RiskRuleEvaluator:
    """Pure function from (operation, snapshot) to base risk."""

    def __init__(
        self,
        rules: Sequence[RiskRule],
        modifier_weights: Mapping[str, int],
        settings: Optional[ContextConfig] = None,
    ):
        self.rules = tuple(rules)
        self.modifier_weights = dict(modifier_weights)
        self.settings = settings or ContextConfig()
        self._by_id: Dict[str, RiskRule] = {r.id: r for r in self.rules}

    @classmethod
    def from_config(
        cls,
        rules_config: RulesConfig,
        modifier_weights: Mapping[str, int],
        settings: Optional[ContextConfig] = None,
    ) -> RiskRuleEvaluator:
        return cls(
            [RiskRule.from_definition(d) for d in rules_config.rules],
            modifier_weights,
            settings,
        )

    def rule(self, rule_id: str) -> Optional[RiskRule]:
        return self._by_id.get(rule_id)

    def matching_rules(self, operation: Operation) -> List[RiskRule]:
        """All rules that match, in declaration order."""
        return [r for r in self.rules if r.matcher(operation)]

    def base_risk(
        self,
        operation: Operation,
        snapshot: ContextSnapshot,
        signals: Optional[TrustSignals] = None,
    ) -> RiskAssessment:
        signals = signals or TrustSignals()
        matched = self.matching_rules(operation)
        contributions: List[Contribution] = []

        if matched:
            primary = matched[0]
            base = primary.base_risk
            contributions.append(Contribution(
                "rule", primary.id, f"{primary.description} [{primary.id}]", base,
            ))
        else:
            base = UNCLASSIFIED_BASE_RISK
            contributions.append(Contribution(
                "rule", "unclassified", "unclassified operation", base,
            ))

        ctx = ModifierContext(
            operation=operation,
            snapshot=snapshot,
            signals=signals,
            settings=self.settings,
            rule_reversible=any(r.reversible for r in matched),
        )
        applied = applicable_modifiers(ctx)

        for name in applied:
            weight = self.modifier_weights.get(name, 0)
            if weight:
                contributions.append(Contribution(
                    "modifier", name, MODIFIER_LABELS.get(name, name), weight,
                ))
            for rule in matched:
                extra = rule.context_modifiers.get(name, 0)
                if extra:
                    contributions.append(Contribution(
                        "modifier", name,
                        f"{MODIFIER_LABELS.get(name, name)} [{rule.id}]", extra,
                    ))

        return RiskAssessment(
            base_risk=base,
            matched_rule_ids=tuple(r.id for r in matched),
            contributions=tuple(contributions),
            applied_modifiers=tuple(applied),
        )
