"""
Vigil rule evaluation.

- evaluator: declarative risk rules -> base risk + context modifiers
- modifiers: named context predicates and their labels
- sequences: dangerous ordered sequences in the recent-operation window
"""

from vigil.rules.evaluator import (
    RiskAssessment,
    RiskRule,
    RiskRuleEvaluator,
    clamp_score,
)
from vigil.rules.modifiers import TrustSignals
from vigil.rules.sequences import CompoundRisk, ToolSequenceCorrelator

__all__ = [
    "RiskAssessment",
    "RiskRule",
    "RiskRuleEvaluator",
    "TrustSignals",
    "CompoundRisk",
    "ToolSequenceCorrelator",
    "clamp_score",
]
