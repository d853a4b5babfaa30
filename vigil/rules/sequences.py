"""
Vigil Tool-Sequence Correlator

Detects dangerous ordered sequences in the recent-operation window.
A sequence matches when its steps occur in order in the window and its
last step is the newest operation (the one under evaluation); unrelated
operations may sit between the earlier steps. A sequence that completed
earlier does not follow later operations around. Matches sum, and the compound
total is clamped to 10 before it joins the rest of the risk sum.

The correlator never touches the session window; it only reads the
snapshot's copy.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from vigil.config.models import SequencePatternDefinition, SequencesConfig
from vigil.rules.evaluator import OperationMatcher
from vigil.schemas import Operation

MAX_COMPOUND_RISK = 10


@dataclass(frozen=True)
class SequenceStep:
    label: str
    matcher: OperationMatcher


@dataclass(frozen=True)
class SequencePattern:
    """A compiled dangerous sequence."""

    id: str
    description: str
    risk: int
    steps: Tuple[SequenceStep, ...]

    @classmethod
    def from_definition(cls, definition: SequencePatternDefinition) -> SequencePattern:
        return cls(
            id=definition.id,
            description=definition.description,
            risk=definition.risk,
            steps=tuple(SequenceStep(s.label, OperationMatcher(s)) for s in definition.steps),
        )

    def find(self, window: Sequence[Operation]) -> Optional[Tuple[int, ...]]:
        """Window indices of an in-order match ending at the newest operation, or None."""
        if not window or not self.steps[-1].matcher(window[-1]):
            return None
        earlier = window[:-1]
        indices: List[int] = []
        position = 0
        for step in self.steps[:-1]:
            while position < len(earlier) and not step.matcher(earlier[position]):
                position += 1
            if position >= len(earlier):
                return None
            indices.append(position)
            position += 1
        indices.append(len(window) - 1)
        return tuple(indices)


@dataclass(frozen=True)
class SequenceMatch:
    pattern_id: str
    description: str
    risk: int
    indices: Tuple[int, ...]


@dataclass(frozen=True)
class CompoundRisk:
    """Result of correlating the window."""
    extra_risk: int
    matches: Tuple[SequenceMatch, ...] = ()

    @property
    def matched_pattern_ids(self) -> Tuple[str, ...]:
        return tuple(m.pattern_id for m in self.matches)


class ToolSequenceCorrelator:
    """Sliding-window detector for dangerous operation sequences."""

    def __init__(self, patterns: Sequence[SequencePattern]):
        self.patterns = tuple(patterns)

    @classmethod
    def from_config(cls, sequences_config: SequencesConfig) -> ToolSequenceCorrelator:
        return cls([SequencePattern.from_definition(d) for d in sequences_config.sequences])

    def compound_risk(self, window: Sequence[Operation]) -> CompoundRisk:
        """Sum the risk of every sequence completed by the newest operation, capped at 10."""
        ops = tuple(window)
        matches = []
        for pattern in self.patterns:
            indices = pattern.find(ops)
            if indices is not None:
                matches.append(SequenceMatch(
                    pattern_id=pattern.id,
                    description=pattern.description,
                    risk=pattern.risk,
                    indices=indices,
                ))
        total = min(sum(m.risk for m in matches), MAX_COMPOUND_RISK)
        return CompoundRisk(extra_risk=total, matches=tuple(matches))
