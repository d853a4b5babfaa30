"""
Vigil Score-Hint Plugins

Optional collaborators that add risk the rule tables can't see (threat
intelligence, learned models, ...). The engine asks one provider for
``score_hint(operation, snapshot)`` and adds the result, clamped to
[0, MAX_HINT], to the risk sum. With no provider the hint is 0.

A provider that raises contributes 0 and the failure is listed as a
Decision reason.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod

from vigil.schemas import ContextSnapshot, Operation, OperationKind

MAX_HINT = 10


class ScoreHintProvider(ABC):
    """Interface for pluggable risk hints."""

    name: str = "score_hint"

    @abstractmethod
    def score_hint(self, operation: Operation, snapshot: ContextSnapshot) -> int:
        """Extra risk for this operation (0 means no opinion)."""


class NullScoreHint(ScoreHintProvider):
    """The absent collaborator: always 0."""

    name = "none"

    def score_hint(self, operation: Operation, snapshot: ContextSnapshot) -> int:
        return 0


# Local signals only; no network, no model
_SHELL_EXPANSION_RE = re.compile(r"\$\(|`[^`]+`|\beval\s|\bexec\s")
_DECODE_EXEC_RE = re.compile(
    r"\b(?:base64\s+(?:-d|--decode)|xxd\s+-r)\b.*\|\s*(?:ba|z|da)?sh\b", re.IGNORECASE
)
_HEX_ESCAPES_RE = re.compile(r"(?:\\x[0-9a-fA-F]{2}){4,}")


class ObfuscationScoreHint(ScoreHintProvider):
    """Adds risk for obfuscated shell: decode-and-execute, eval, escaped bytes."""

    name = "obfuscation"

    def score_hint(self, operation: Operation, snapshot: ContextSnapshot) -> int:
        if operation.kind != OperationKind.SHELL:
            return 0
        text = operation.raw_text
        hint = 0
        if _DECODE_EXEC_RE.search(text):
            hint += 3
        if _SHELL_EXPANSION_RE.search(text):
            hint += 1
        if _HEX_ESCAPES_RE.search(text):
            hint += 1
        return hint


def clamp_hint(value: int) -> int:
    return max(0, min(MAX_HINT, int(value)))
