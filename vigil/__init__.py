"""
Vigil - Adaptive command-risk advisory engine for AI agents.

Vigil sits between an agent and the operations it wants to run:
- Scores every proposed shell/file/network/tool operation for risk
- Folds in environment context and the recent operation sequence
- Learns which patterns a user keeps approving (and which went wrong)
- Maps the final score to allow/hint/confirm/block per operating mode
- Takes reversible checkpoints before risky operations are let through

Vigil only advises. The host decides whether to execute.
"""

__version__ = "0.3.1"

from vigil.engine import AdvisoryEngine, Clearance
from vigil.errors import (
    CheckpointExpired,
    CheckpointNotFound,
    InvalidOperation,
    RestoreFailed,
    VigilError,
)
from vigil.schemas import Action, Decision, ModeName, Operation, OperationKind

__all__ = [
    "AdvisoryEngine",
    "Clearance",
    "Action",
    "Decision",
    "ModeName",
    "Operation",
    "OperationKind",
    "VigilError",
    "InvalidOperation",
    "CheckpointExpired",
    "CheckpointNotFound",
    "RestoreFailed",
]
