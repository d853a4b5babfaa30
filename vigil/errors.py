"""
Vigil error taxonomy.

Propagation policy:
- Context and store failures are recovered where they happen, with
  defaults that raise perceived risk. They never escape evaluate().
- Malformed input (InvalidOperation) is the only hard failure of
  evaluate(); the host must not execute the operation.
- Restore and mode-transition failures are raised to whoever asked for
  the restore or transition.
"""

from typing import Optional


class VigilError(Exception):
    """Base class for all Vigil errors."""


class InvalidOperation(VigilError, ValueError):
    """The Operation value is malformed. Evaluation is aborted."""


class ProbeUnavailable(VigilError):
    """A context probe failed or did not answer within the timeout."""

    def __init__(self, probe: str, detail: str = ""):
        self.probe = probe
        self.detail = detail
        message = f"probe '{probe}' unavailable"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class UnsupportedOperationKind(VigilError):
    """No recovery strategy can checkpoint this operation."""

    def __init__(self, operation_kind: str, detail: str = ""):
        self.operation_kind = operation_kind
        message = f"no recovery strategy for {operation_kind} operation"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class CheckpointError(VigilError):
    """Base class for checkpoint creation and restore failures."""

    def __init__(self, message: str, checkpoint_id: Optional[str] = None):
        self.checkpoint_id = checkpoint_id
        super().__init__(message)


class CheckpointExpired(CheckpointError):
    """The checkpoint's retention window has passed."""


class CheckpointNotFound(CheckpointError):
    """No checkpoint exists with that id."""


class RestoreFailed(CheckpointError):
    """The checkpoint exists but restoring it did not succeed."""


class PersistentStoreUnavailable(VigilError):
    """The persistent key-value store could not be read or written."""


class ModeTransitionError(VigilError):
    """A mode change was requested from a state that does not allow it."""


class ConfigError(VigilError):
    """Configuration or rule files failed validation."""
