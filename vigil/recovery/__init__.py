"""Vigil recovery: checkpoints before risky operations, restore on demand."""

from vigil.recovery.coordinator import RecoveryCoordinator
from vigil.recovery.strategies import (
    ConfigCopyStrategy,
    FileArchiveStrategy,
    GitPointerStrategy,
    RecoveryStrategy,
    default_strategies,
)

__all__ = [
    "ConfigCopyStrategy",
    "FileArchiveStrategy",
    "GitPointerStrategy",
    "RecoveryCoordinator",
    "RecoveryStrategy",
    "default_strategies",
]
