"""Vigil configuration module."""

from pathlib import Path

from .loader import (
    BUNDLED_RULES,
    BUNDLED_SEQUENCES,
    ConfigBundle,
    load_bundle,
    load_config,
    load_rules,
    load_sequences,
)
from .models import RulesConfig, SequencesConfig, VigilConfig

CONFIG_DIR = Path(__file__).parent

__all__ = [
    "CONFIG_DIR", "BUNDLED_RULES", "BUNDLED_SEQUENCES",
    "ConfigBundle", "load_bundle", "load_config", "load_rules", "load_sequences",
    "VigilConfig", "RulesConfig", "SequencesConfig",
]
