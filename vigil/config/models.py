"""
Pydantic models for Vigil configuration validation.

These models define the schema for config.yaml (engine tunables),
rules.yaml (risk rules) and sequences.yaml (dangerous operation
sequences). They provide:
- Type-safe configuration loading with automatic validation
- Human-readable error messages for invalid configuration
- JSON Schema export for documentation and IDE support
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from vigil.schemas import OperationKind


# ============================================================================
# Modifier registry
# ============================================================================

# Named context modifiers and their default weights. The predicates that
# decide whether each one applies live in vigil.rules.modifiers.
DEFAULT_MODIFIER_WEIGHTS: Dict[str, int] = {
    "is_production": 3,
    "has_uncommitted_changes": 1,
    "is_test_directory": -2,
    "explicit_user_request": -3,
    "repeated_operation": -2,
    "is_ci": 2,
    "is_remote_session": 1,
    "is_container": -1,
    "recent_mistake": 2,
    "off_hours": 1,
    "elevated_privilege": 2,
    "reversible": -2,
    "has_backup": -3,
    "affects_system_path": 4,
    "transmits_externally": 3,
    "previously_approved": -3,
}

KNOWN_MODIFIERS = frozenset(DEFAULT_MODIFIER_WEIGHTS)


def _check_modifier_names(names) -> None:
    unknown = sorted(set(names) - KNOWN_MODIFIERS)
    if unknown:
        raise ValueError(
            f"Unknown context modifier(s): {', '.join(unknown)}. "
            f"Known: {', '.join(sorted(KNOWN_MODIFIERS))}"
        )


def _check_regex(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    try:
        re.compile(v)
    except re.error as e:
        raise ValueError(f"Invalid regex pattern: {e}") from e
    return v


# ============================================================================
# Engine Configuration Sections
# ============================================================================


class ContextConfig(BaseModel):
    """Context snapshot and probe configuration."""
    window_size: int = Field(default=5, gt=0, le=100)
    probe_timeout_seconds: float = Field(default=2.0, gt=0)
    production_branches: List[str] = Field(
        default_factory=lambda: ["production", "prod", "release/*"]
    )
    production_env_values: List[str] = Field(
        default_factory=lambda: ["prod", "production", "live"]
    )
    environment_keys: List[str] = Field(
        default_factory=lambda: ["ENV", "APP_ENV", "NODE_ENV", "RAILS_ENV", "DEPLOY_ENV"]
    )
    test_dir_markers: List[str] = Field(
        default_factory=lambda: ["test", "tests", "__tests__", "spec", "specs"]
    )
    off_hours_start: int = Field(default=22, ge=0, le=23)
    off_hours_end: int = Field(default=7, ge=0, le=23)
    system_paths: List[str] = Field(
        default_factory=lambda: [
            "/", "/etc", "/usr", "/bin", "/sbin", "/boot", "/lib", "/lib64",
            "/var", "/System", "/Library", "C:\\Windows",
        ]
    )

    model_config = {"extra": "allow"}


class TrustConfig(BaseModel):
    """Trust ledger configuration."""
    idle_reset_seconds: int = Field(default=1800, gt=0)
    auto_trust_threshold: int = Field(default=3, gt=0)
    mistake_cooldown_seconds: int = Field(default=3600, ge=0)

    model_config = {"extra": "allow"}


class ThresholdConfig(BaseModel):
    """Lowest score that triggers each action (before mode offsets)."""
    hint_only: int = Field(default=4, ge=1)
    quick_confirm: int = Field(default=6, ge=1)
    explain_and_confirm: int = Field(default=8, ge=1)
    block: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def check_increasing(self) -> "ThresholdConfig":
        values = [self.hint_only, self.quick_confirm, self.explain_and_confirm, self.block]
        if any(a >= b for a, b in zip(values, values[1:])):
            raise ValueError(
                "thresholds must be strictly increasing: "
                "hint_only < quick_confirm < explain_and_confirm < block"
            )
        return self


class ModeOffsets(BaseModel):
    """Per-mode shift applied to every threshold."""
    learning: int = 0
    adaptive: int = 0
    flow: int = 4
    paranoid: int = -2


class ModesConfig(BaseModel):
    """Mode/state controller configuration."""
    learning_period_days: int = Field(default=7, ge=0)
    default_flow_minutes: int = Field(default=60, gt=0)
    suppress_low_hints: bool = True
    critical_floor_score: int = Field(default=9, ge=1, le=10)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    offsets: ModeOffsets = Field(default_factory=ModeOffsets)

    model_config = {"extra": "allow"}


class RecoveryConfig(BaseModel):
    """Recovery coordinator configuration."""
    retention_seconds: int = Field(default=60, gt=0)
    checkpoint_min_score: int = Field(default=7, ge=1, le=10)
    max_archive_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    git_timeout_seconds: float = Field(default=5.0, gt=0)

    model_config = {"extra": "allow"}


# ============================================================================
# Root Configuration Model
# ============================================================================


class VigilConfig(BaseModel):
    """
    Root Pydantic model for Vigil configuration (config.yaml).

    Validates the merged configuration from builtin defaults, user, and
    project layers. Uses extra="allow" at the root level to be
    forward-compatible with new config keys added in future versions.
    """
    version: Optional[int] = None
    context: ContextConfig = Field(default_factory=ContextConfig)
    trust: TrustConfig = Field(default_factory=TrustConfig)
    modes: ModesConfig = Field(default_factory=ModesConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    modifiers: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_MODIFIER_WEIGHTS))

    model_config = {"extra": "allow"}

    @field_validator("modifiers")
    @classmethod
    def merge_modifier_defaults(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Partial overrides keep the defaults for names they don't mention."""
        _check_modifier_names(v)
        merged = dict(DEFAULT_MODIFIER_WEIGHTS)
        merged.update(v)
        return merged


# ============================================================================
# Rule Schema Models
# ============================================================================


class OperationMatcherDefinition(BaseModel):
    """Declarative predicate over an Operation. All given criteria must hold."""
    kinds: List[OperationKind] = Field(default_factory=list)
    pattern: Optional[str] = None        # regex searched in raw_text (+ target_path)
    path_pattern: Optional[str] = None   # regex searched in target_path
    tools: List[str] = Field(default_factory=list)

    @field_validator("pattern", "path_pattern")
    @classmethod
    def validate_regex(cls, v: Optional[str]) -> Optional[str]:
        return _check_regex(v)

    @model_validator(mode="after")
    def check_has_criteria(self):
        if not (self.kinds or self.pattern or self.path_pattern or self.tools):
            raise ValueError("matcher needs at least one of kinds, pattern, path_pattern, tools")
        return self


class RewriteDefinition(BaseModel):
    """Regex substitution applied to the original raw_text."""
    pattern: str
    replacement: str

    @field_validator("pattern")
    @classmethod
    def validate_regex(cls, v: str) -> str:
        return _check_regex(v)


class AlternativeDefinition(BaseModel):
    """A safer replacement suggested when a rule matches."""
    description: str
    command: Optional[str] = None
    rewrite: Optional[RewriteDefinition] = None

    @model_validator(mode="after")
    def check_exactly_one(self) -> "AlternativeDefinition":
        if (self.command is None) == (self.rewrite is None):
            raise ValueError("alternative needs exactly one of 'command' or 'rewrite'")
        return self


class RiskRuleDefinition(OperationMatcherDefinition):
    """A single risk rule from rules.yaml."""
    id: str
    description: str
    base_risk: int = Field(ge=1, le=10)
    context_modifiers: Dict[str, int] = Field(default_factory=dict)
    reversible: bool = False
    alternatives: List[AlternativeDefinition] = Field(default_factory=list)

    @field_validator("context_modifiers")
    @classmethod
    def validate_modifier_names(cls, v: Dict[str, int]) -> Dict[str, int]:
        _check_modifier_names(v)
        return v


class RulesConfig(BaseModel):
    """Root model for rules.yaml."""
    version: int
    rules: List[RiskRuleDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_ids(self) -> "RulesConfig":
        ids = [r.id for r in self.rules]
        if len(ids) != len(set(ids)):
            dupes = {i for i in ids if ids.count(i) > 1}
            raise ValueError(f"Duplicate rule IDs: {dupes}")
        return self


class SequenceStepDefinition(OperationMatcherDefinition):
    """One step of a dangerous sequence."""
    label: str


class SequencePatternDefinition(BaseModel):
    """An ordered sequence of operations that is riskier than its parts."""
    id: str
    description: str
    risk: int = Field(ge=1, le=10)
    steps: List[SequenceStepDefinition] = Field(min_length=2)


class SequencesConfig(BaseModel):
    """Root model for sequences.yaml."""
    version: int
    sequences: List[SequencePatternDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_ids(self) -> "SequencesConfig":
        ids = [s.id for s in self.sequences]
        if len(ids) != len(set(ids)):
            dupes = {i for i in ids if ids.count(i) > 1}
            raise ValueError(f"Duplicate sequence IDs: {dupes}")
        return self
