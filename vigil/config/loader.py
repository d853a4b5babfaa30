"""
Vigil Configuration Loader

The rule configuration source: reads the engine config and the rule and
sequence tables once at startup and validates them.

Layering for config.yaml (later layers win, dicts deep-merged):
1. Builtin defaults (the pydantic model defaults)
2. User config: ~/.vigil/config.yaml
3. Project config: <project>/.vigil/config.yaml

Rule tables: an explicit path wins, then ~/.vigil/<name>.yaml, then the
bundled file next to this module. Reload means building a new engine.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from vigil.config.models import RulesConfig, SequencesConfig, VigilConfig
from vigil.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).parent
BUNDLED_RULES = CONFIG_DIR / "rules.yaml"
BUNDLED_SEQUENCES = CONFIG_DIR / "sequences.yaml"

USER_DIR = Path.home() / ".vigil"


@dataclass(frozen=True)
class ConfigBundle:
    """Everything the engine needs from configuration, validated."""
    config: VigilConfig
    rules: RulesConfig
    sequences: SequencesConfig


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping. Missing file -> {}; malformed -> ConfigError."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a YAML mapping")
    return data


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _format_validation_error(source: str, error: ValidationError) -> str:
    lines = [f"Invalid configuration in {source}:"]
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        lines.append(f"  {location}: {err.get('msg', 'invalid value')}")
    return "\n".join(lines)


def load_config(
    user_path: Optional[Path] = None,
    project_dir: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> VigilConfig:
    """Load and validate the layered engine configuration."""
    user_path = user_path or (USER_DIR / "config.yaml")
    merged: Dict[str, Any] = {}
    sources = ["builtin"]

    user_cfg = _read_yaml(user_path)
    if user_cfg:
        merged = deep_merge(merged, user_cfg)
        sources.append(str(user_path))

    if project_dir is not None:
        project_path = Path(project_dir) / ".vigil" / "config.yaml"
        project_cfg = _read_yaml(project_path)
        if project_cfg:
            merged = deep_merge(merged, project_cfg)
            sources.append(str(project_path))

    if overrides:
        merged = deep_merge(merged, overrides)
        sources.append("overrides")

    try:
        config = VigilConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(" + ".join(sources), e)) from e

    logger.debug("Loaded config from %s", ", ".join(sources))
    return config


def _resolve_table(path: Optional[Path], name: str, bundled: Path) -> Path:
    if path is not None:
        return Path(path)
    user_table = USER_DIR / f"{name}.yaml"
    if user_table.exists():
        return user_table
    return bundled


def load_rules(path: Optional[Path] = None) -> RulesConfig:
    """Load the ordered risk-rule table."""
    source = _resolve_table(path, "rules", BUNDLED_RULES)
    data = _read_yaml(source)
    if not data:
        raise ConfigError(f"Rule table {source} is missing or empty")
    try:
        rules = RulesConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(str(source), e)) from e
    logger.debug("Loaded %d risk rules from %s", len(rules.rules), source)
    return rules


def load_sequences(path: Optional[Path] = None) -> SequencesConfig:
    """Load the dangerous-sequence table."""
    source = _resolve_table(path, "sequences", BUNDLED_SEQUENCES)
    data = _read_yaml(source)
    if not data:
        raise ConfigError(f"Sequence table {source} is missing or empty")
    try:
        sequences = SequencesConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(str(source), e)) from e
    logger.debug("Loaded %d sequence patterns from %s", len(sequences.sequences), source)
    return sequences


def load_bundle(
    config_path: Optional[Path] = None,
    rules_path: Optional[Path] = None,
    sequences_path: Optional[Path] = None,
    project_dir: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ConfigBundle:
    """Load config, rules and sequences in one go."""
    return ConfigBundle(
        config=load_config(user_path=config_path, project_dir=project_dir, overrides=overrides),
        rules=load_rules(rules_path),
        sequences=load_sequences(sequences_path),
    )
