"""
Meshroute Configuration
=======================

YAML-based configuration with sensible defaults.
Loads from meshroute.yaml if present, otherwise uses built-in defaults.
Each section is validated into a settings model before use, so bad values
fail once at construction time instead of deep inside a routing call.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from meshroute.errors import ConfigError

_DEFAULTS = {
    "router": {
        "exploration_constant": 1.0,
        "cost_weight": 0.3,
        "cost_reference": 0.01,
        "prior_weight": 5.0,
        "local_bonus": 0.05,
        "preference_bonus": 0.05,
        "margin_scale": 0.05,
        "sample_scale": 20.0,
    },
    "breaker": {
        "failure_threshold": 3,
        "cooldown_s": 60.0,
    },
    "budget": {
        "daily": math.inf,
        "hourly": None,
        "downgrade_threshold": 0.8,
        "critical_threshold": 0.95,
        "alert_thresholds": [0.5, 0.75, 0.9],
    },
    "swarm": {
        "max_concurrent": 8,
        "deadline_s": None,
        "timeout_multiplier": 3.0,
        "min_timeout_s": 1.0,
        "default_quality": 0.85,
        "input_share": 0.6,
    },
    "speculative": {
        "max_draft_tokens": 64,
        "acceptance_threshold": 0.3,
        "disable_after_attempts": 5,
        "complexity_threshold": 0.3,
        "latency_budget_threshold_ms": 2000.0,
        "verify_max_tokens": 256,
        "direct_max_tokens": 1024,
    },
    "logging": {
        "level": "info",
        "audit_dir": None,
    },
}


class RouterSettings(BaseModel):
    exploration_constant: float = Field(default=1.0, ge=0.0)
    cost_weight: float = Field(default=0.3, ge=0.0)
    cost_reference: float = Field(default=0.01, gt=0.0)
    prior_weight: float = Field(default=5.0, ge=0.0)
    local_bonus: float = Field(default=0.05, ge=0.0)
    preference_bonus: float = Field(default=0.05, ge=0.0)
    margin_scale: float = Field(default=0.05, gt=0.0)
    sample_scale: float = Field(default=20.0, gt=0.0)


class BreakerSettings(BaseModel):
    failure_threshold: int = Field(default=3, ge=1)
    cooldown_s: float = Field(default=60.0, ge=0.0)


class BudgetSettings(BaseModel):
    daily: float = math.inf
    hourly: Optional[float] = None
    downgrade_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    critical_threshold: float = Field(default=0.95, gt=0.0, le=1.0)
    alert_thresholds: list[float] = Field(default_factory=lambda: [0.5, 0.75, 0.9])


class SwarmSettings(BaseModel):
    max_concurrent: int = Field(default=8, ge=1)
    deadline_s: Optional[float] = Field(default=None, gt=0.0)
    timeout_multiplier: float = Field(default=3.0, gt=0.0)
    min_timeout_s: float = Field(default=1.0, ge=0.0)
    default_quality: float = Field(default=0.85, ge=0.0, le=1.0)
    input_share: float = Field(default=0.6, ge=0.0, le=1.0)


class SpeculativeSettings(BaseModel):
    max_draft_tokens: int = Field(default=64, ge=1)
    acceptance_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    disable_after_attempts: int = Field(default=5, ge=1)
    complexity_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    latency_budget_threshold_ms: float = Field(default=2000.0, ge=0.0)
    verify_max_tokens: int = Field(default=256, ge=1)
    direct_max_tokens: int = Field(default=1024, ge=1)


class Settings(BaseModel):
    router: RouterSettings = Field(default_factory=RouterSettings)
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    budget: BudgetSettings = Field(default_factory=BudgetSettings)
    swarm: SwarmSettings = Field(default_factory=SwarmSettings)
    speculative: SpeculativeSettings = Field(default_factory=SpeculativeSettings)


def load_config(path: str | Path = "meshroute.yaml") -> dict:
    """Load configuration from YAML file, merging with defaults.

    Args:
        path: Path to YAML config file. If relative, resolved from CWD.

    Returns:
        Merged config dict with all sections populated.
    """
    config = {k: dict(v) for k, v in _DEFAULTS.items()}
    config_path = Path(path)
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            user = yaml.safe_load(f) or {}
        for section, values in user.items():
            if section in config and isinstance(values, dict):
                config[section].update(values)
            else:
                config[section] = values
    return config


def parse_settings(config: Optional[dict[str, Any]] = None) -> Settings:
    """Validate a (possibly partial) config dict into typed settings.

    Raises:
        ConfigError: If any section holds an invalid value.
    """
    merged = {k: dict(v) for k, v in _DEFAULTS.items()}
    for section, values in (config or {}).items():
        if section in merged and isinstance(values, dict):
            merged[section].update(values)
    merged.pop("logging", None)
    try:
        return Settings(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid meshroute configuration: {e}") from e


def configure_logging(level: str = "info") -> None:
    """Basic console logging for applications embedding meshroute."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
