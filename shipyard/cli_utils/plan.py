"""Utility functions to load rollout plans and command-line inputs."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml

from shipyard.config import RolloutConfig
from shipyard.contracts import RolloutPlan


def _apply_stage_defaults(stage: Dict[str, Any], defaults: RolloutConfig) -> Dict[str, Any]:
    stage = dict(stage)
    stage.setdefault("approval_timeout_seconds", defaults.approval_timeout_seconds)
    health = dict(stage.get("health") or {})
    health.setdefault("timeout_seconds", defaults.health_timeout_seconds)
    health.setdefault("interval_seconds", defaults.health_interval_seconds)
    stage["health"] = health
    return stage


def _load_plan(path: Path, defaults: Optional[RolloutConfig] = None) -> RolloutPlan:
    """Read a plan file, filling unset stage bounds from ``defaults``.

    Raises ``ValueError`` (pydantic's ``ValidationError`` included) for
    malformed plans.
    """

    defaults = defaults or RolloutConfig()
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("plan must be a mapping with a 'stages' list")
    stages = data.get("stages") or []
    if not isinstance(stages, list):
        raise ValueError("'stages' must be a list")
    data["stages"] = [
        _apply_stage_defaults(stage, defaults) if isinstance(stage, dict) else stage
        for stage in stages
    ]
    return RolloutPlan.model_validate(data)


def _parse_inputs(values: Iterable[str]) -> Dict[str, str]:
    """Turn ``key=value`` pairs into a dict; later keys win."""

    inputs: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"expected key=value, got {item!r}")
        inputs[key.strip()] = value
    return inputs
