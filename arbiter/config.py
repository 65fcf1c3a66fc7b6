"""Global configuration for Arbiter."""

from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from arbiter.phase_gate import PhaseRule
from arbiter.quota import QuotaTier
from arbiter.schemas import Backend, BudgetPolicy, Capability, PhaseId
from arbiter.validation import ValidationError


CONFIG_JSON_ENV = "ARBITER_CONFIG_JSON"
CONFIG_PATH_ENV = "ARBITER_CONFIG_PATH"


class QuotaTierSpec(BaseModel):
    limit: int = Field(..., gt=0)
    window_seconds: float = Field(..., gt=0)


class BackendSpec(BaseModel):
    backend_id: str = Field(..., min_length=1)
    tags: List[Capability] = Field(..., min_length=1)
    quota_tier: str
    units_per_query: int = Field(1, ge=1)
    command: Optional[List[str]] = None


class PhaseSpec(BaseModel):
    permitted: List[Capability]
    token_ceiling: int = Field(..., gt=0)
    allows_write: bool = False


class ArbiterConfig(BaseModel):
    """Everything a session needs, loaded once at session start."""

    tiers: Dict[str, QuotaTierSpec]
    backends: List[BackendSpec]
    phases: Dict[PhaseId, PhaseSpec]
    budget_policy: BudgetPolicy = BudgetPolicy.SOFT_WARN
    budget_warn_ratio: float = Field(0.8, gt=0, le=1)
    max_attempts: Optional[int] = Field(None, ge=1)
    attempt_timeout_seconds: float = Field(10.0, gt=0, le=600)
    health_failure_threshold: int = Field(3, ge=1)
    health_recovery_seconds: float = Field(60.0, gt=0)

    @model_validator(mode="after")
    def _check_references(self) -> "ArbiterConfig":
        seen = set()
        for backend in self.backends:
            if backend.backend_id in seen:
                raise ValueError(f"duplicate backend id '{backend.backend_id}'")
            seen.add(backend.backend_id)
            if backend.quota_tier not in self.tiers:
                raise ValueError(
                    f"backend '{backend.backend_id}' uses unknown tier '{backend.quota_tier}'"
                )
        missing = set(PhaseId) - set(self.phases)
        if missing:
            names = ", ".join(sorted(p.value for p in missing))
            raise ValueError(f"missing phase definition(s): {names}")
        return self

    def quota_tiers(self) -> Dict[str, QuotaTier]:
        return {
            name: QuotaTier(name=name, limit=spec.limit, window_seconds=spec.window_seconds)
            for name, spec in self.tiers.items()
        }

    def build_backends(self) -> List[Backend]:
        return [
            Backend(
                backend_id=spec.backend_id,
                tags=frozenset(spec.tags),
                quota_tier=spec.quota_tier,
                units_per_query=spec.units_per_query,
            )
            for spec in self.backends
        ]

    def phase_rules(self) -> List[PhaseRule]:
        return [
            PhaseRule(
                phase_id=phase_id,
                permitted=frozenset(spec.permitted),
                allows_write=spec.allows_write,
            )
            for phase_id, spec in self.phases.items()
        ]

    def ceilings(self) -> Dict[PhaseId, int]:
        return {phase_id: spec.token_ceiling for phase_id, spec in self.phases.items()}

    def commands(self) -> Dict[str, List[str]]:
        return {b.backend_id: list(b.command) for b in self.backends if b.command}


DEFAULT_CONFIG: Dict[str, Any] = {
    "tiers": {
        # Local tools have no real allocation; keep a ceiling anyway
        "local": {"limit": 1_000_000, "window_seconds": 86_400},
        "free": {"limit": 100, "window_seconds": 30 * 86_400},
        "paid": {"limit": 10_000, "window_seconds": 30 * 86_400},
    },
    "backends": [
        {
            "backend_id": "ripgrep",
            "tags": ["exact"],
            "quota_tier": "local",
            "command": ["rg", "--line-number", "--max-count", "50", "--", "{query}"],
        },
        {
            "backend_id": "mgrep",
            "tags": ["semantic"],
            "quota_tier": "free",
            "command": ["mgrep", "{query}"],
        },
    ],
    "phases": {
        "plan": {"permitted": ["exact", "semantic"], "token_ceiling": 50_000},
        "build": {
            "permitted": ["exact", "semantic", "cross_reference", "write"],
            "token_ceiling": 200_000,
            "allows_write": True,
        },
        "review": {
            "permitted": ["exact", "semantic", "cross_reference"],
            "token_ceiling": 100_000,
        },
    },
    "budget_policy": "soft_warn",
    "attempt_timeout_seconds": 10.0,
}

_config: ArbiterConfig = ArbiterConfig.model_validate(copy.deepcopy(DEFAULT_CONFIG))


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def parse_config(data: Dict[str, Any]) -> ArbiterConfig:
    """Validate a raw mapping into an ArbiterConfig."""
    if not isinstance(data, dict):
        raise ValidationError(f"config must be a JSON object, got {type(data).__name__}")
    try:
        return ArbiterConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid configuration: {e}") from e


def load_config(path: str | Path | None = None) -> ArbiterConfig:
    """
    Load configuration.

    Priority: explicit path, ARBITER_CONFIG_JSON, ARBITER_CONFIG_PATH,
    then the runtime default (see set_config).
    """
    if path is not None:
        return _load_file(Path(path))

    parsed = _parse_json_env(CONFIG_JSON_ENV)
    if parsed:
        return parse_config(parsed)

    env_path = os.getenv(CONFIG_PATH_ENV)
    if env_path:
        return _load_file(Path(env_path))

    return get_config()


def _load_file(path: Path) -> ArbiterConfig:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"config file {path} is not valid JSON: {e}") from e
    return parse_config(data)


def get_config() -> ArbiterConfig:
    """Return a copy of the runtime default configuration."""
    return _config.model_copy(deep=True)


def set_config(config: ArbiterConfig | Dict[str, Any]) -> None:
    """Replace the runtime default. Sessions already created keep theirs."""
    global _config
    if isinstance(config, ArbiterConfig):
        _config = config.model_copy(deep=True)
    else:
        _config = parse_config(copy.deepcopy(config))


def reset_config() -> None:
    """Restore the built-in default."""
    global _config
    _config = ArbiterConfig.model_validate(copy.deepcopy(DEFAULT_CONFIG))
