"""Engine configuration.

All thresholds are read from the environment once at startup and validated
here. A value out of range raises :class:`ConfigurationError`; nothing in the
engine re-validates configuration at runtime.
"""
from __future__ import annotations

import json
import os
from datetime import timedelta
from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from credchain.errors import ConfigurationError
from credchain.models import RejectionReason
from credchain.rejection import DEFAULT_REJECTION_POLICY, RejectionPolicy

ENV_PREFIX = "CREDCHAIN_"


class EngineConfig(BaseModel, frozen=True):
    """Thresholds and policies for one deployment."""

    # Consensus
    quorum_threshold: int = Field(3, description="Minimum number of distinct validators before a decision")
    approval_weight_threshold: float = Field(0.6, description="Weight fraction required to approve or reject")
    flag_weight_threshold: float = Field(0.5, description="Weight fraction of flag votes that forces a flag")
    max_voting_window: timedelta = Field(timedelta(hours=72), description="Voting window before tie-break")

    # Pre-screen gate
    min_confidence: float = Field(0.6, description="Below this the analysis is insufficient")
    min_authenticity: float = Field(0.5, description="Below this the application is auto-flagged")

    # Validator weighting
    weight_policy: Literal["sqrt", "linear"] = "sqrt"

    # Issuance
    max_issuance_attempts: int = 3
    issuance_backoff_seconds: float = 1.0

    # Background sweep of expired voting windows (0 disables)
    sweep_interval_seconds: float = 60.0

    rejection_policy: dict[RejectionReason, RejectionPolicy] = Field(
        default_factory=lambda: dict(DEFAULT_REJECTION_POLICY),
    )

    admin_token: str | None = None

    @field_validator("quorum_threshold")
    @classmethod
    def _quorum_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("quorum_threshold must be at least 1")
        return v

    @field_validator("approval_weight_threshold")
    @classmethod
    def _approval_is_majority(cls, v: float) -> float:
        if not 0.5 < v <= 1.0:
            raise ValueError("approval_weight_threshold must be in (0.5, 1]")
        return v

    @field_validator("flag_weight_threshold")
    @classmethod
    def _flag_fraction(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("flag_weight_threshold must be in (0, 1]")
        return v

    @field_validator("min_confidence", "min_authenticity")
    @classmethod
    def _unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be in [0, 1]")
        return v

    @field_validator("max_voting_window")
    @classmethod
    def _window_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("max_voting_window must be positive")
        return v

    @field_validator("max_issuance_attempts")
    @classmethod
    def _attempts_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_issuance_attempts must be at least 1")
        return v

    @field_validator("issuance_backoff_seconds", "sweep_interval_seconds")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @model_validator(mode="after")
    def _policy_is_complete(self) -> EngineConfig:
        missing = [r.value for r in RejectionReason if r not in self.rejection_policy]
        if missing:
            raise ValueError(f"rejection_policy is missing reasons: {', '.join(missing)}")
        return self


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SCALAR_FIELDS = (
    "quorum_threshold", "approval_weight_threshold", "flag_weight_threshold",
    "min_confidence", "min_authenticity", "weight_policy",
    "max_issuance_attempts", "issuance_backoff_seconds", "sweep_interval_seconds",
    "admin_token",
)


def _parse_policy(raw: str) -> dict[str, Any]:
    """Merge a JSON override onto the default table.

    Format: ``{"missing-information": {"can_resubmit": true, "can_appeal": true}}``
    """
    try:
        override = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}REJECTION_POLICY is not valid JSON: {exc}") from exc
    if not isinstance(override, dict):
        raise ConfigurationError(f"{ENV_PREFIX}REJECTION_POLICY must be a JSON object")
    merged: dict[str, Any] = {r.value: p.model_dump() for r, p in DEFAULT_REJECTION_POLICY.items()}
    merged.update(override)
    return merged


def load_config(env: Mapping[str, str] | None = None, **overrides: Any) -> EngineConfig:
    """Build an :class:`EngineConfig` from environment variables.

    Keyword *overrides* win over the environment (used by tests and scripts).
    """
    env = os.environ if env is None else env
    values: dict[str, Any] = {}
    for name in _SCALAR_FIELDS:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None and raw.strip():
            values[name] = raw.strip()
    hours = env.get(ENV_PREFIX + "MAX_VOTING_WINDOW_HOURS")
    if hours is not None and hours.strip():
        try:
            values["max_voting_window"] = timedelta(hours=float(hours))
        except ValueError as exc:
            raise ConfigurationError(f"{ENV_PREFIX}MAX_VOTING_WINDOW_HOURS must be a number") from exc
    policy = env.get(ENV_PREFIX + "REJECTION_POLICY")
    if policy is not None and policy.strip():
        values["rejection_policy"] = _parse_policy(policy)
    values.update(overrides)
    try:
        return EngineConfig(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid engine configuration: {exc}") from exc


@lru_cache(maxsize=1)
def get_config() -> EngineConfig:
    return load_config()
