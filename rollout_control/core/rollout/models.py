"""Rollout data model.

Policies and rules are immutable: a change produces a new object which the
PolicyStore swaps in as a whole, so readers never see a half-updated policy.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RolloutState(str, Enum):
    """Per-feature rollout state machine."""

    PAUSED = "paused"
    RAMPING = "ramping"
    COMPLETE = "complete"
    ROLLED_BACK = "rolled_back"


class ResolutionReason(str, Enum):
    """Which resolution tier produced an evaluation decision."""

    KILL_SWITCH = "kill_switch"
    OVERRIDE = "override"
    ROLLOUT = "rollout"
    CALLER_DEFAULT = "caller_default"  # feature missing, caller default used
    CACHED_DEFAULT = "cached_default"  # feature missing, last known default used
    FALLBACK = "fallback"  # feature missing, hardcoded False
    ERROR = "error"

    @property
    def policy_miss(self) -> bool:
        return self in _POLICY_MISS_REASONS


_POLICY_MISS_REASONS = frozenset(
    {
        ResolutionReason.CALLER_DEFAULT,
        ResolutionReason.CACHED_DEFAULT,
        ResolutionReason.FALLBACK,
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FeatureRule:
    """Rollout rule for a single feature."""

    default_value: bool = False
    rollout_percent: int = 0
    overrides: Mapping[str, bool] = field(default_factory=dict)
    kill_switch: bool = False

    def __post_init__(self):
        if isinstance(self.rollout_percent, bool) or not isinstance(self.rollout_percent, int):
            raise TypeError("rollout_percent must be an integer")
        if not 0 <= self.rollout_percent <= 100:
            raise ValueError("rollout_percent must be between 0 and 100")
        object.__setattr__(self, "overrides", MappingProxyType(dict(self.overrides)))

    def with_percent(self, percent: int) -> "FeatureRule":
        return dataclasses.replace(self, rollout_percent=percent)

    def with_kill_switch(self, kill_switch: bool) -> "FeatureRule":
        return dataclasses.replace(self, kill_switch=kill_switch)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire representation (without the key)."""
        return {
            "defaultValue": self.default_value,
            "rolloutPercent": self.rollout_percent,
            "overrides": dict(self.overrides),
            "killSwitch": self.kill_switch,
        }


@dataclass(frozen=True)
class Policy:
    """Versioned snapshot of all feature rules."""

    version: int = 0
    features: Mapping[str, FeatureRule] = field(default_factory=dict)

    def __post_init__(self):
        if self.version < 0:
            raise ValueError("policy version must be non-negative")
        object.__setattr__(self, "features", MappingProxyType(dict(self.features)))

    def __contains__(self, feature_key: object) -> bool:
        return feature_key in self.features

    def __iter__(self) -> Iterator[str]:
        return iter(self.features)

    def get(self, feature_key: str) -> Optional[FeatureRule]:
        return self.features.get(feature_key)

    def with_rule(
        self,
        feature_key: str,
        rule: FeatureRule,
        version: Optional[int] = None,
    ) -> "Policy":
        """Return a new policy with ``feature_key`` set to ``rule``.

        The version defaults to one above this policy's version.
        """
        features = dict(self.features)
        features[feature_key] = rule
        return Policy(
            version=self.version + 1 if version is None else version,
            features=features,
        )

    def with_version(self, version: int) -> "Policy":
        return Policy(version=version, features=self.features)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the same shape the policy authority serves."""
        return {
            "version": self.version,
            "features": [
                {"key": key, **rule.to_dict()} for key, rule in self.features.items()
            ],
        }

    @classmethod
    def from_payload(cls, data: Any) -> "Policy":
        """Validate a raw payload and build a policy from it.

        Raises:
            pydantic.ValidationError: if the payload has the wrong shape,
                out-of-range percentages or duplicate feature keys.
        """
        return PolicyPayload.model_validate(data).to_policy()


@dataclass(frozen=True)
class ExposureRecord:
    """Audit event for a single evaluation decision."""

    identity: str
    feature_key: str
    decision: bool
    policy_version: int
    reason: ResolutionReason
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def policy_miss(self) -> bool:
        return self.reason.policy_miss

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "feature_key": self.feature_key,
            "decision": self.decision,
            "policy_version": self.policy_version,
            "reason": self.reason.value,
            "policy_miss": self.policy_miss,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RolloutTarget:
    """Where the controller is taking a feature, and how fast."""

    feature_key: str
    desired_percent: int = 100
    step_size: int = 10
    metric_threshold: float = 0.05

    def __post_init__(self):
        if not 0 <= self.desired_percent <= 100:
            raise ValueError("desired_percent must be between 0 and 100")
        if self.step_size < 1:
            raise ValueError("step_size must be at least 1")

    def next_percent(self, current: int) -> int:
        """One step from ``current`` toward the desired percent, never past it."""
        if current < self.desired_percent:
            return min(current + self.step_size, self.desired_percent)
        if current > self.desired_percent:
            return max(current - self.step_size, self.desired_percent)
        return current

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_key": self.feature_key,
            "desired_percent": self.desired_percent,
            "step_size": self.step_size,
            "metric_threshold": self.metric_threshold,
        }


# Wire schema for fetched policies


class FeaturePayload(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True, populate_by_name=True)

    key: str = Field(min_length=1)
    default_value: bool = Field(default=False, alias="defaultValue")
    rollout_percent: int = Field(ge=0, le=100, alias="rolloutPercent")
    overrides: Dict[str, bool] = Field(default_factory=dict)
    kill_switch: bool = Field(default=False, alias="killSwitch")

    def to_rule(self) -> FeatureRule:
        return FeatureRule(
            default_value=self.default_value,
            rollout_percent=self.rollout_percent,
            overrides=self.overrides,
            kill_switch=self.kill_switch,
        )


class PolicyPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    version: int = Field(ge=0)
    features: List[FeaturePayload] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_keys(self) -> "PolicyPayload":
        seen = set()
        for feature in self.features:
            if feature.key in seen:
                raise ValueError(f"duplicate feature key: {feature.key}")
            seen.add(feature.key)
        return self

    def to_policy(self) -> Policy:
        return Policy(
            version=self.version,
            features={f.key: f.to_rule() for f in self.features},
        )
