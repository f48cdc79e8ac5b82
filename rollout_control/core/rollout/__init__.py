"""Progressive rollout control.

Provides:
- Deterministic percentage assignment with overrides and kill switch
- Versioned, copy-on-publish policy store with best-effort persistence
- Policy fetching with backoff and degraded mode
- Flag evaluation with exposure records
- Rollout control loop with automatic rollback
"""

from rollout_control.core.rollout.assignment import assign, bucket
from rollout_control.core.rollout.controller import (
    FeatureRollout,
    LoggingRolloutObserver,
    RolloutController,
    RolloutObserver,
)
from rollout_control.core.rollout.evaluator import ExposureBuffer, FlagEvaluator
from rollout_control.core.rollout.fetcher import HttpPolicySource, PolicyFetcher
from rollout_control.core.rollout.models import (
    ExposureRecord,
    FeatureRule,
    Policy,
    ResolutionReason,
    RolloutState,
    RolloutTarget,
)
from rollout_control.core.rollout.store import (
    LoggingPolicyListener,
    PolicyListener,
    PolicyStore,
    PublishResult,
)

__all__ = [
    # Assignment
    "assign",
    "bucket",
    # Models
    "ExposureRecord",
    "FeatureRule",
    "Policy",
    "ResolutionReason",
    "RolloutState",
    "RolloutTarget",
    # Store
    "LoggingPolicyListener",
    "PolicyListener",
    "PolicyStore",
    "PublishResult",
    # Fetcher
    "HttpPolicySource",
    "PolicyFetcher",
    # Evaluator
    "ExposureBuffer",
    "FlagEvaluator",
    # Controller
    "FeatureRollout",
    "LoggingRolloutObserver",
    "RolloutController",
    "RolloutObserver",
]
