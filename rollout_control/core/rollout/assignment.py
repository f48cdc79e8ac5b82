"""Assignment engine.

Maps an identity and feature key to an inclusion decision. The bucket is a
stable hash of ``identity:feature_key`` so that the same identity lands in
uncorrelated buckets across features, and a given identity never flickers
between process restarts.
"""

from __future__ import annotations

import hashlib
from functools import lru_cache
from typing import Optional

from rollout_control.core.rollout.models import FeatureRule, ResolutionReason


@lru_cache(maxsize=65536)
def bucket(identity: str, feature_key: str) -> int:
    """Get bucket (0-99) for percentage rollouts."""
    key = f"{identity}:{feature_key}"
    digest = hashlib.md5(key.encode("utf-8")).hexdigest()  # nosec B324 - stable rollout hashing
    return int(digest[:8], 16) % 100


def resolve(identity: str, feature_key: str, rule: FeatureRule) -> ResolutionReason:
    """Return which rule tier decides for ``identity``.

    Kill switch beats explicit overrides, which beat the percentage.
    """
    if rule.kill_switch:
        return ResolutionReason.KILL_SWITCH
    if identity in rule.overrides:
        return ResolutionReason.OVERRIDE
    return ResolutionReason.ROLLOUT


def decide(identity: str, feature_key: str, rule: FeatureRule, reason: Optional[ResolutionReason] = None) -> bool:
    reason = reason or resolve(identity, feature_key, rule)
    if reason is ResolutionReason.KILL_SWITCH:
        return False
    if reason is ResolutionReason.OVERRIDE:
        return bool(rule.overrides[identity])
    return bucket(identity, feature_key) < rule.rollout_percent


def assign(identity: str, feature_key: str, rule: FeatureRule) -> bool:
    """Decide whether ``identity`` is included in ``feature_key``'s rollout.

    Deterministic and side-effect free; never raises for well-formed rules.
    """
    return decide(identity, feature_key, rule)
