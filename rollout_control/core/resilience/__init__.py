"""Resilience helpers shared by the rollout components."""

from rollout_control.core.resilience.retry import BackoffConfig, backoff_retrying

__all__ = ["BackoffConfig", "backoff_retrying"]
