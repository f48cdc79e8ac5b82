"""Prometheus metrics for rollout control.

All metric objects are defined at import time and shared by every component
instance in the process.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

rollout_policy_version = Gauge(
    "rollout_policy_version",
    "Version of the current rollout policy",
)
rollout_publish_total = Counter(
    "rollout_publish_total",
    "Policy publish attempts",
    ["result"],  # published|stale|persist_failed
)
rollout_fetch_total = Counter(
    "rollout_fetch_total",
    "Policy fetch attempts",
    ["result"],  # ok|unchanged|timeout|unreachable|malformed_payload
)
rollout_degraded = Gauge(
    "rollout_degraded",
    "1 while serving a frozen policy after exhausted fetch retries",
)
rollout_evaluations_total = Counter(
    "rollout_evaluations_total",
    "Flag evaluations by resolution reason",
    ["reason"],
)
rollout_exposures_dropped_total = Counter(
    "rollout_exposures_dropped_total",
    "Exposure records dropped because the buffer was full",
)
rollout_transitions_total = Counter(
    "rollout_transitions_total",
    "Rollout state machine transitions",
    ["state"],
)
