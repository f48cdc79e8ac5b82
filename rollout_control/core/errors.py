"""Error taxonomy for rollout control.

FetchError and StalePolicy are recovered inside the fetcher, store and
controller. PersistenceWarning and DegradedMode are reported, never raised
to evaluation callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    FETCH_TIMEOUT = "FETCH_TIMEOUT"
    FETCH_UNREACHABLE = "FETCH_UNREACHABLE"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    STALE_POLICY = "STALE_POLICY"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    DEGRADED_MODE = "DEGRADED_MODE"
    METRIC_UNAVAILABLE = "METRIC_UNAVAILABLE"
    UNKNOWN_FEATURE = "UNKNOWN_FEATURE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    AUTHORIZATION_FAILED = "AUTHORIZATION_FAILED"


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    MALFORMED_PAYLOAD = "malformed_payload"
    UNREACHABLE = "unreachable"

    @property
    def transient(self) -> bool:
        """Timeouts and unreachable endpoints are worth retrying."""
        return self is not FetchErrorKind.MALFORMED_PAYLOAD


_FETCH_CODES = {
    FetchErrorKind.TIMEOUT: ErrorCode.FETCH_TIMEOUT,
    FetchErrorKind.MALFORMED_PAYLOAD: ErrorCode.MALFORMED_PAYLOAD,
    FetchErrorKind.UNREACHABLE: ErrorCode.FETCH_UNREACHABLE,
}


class RolloutError(Exception):
    """Base class for rollout control errors."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        return f"{self.code.value}: {super().__str__()}"


class FetchError(RolloutError):
    """A policy fetch attempt failed."""

    def __init__(self, kind: FetchErrorKind, message: str) -> None:
        super().__init__(_FETCH_CODES[kind], message)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind.transient


class StalePolicy(RolloutError):
    """A publish was attempted with a version not newer than the current one."""

    def __init__(self, attempted_version: int, current_version: int) -> None:
        super().__init__(
            ErrorCode.STALE_POLICY,
            f"policy version {attempted_version} is not newer than "
            f"current version {current_version}",
        )
        self.attempted_version = attempted_version
        self.current_version = current_version


class MetricUnavailable(RolloutError):
    """The metric feed could not produce a value."""

    def __init__(self, feature_key: str, message: str = "metric unavailable") -> None:
        super().__init__(ErrorCode.METRIC_UNAVAILABLE, f"{feature_key}: {message}")
        self.feature_key = feature_key


class UnknownFeature(RolloutError):
    def __init__(self, feature_key: str) -> None:
        super().__init__(ErrorCode.UNKNOWN_FEATURE, f"unknown feature: {feature_key}")
        self.feature_key = feature_key


class InvalidTransition(RolloutError):
    def __init__(self, feature_key: str, current: str, requested: str) -> None:
        super().__init__(
            ErrorCode.INVALID_TRANSITION,
            f"{feature_key}: cannot move from {current} to {requested}",
        )
        self.feature_key = feature_key
        self.current = current
        self.requested = requested


class PersistenceWarning(UserWarning):
    """Persisting the policy failed; the in-memory policy stays authoritative."""

    code = ErrorCode.PERSISTENCE_FAILED


@dataclass(frozen=True)
class DegradedMode:
    """Signal raised to an operational observer after retries are exhausted."""

    attempts: int
    last_error: Optional[FetchError]
    policy_version: int
    since: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    code = ErrorCode.DEGRADED_MODE

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "attempts": self.attempts,
            "last_error": str(self.last_error) if self.last_error else None,
            "policy_version": self.policy_version,
            "since": self.since.isoformat(),
        }


def build_error(code: ErrorCode, message: str, **context) -> dict:
    """Unified error dict for API responses."""
    error = {"code": code.value, "message": message}
    if context:
        error["context"] = context
    return error


__all__ = [
    "build_error",
    "DegradedMode",
    "ErrorCode",
    "FetchError",
    "FetchErrorKind",
    "InvalidTransition",
    "MetricUnavailable",
    "PersistenceWarning",
    "RolloutError",
    "StalePolicy",
    "UnknownFeature",
]
