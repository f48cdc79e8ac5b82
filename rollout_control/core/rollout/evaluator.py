"""Flag evaluation.

The evaluator is the read path: it takes one snapshot of the current policy
per call, resolves the decision and emits exactly one exposure record. It
never raises and never waits on fetch or network activity.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, Iterator, Optional

from rollout_control.core.metrics import (
    rollout_evaluations_total,
    rollout_exposures_dropped_total,
)
from rollout_control.core.rollout.assignment import decide, resolve
from rollout_control.core.rollout.models import ExposureRecord, ResolutionReason
from rollout_control.core.rollout.store import PolicyStore

logger = logging.getLogger(__name__)


class ExposureBuffer:
    """Bounded, append-only buffer of exposure records.

    When full, the oldest unsent records are dropped; appending never blocks.
    With a ``sink``, a daemon thread hands records to it off the read path, so
    a slow sink only makes the buffer fill up and drop.
    """

    def __init__(
        self,
        capacity: int = 10000,
        sink: Optional[Callable[[ExposureRecord], None]] = None,
    ):
        """Initialize the buffer.

        Args:
            capacity: Maximum number of undelivered records kept.
            sink: Optional callback receiving every record on the delivery
                thread. Records it receives are removed from the buffer.
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.sink = sink
        self._records: Deque[ExposureRecord] = deque()
        self._cond = threading.Condition(threading.Lock())
        self._dropped = 0
        self._emitted = 0
        self._delivered = 0
        self._closed = False
        self._worker: Optional[threading.Thread] = None
        if sink is not None:
            self._worker = threading.Thread(
                target=self._deliver_loop, name="exposure-sink", daemon=True
            )
            self._worker.start()

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def emitted(self) -> int:
        return self._emitted

    @property
    def delivered(self) -> int:
        return self._delivered

    def __len__(self) -> int:
        return len(self._records)

    def emit(self, record: ExposureRecord) -> None:
        with self._cond:
            if len(self._records) >= self.capacity:
                self._records.popleft()
                self._dropped += 1
                rollout_exposures_dropped_total.inc()
            self._records.append(record)
            self._emitted += 1
            self._cond.notify()

    def drain(self, limit: Optional[int] = None) -> Iterator[ExposureRecord]:
        """Lazily yield and remove records, oldest first."""
        taken = 0
        while limit is None or taken < limit:
            with self._cond:
                if not self._records:
                    return
                record = self._records.popleft()
            taken += 1
            yield record

    def close(self, timeout: float = 5.0) -> None:
        """Stop the delivery thread after it has handed over what is buffered.

        Waits at most ``timeout`` seconds; records still buffered afterwards
        stay available to :meth:`drain`.
        """
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        if self._worker is not None:
            self._worker.join(timeout)
            if self._worker.is_alive():
                logger.warning(f"Exposure sink still busy after {timeout}s; detaching")

    def _deliver_loop(self) -> None:
        while True:
            with self._cond:
                while not self._records and not self._closed:
                    self._cond.wait()
                if not self._records:
                    return
                record = self._records.popleft()
            try:
                self.sink(record)
            except Exception as e:
                logger.error(f"Exposure sink error: {e}")
                continue
            with self._cond:
                self._delivered += 1


class FlagEvaluator:
    """Public entry point for feature decisions."""

    def __init__(
        self,
        store: PolicyStore,
        exposures: Optional[ExposureBuffer] = None,
    ):
        self.store = store
        self.exposures = exposures if exposures is not None else ExposureBuffer()

    def is_enabled(
        self,
        identity: str,
        feature_key: str,
        local_default: Optional[bool] = None,
    ) -> bool:
        """Check if ``feature_key`` is enabled for ``identity``.

        Args:
            identity: Stable opaque identifier supplied by the caller.
            feature_key: Feature to evaluate.
            local_default: Value to use if the feature is not in the current
                policy. Falls back to the last known policy default, then
                ``False``.

        Returns:
            The decision; never raises.
        """
        return self.evaluate(identity, feature_key, local_default).decision

    def evaluate(
        self,
        identity: str,
        feature_key: str,
        local_default: Optional[bool] = None,
    ) -> ExposureRecord:
        """Evaluate and return the emitted exposure record."""
        policy_version = 0
        try:
            policy = self.store.current()
            policy_version = policy.version
            rule = policy.get(feature_key)
            if rule is None:
                decision, reason = self._resolve_miss(feature_key, local_default)
            else:
                reason = resolve(identity, feature_key, rule)
                decision = decide(identity, feature_key, rule, reason)
        except Exception:
            logger.exception(
                f"Evaluation of '{feature_key}' failed; serving safe default",
                extra={"feature_key": feature_key},
            )
            decision = bool(local_default) if local_default is not None else False
            reason = ResolutionReason.ERROR

        record = ExposureRecord(
            identity=identity,
            feature_key=feature_key,
            decision=decision,
            policy_version=policy_version,
            reason=reason,
        )
        self._emit(record)
        return record

    def _resolve_miss(
        self, feature_key: str, local_default: Optional[bool]
    ) -> tuple[bool, ResolutionReason]:
        if local_default is not None:
            return bool(local_default), ResolutionReason.CALLER_DEFAULT
        cached = self.store.cached_default(feature_key)
        if cached is not None:
            return cached, ResolutionReason.CACHED_DEFAULT
        return False, ResolutionReason.FALLBACK

    def _emit(self, record: ExposureRecord) -> None:
        try:
            self.exposures.emit(record)
            rollout_evaluations_total.labels(reason=record.reason.value).inc()
        except Exception as e:
            logger.error(f"Failed to record exposure for '{record.feature_key}': {e}")
