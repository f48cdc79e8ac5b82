"""Rollout controller.

Progressively moves each feature's rollout percent toward its target,
publishing a new policy version per step, and rolls the feature back with the
kill switch when its health metric breaches the configured threshold.

State machine per feature::

    paused -> ramping -> complete
              ramping -> rolled_back -> paused   (re-arm is an operator action)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from rollout_control.core.errors import (
    InvalidTransition,
    MetricUnavailable,
    StalePolicy,
    UnknownFeature,
)
from rollout_control.core.metrics import rollout_transitions_total
from rollout_control.core.rollout.models import (
    FeatureRule,
    Policy,
    RolloutState,
    RolloutTarget,
)
from rollout_control.core.rollout.store import PolicyStore

logger = logging.getLogger(__name__)

MetricFeed = Callable[[str, float], Awaitable[Optional[float]]]

# Fresh re-reads attempted when a rollback publish races another writer
_ROLLBACK_PUBLISH_ATTEMPTS = 3


class RolloutObserver(ABC):
    """Observer for rollout state transitions."""

    @abstractmethod
    def on_transition(
        self,
        feature_key: str,
        old_state: Optional[RolloutState],
        new_state: RolloutState,
        reason: str,
    ) -> None:
        """Called after a feature changes state."""
        pass


class LoggingRolloutObserver(RolloutObserver):
    """Observer that logs transitions; rollbacks are logged as warnings."""

    def on_transition(
        self,
        feature_key: str,
        old_state: Optional[RolloutState],
        new_state: RolloutState,
        reason: str,
    ) -> None:
        level = logging.WARNING if new_state is RolloutState.ROLLED_BACK else logging.INFO
        logger.log(
            level,
            f"Rollout '{feature_key}': "
            f"{old_state.value if old_state else 'None'} -> {new_state.value} ({reason})",
            extra={
                "feature_key": feature_key,
                "state": new_state.value,
                "from_state": old_state.value if old_state else None,
                "reason": reason,
            },
        )


@dataclass
class FeatureRollout:
    """Controller-side state of one feature's rollout."""

    target: RolloutTarget
    state: RolloutState = RolloutState.PAUSED
    last_metric: Optional[float] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def feature_key(self) -> str:
        return self.target.feature_key

    def add_event(self, event_type: str, message: str, **kwargs) -> None:
        """Add an event to the rollout history (last 50 kept)."""
        self.events.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "message": message,
            **kwargs,
        })
        self.events = self.events[-50:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.to_dict(),
            "state": self.state.value,
            "last_metric": self.last_metric,
            "updated_at": self.updated_at.isoformat(),
            "events": self.events[-20:],
        }


class RolloutController:
    """Control loop advancing and retracting rollout percentages.

    Features:
    - Step-wise ramp toward a desired percent, one policy version per step
    - Fail-open metric checks: an unavailable metric never blocks the ramp
    - Kill-switch rollback on threshold breach
    - Operator actions sharing the store's publish discipline
    """

    def __init__(
        self,
        store: PolicyStore,
        metric_feed: Optional[MetricFeed] = None,
        metric_window_seconds: float = 300.0,
        observers: Optional[List[RolloutObserver]] = None,
    ):
        """Initialize the controller.

        Args:
            store: Store holding the policy being ramped.
            metric_feed: Async ``(feature_key, window_seconds) -> value | None``.
                ``None`` or ``MetricUnavailable`` means no breach detected.
            metric_window_seconds: Window passed to the metric feed.
            observers: Transition observers; defaults to logging only.
        """
        self.store = store
        self.metric_window_seconds = metric_window_seconds
        self._metric_feed = metric_feed or self._default_query_metric
        self._observers: List[RolloutObserver] = (
            observers if observers is not None else [LoggingRolloutObserver()]
        )
        self._rollouts: Dict[str, FeatureRollout] = {}
        self._loop_task: Optional[asyncio.Task] = None

    async def _default_query_metric(self, feature_key: str, window_seconds: float) -> Optional[float]:
        """Default metric feed (no data, so never a breach)."""
        return None

    def add_observer(self, observer: RolloutObserver) -> None:
        self._observers.append(observer)

    # Registry

    def add_target(self, target: RolloutTarget, start: bool = True) -> FeatureRollout:
        """Register a rollout target for a feature in the current policy.

        Args:
            target: Desired percent, step size and metric threshold.
            start: Begin ramping immediately instead of starting paused. For
                an already registered feature the target is replaced and a
                paused rollout resumes; a complete one ramps again if its
                percent no longer matches.

        Raises:
            UnknownFeature: if the feature is not in the current policy.
        """
        key = target.feature_key
        if key not in self.store.current():
            raise UnknownFeature(key)

        existing = self._rollouts.get(key)
        if existing is not None:
            existing.target = target
            existing.add_event("retargeted", f"Target set to {target.desired_percent}%")
            self._apply_retarget(existing, start)
            return existing

        rollout = FeatureRollout(target=target)
        self._rollouts[key] = rollout
        rollout.add_event("created", f"Rollout target {target.desired_percent}%")
        self._notify(key, None, RolloutState.PAUSED, "target added")
        if start:
            self.resume(key)
        return rollout

    def get(self, feature_key: str) -> FeatureRollout:
        rollout = self._rollouts.get(feature_key)
        if rollout is None:
            raise UnknownFeature(feature_key)
        return rollout

    def state(self, feature_key: str) -> RolloutState:
        return self.get(feature_key).state

    def status(self) -> Dict[str, Any]:
        return {
            "policy_version": self.store.current().version,
            "running": self.running,
            "rollouts": {key: r.to_dict() for key, r in self._rollouts.items()},
        }

    # Control loop

    async def tick(self) -> Dict[str, RolloutState]:
        """Run one control-loop pass over every registered feature."""
        for rollout in list(self._rollouts.values()):
            if rollout.state is RolloutState.RAMPING:
                await self._step(rollout)
            elif rollout.state is RolloutState.ROLLED_BACK:
                await self._enforce_kill_switch(rollout)
        return {key: r.state for key, r in self._rollouts.items()}

    async def _step(self, rollout: FeatureRollout) -> None:
        key = rollout.feature_key
        metric = await self._query_metric(key)
        rollout.last_metric = metric

        # An operator may have acted while the metric query was pending
        if rollout.state is not RolloutState.RAMPING:
            return

        threshold = rollout.target.metric_threshold
        if metric is not None and metric > threshold:
            await asyncio.to_thread(self._set_kill_switch, key, True)
            self._transition(
                rollout, RolloutState.ROLLED_BACK, f"metric {metric} breached threshold {threshold}"
            )
            return

        policy = self.store.current()
        rule = policy.get(key)
        if rule is None:
            logger.warning(
                f"Feature '{key}' missing from policy v{policy.version}; ramp skipped",
                extra={"feature_key": key, "policy_version": policy.version},
            )
            return

        new_percent = rollout.target.next_percent(rule.rollout_percent)
        if new_percent != rule.rollout_percent:
            published = await asyncio.to_thread(
                self._publish_rule, policy, key, rule.with_percent(new_percent)
            )
            if not published:
                return
            rollout.add_event(
                "stepped",
                f"{rule.rollout_percent}% -> {new_percent}%",
                policy_version=policy.version + 1,
            )
            rollout.updated_at = datetime.now(timezone.utc)

        if rollout.state is RolloutState.RAMPING and new_percent == rollout.target.desired_percent:
            self._transition(rollout, RolloutState.COMPLETE, f"reached {new_percent}%")

    async def _query_metric(self, feature_key: str) -> Optional[float]:
        try:
            value = await self._metric_feed(feature_key, self.metric_window_seconds)
        except MetricUnavailable as e:
            logger.info(f"{e}; continuing ramp", extra={"feature_key": feature_key})
            return None
        except Exception as e:
            logger.warning(
                f"Metric feed error for '{feature_key}': {e}; treating as unavailable",
                extra={"feature_key": feature_key},
            )
            return None
        return None if value is None else float(value)

    def _publish_rule(self, policy: Policy, feature_key: str, rule: FeatureRule) -> bool:
        """Publish ``policy`` with ``rule`` at the next version.

        A concurrent writer makes this stale; the caller retries from a fresh
        read on the next tick.
        """
        try:
            result = self.store.publish(policy.with_rule(feature_key, rule))
        except StalePolicy as e:
            logger.warning(
                f"Publish for '{feature_key}' lost a race ({e}); retrying next tick",
                extra={"feature_key": feature_key, "policy_version": e.current_version},
            )
            return False
        logger.info(
            f"Published '{feature_key}' at {rule.rollout_percent}% "
            f"(kill_switch={rule.kill_switch})",
            extra={
                "feature_key": feature_key,
                "policy_version": result.policy.version,
                "rollout_percent": rule.rollout_percent,
            },
        )
        return True

    def _set_kill_switch(self, feature_key: str, kill_switch: bool) -> bool:
        for _ in range(_ROLLBACK_PUBLISH_ATTEMPTS):
            policy = self.store.current()
            rule = policy.get(feature_key)
            if rule is None:
                logger.warning(
                    f"Feature '{feature_key}' missing from policy v{policy.version}",
                    extra={"feature_key": feature_key},
                )
                return False
            if rule.kill_switch == kill_switch:
                return True
            if self._publish_rule(policy, feature_key, rule.with_kill_switch(kill_switch)):
                return True
        logger.error(
            f"Could not publish kill_switch={kill_switch} for '{feature_key}'",
            extra={"feature_key": feature_key},
        )
        return False

    def _roll_back(self, rollout: FeatureRollout, reason: str) -> None:
        self._set_kill_switch(rollout.feature_key, True)
        self._transition(rollout, RolloutState.ROLLED_BACK, reason)

    async def _enforce_kill_switch(self, rollout: FeatureRollout) -> None:
        rule = self.store.current().get(rollout.feature_key)
        if rule is not None and not rule.kill_switch:
            logger.warning(
                f"Kill switch for rolled back '{rollout.feature_key}' was cleared; re-applying",
                extra={"feature_key": rollout.feature_key},
            )
            await asyncio.to_thread(self._set_kill_switch, rollout.feature_key, True)

    def _transition(self, rollout: FeatureRollout, new_state: RolloutState, reason: str) -> None:
        old_state = rollout.state
        if old_state is new_state:
            return
        rollout.state = new_state
        rollout.updated_at = datetime.now(timezone.utc)
        rollout.add_event(new_state.value, reason)
        rollout_transitions_total.labels(state=new_state.value).inc()
        self._notify(rollout.feature_key, old_state, new_state, reason)

    def _notify(
        self,
        feature_key: str,
        old_state: Optional[RolloutState],
        new_state: RolloutState,
        reason: str,
    ) -> None:
        for observer in self._observers:
            try:
                observer.on_transition(feature_key, old_state, new_state, reason)
            except Exception as e:
                logger.error(f"Rollout observer error: {e}")

    # Operator interface

    def force_rollback(self, feature_key: str, reason: str = "operator rollback") -> FeatureRollout:
        """Kill the feature now, whatever its state.

        Features without a registered target are registered on the spot,
        targeting their current percent.

        Raises:
            UnknownFeature: if the feature is neither registered nor in the
                current policy.
        """
        rollout = self._rollouts.get(feature_key)
        if rollout is None:
            rule = self.store.current().get(feature_key)
            if rule is None:
                raise UnknownFeature(feature_key)
            rollout = FeatureRollout(
                target=RolloutTarget(feature_key=feature_key, desired_percent=rule.rollout_percent)
            )
            self._rollouts[feature_key] = rollout

        self._roll_back(rollout, reason)
        return rollout

    def re_arm(self, feature_key: str) -> FeatureRollout:
        """Move a rolled back feature to paused. The kill switch stays on."""
        rollout = self.get(feature_key)
        if rollout.state is not RolloutState.ROLLED_BACK:
            raise InvalidTransition(feature_key, rollout.state.value, RolloutState.PAUSED.value)
        self._transition(rollout, RolloutState.PAUSED, "operator re-armed")
        return rollout

    def resume(self, feature_key: str) -> FeatureRollout:
        """Start ramping a paused feature, clearing its kill switch."""
        rollout = self.get(feature_key)
        if rollout.state is not RolloutState.PAUSED:
            raise InvalidTransition(feature_key, rollout.state.value, RolloutState.RAMPING.value)
        if feature_key not in self.store.current():
            raise UnknownFeature(feature_key)
        if self._set_kill_switch(feature_key, False):
            self._transition(rollout, RolloutState.RAMPING, "ramp started")
        return rollout

    def pause(self, feature_key: str) -> FeatureRollout:
        """Stop ramping; the current percent is kept."""
        rollout = self.get(feature_key)
        if rollout.state is not RolloutState.RAMPING:
            raise InvalidTransition(feature_key, rollout.state.value, RolloutState.PAUSED.value)
        self._transition(rollout, RolloutState.PAUSED, "operator paused")
        return rollout

    def set_desired_percent(self, feature_key: str, percent: int) -> FeatureRollout:
        """Retarget a rollout.

        A complete rollout whose percent no longer matches resumes ramping
        (up or down) on the next tick.
        """
        if not 0 <= percent <= 100:
            raise ValueError("percent must be between 0 and 100")
        rollout = self.get(feature_key)
        rollout.target.desired_percent = percent
        rollout.add_event("retargeted", f"Desired percent set to {percent}%")
        self._apply_retarget(rollout)
        return rollout

    def _apply_retarget(self, rollout: FeatureRollout, start: bool = False) -> None:
        percent = rollout.target.desired_percent
        if rollout.state is RolloutState.COMPLETE:
            rule = self.store.current().get(rollout.feature_key)
            if rule is not None and rule.rollout_percent != percent:
                self._transition(rollout, RolloutState.RAMPING, f"retargeted to {percent}%")
        elif rollout.state is RolloutState.PAUSED and start:
            self.resume(rollout.feature_key)

    # Background loop

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self, interval: float) -> asyncio.Task:
        """Start the background control loop (idempotent)."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        if self.running:
            return self._loop_task
        self._loop_task = asyncio.create_task(self._control_loop(interval))
        logger.info(f"Started rollout control loop every {interval}s")
        return self._loop_task

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop the control loop, waiting at most ``timeout`` seconds."""
        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
            await asyncio.wait_for(task, timeout)

    async def _control_loop(self, interval: float) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in rollout control loop: {e}")
            await asyncio.sleep(interval)
