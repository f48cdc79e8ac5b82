"""Component wiring.

Builds one explicitly owned PolicyStore and hands it to every component that
needs it; nothing here is a process-wide singleton.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from rollout_control.core.config import Settings
from rollout_control.core.errors import DegradedMode
from rollout_control.core.resilience.retry import BackoffConfig
from rollout_control.core.rollout import (
    ExposureBuffer,
    FlagEvaluator,
    HttpPolicySource,
    LoggingPolicyListener,
    PolicyFetcher,
    PolicyStore,
    RolloutController,
)
from rollout_control.core.rollout.controller import MetricFeed
from rollout_control.core.rollout.fetcher import PolicySource

logger = logging.getLogger(__name__)


@dataclass
class RolloutRuntime:
    """The set of components serving one process."""

    settings: Settings
    store: PolicyStore
    exposures: ExposureBuffer
    evaluator: FlagEvaluator
    fetcher: PolicyFetcher
    controller: RolloutController
    degraded_events: List[DegradedMode] = field(default_factory=list)

    async def start(self) -> None:
        """Restore the persisted policy, then start polling and the control loop."""
        self.store.load_from_disk()
        await self.fetcher.refresh()
        self.fetcher.start_polling(self.settings.POLL_INTERVAL_SECONDS)
        self.controller.start(self.settings.CONTROLLER_INTERVAL_SECONDS)

    async def stop(self) -> None:
        timeout = self.settings.STOP_TIMEOUT_SECONDS
        await self.controller.stop(timeout)
        await self.fetcher.stop_polling(timeout)
        await asyncio.to_thread(self.exposures.close, timeout)


def build_runtime(
    settings: Settings,
    source: Optional[PolicySource] = None,
    metric_feed: Optional[MetricFeed] = None,
    exposure_sink: Optional[Callable] = None,
) -> RolloutRuntime:
    """Create the components described by ``settings``.

    Args:
        settings: Runtime settings.
        source: Policy source; defaults to HTTP GET on ``POLICY_URL``.
        metric_feed: Health metric feed for the controller.
        exposure_sink: Callback receiving every exposure record.
    """
    store = PolicyStore(path=settings.POLICY_PATH or None)
    store.add_listener(LoggingPolicyListener())

    exposures = ExposureBuffer(capacity=settings.EXPOSURE_BUFFER_SIZE, sink=exposure_sink)
    evaluator = FlagEvaluator(store, exposures)

    degraded_events: List[DegradedMode] = []

    def _on_degraded(signal: DegradedMode) -> None:
        degraded_events.append(signal)
        del degraded_events[:-20]

    fetcher = PolicyFetcher(
        store,
        source or HttpPolicySource(settings.POLICY_URL, timeout=settings.FETCH_TIMEOUT_SECONDS),
        backoff=BackoffConfig(
            max_attempts=settings.FETCH_MAX_ATTEMPTS,
            base=settings.FETCH_BACKOFF_BASE_SECONDS,
            max_wait=settings.FETCH_BACKOFF_MAX_SECONDS,
            jitter=settings.FETCH_BACKOFF_JITTER_SECONDS,
        ),
        on_degraded=_on_degraded,
    )
    controller = RolloutController(
        store,
        metric_feed=metric_feed,
        metric_window_seconds=settings.METRIC_WINDOW_SECONDS,
    )
    return RolloutRuntime(
        settings=settings,
        store=store,
        exposures=exposures,
        evaluator=evaluator,
        fetcher=fetcher,
        controller=controller,
        degraded_events=degraded_events,
    )
