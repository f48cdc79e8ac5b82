"""Policy fetcher.

Pulls the latest policy from the policy authority, validates it and publishes
it to the store. Transient failures are retried with exponential backoff;
once a cycle's attempts are exhausted the fetcher enters degraded mode and the
last good policy keeps serving.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from rollout_control.core.errors import (
    DegradedMode,
    FetchError,
    FetchErrorKind,
    StalePolicy,
)
from rollout_control.core.metrics import rollout_degraded, rollout_fetch_total
from rollout_control.core.resilience.retry import BackoffConfig, backoff_retrying
from rollout_control.core.rollout.models import Policy
from rollout_control.core.rollout.store import PolicyStore

logger = logging.getLogger(__name__)

PolicySource = Callable[[], Awaitable[Any]]


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and exc.transient


class HttpPolicySource:
    """Fetch the raw policy payload over HTTP."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the source.

        Args:
            url: Endpoint serving the policy document.
            timeout: Request timeout in seconds.
            headers: Extra request headers (auth, tenant, ...).
            client: Shared client; one is created per request when omitted.
        """
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self._client = client

    async def __call__(self) -> Any:
        try:
            if self._client is not None:
                response = await self._client.get(
                    self.url, headers=self.headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url, headers=self.headers)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise FetchError(FetchErrorKind.TIMEOUT, f"GET {self.url} timed out") from e
        except httpx.HTTPStatusError as e:
            raise FetchError(
                FetchErrorKind.UNREACHABLE,
                f"GET {self.url} returned HTTP {e.response.status_code}",
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(FetchErrorKind.UNREACHABLE, f"GET {self.url} failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise FetchError(
                FetchErrorKind.MALFORMED_PAYLOAD, f"GET {self.url} returned invalid JSON"
            ) from e


class PolicyFetcher:
    """Keeps the policy store in sync with the policy authority."""

    def __init__(
        self,
        store: PolicyStore,
        source: PolicySource,
        backoff: Optional[BackoffConfig] = None,
        on_degraded: Optional[Callable[[DegradedMode], None]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """Initialize the fetcher.

        Args:
            store: Store receiving validated policies.
            source: Async callable returning the raw policy payload. It should
                raise ``FetchError``; timeouts and OS-level connection errors
                are mapped for it.
            backoff: Retry shape for one polling cycle.
            on_degraded: Observer notified when a cycle exhausts its retries.
            sleep: Awaitable sleep used between retries, replaceable in tests.
        """
        self.store = store
        self.source = source
        self.backoff = backoff or BackoffConfig()
        self.on_degraded = on_degraded
        self._sleep = sleep

        self._in_flight = False
        self._degraded: Optional[DegradedMode] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None

    @property
    def degraded(self) -> bool:
        return self._degraded is not None

    @property
    def degraded_signal(self) -> Optional[DegradedMode]:
        return self._degraded

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def fetch_once(self) -> Policy:
        """Run a single fetch attempt and publish the result.

        Returns:
            The policy that is current afterwards. A payload that is not newer
            than the current policy leaves the store untouched.

        Raises:
            FetchError: on timeout, unreachable authority or malformed payload.
        """
        try:
            raw = await self.source()
        except FetchError as e:
            rollout_fetch_total.labels(result=e.kind.value).inc()
            raise
        except (TimeoutError, asyncio.TimeoutError) as e:
            rollout_fetch_total.labels(result=FetchErrorKind.TIMEOUT.value).inc()
            raise FetchError(FetchErrorKind.TIMEOUT, "policy fetch timed out") from e
        except OSError as e:
            rollout_fetch_total.labels(result=FetchErrorKind.UNREACHABLE.value).inc()
            raise FetchError(FetchErrorKind.UNREACHABLE, f"policy fetch failed: {e}") from e

        policy = self._validate(raw)

        try:
            result = await asyncio.to_thread(self.store.publish, policy)
        except StalePolicy as e:
            rollout_fetch_total.labels(result="unchanged").inc()
            logger.debug(f"Fetched policy not applied: {e}")
            return self.store.current()

        rollout_fetch_total.labels(result="ok").inc()
        logger.info(
            f"Applied fetched policy v{policy.version}",
            extra={"policy_version": policy.version, "previous_version": result.previous_version},
        )
        return result.policy

    def _validate(self, raw: Any) -> Policy:
        try:
            return Policy.from_payload(raw)
        except (ValueError, TypeError) as e:
            rollout_fetch_total.labels(result=FetchErrorKind.MALFORMED_PAYLOAD.value).inc()
            logger.warning(
                f"Rejected malformed policy payload: {e}",
                extra={"error_code": "MALFORMED_PAYLOAD"},
            )
            raise FetchError(FetchErrorKind.MALFORMED_PAYLOAD, str(e)) from e

    async def refresh(self) -> Optional[Policy]:
        """Run one polling cycle with retries.

        Never raises ``FetchError``. Returns ``None`` when the cycle was
        skipped because another fetch is in flight, or when it failed.
        """
        if self._in_flight:
            logger.debug("Policy fetch already in flight; skipping")
            return None

        self._in_flight = True
        try:
            return await self._run_cycle()
        finally:
            self._in_flight = False

    async def _run_cycle(self) -> Optional[Policy]:
        attempts = 0
        policy: Optional[Policy] = None
        try:
            async for attempt in backoff_retrying(
                self.backoff, retry_on=_is_transient, sleep=self._sleep
            ):
                with attempt:
                    attempts += 1
                    policy = await self.fetch_once()
        except FetchError as e:
            if e.transient:
                self._enter_degraded(attempts, e)
            return None

        self._leave_degraded()
        return policy

    def _enter_degraded(self, attempts: int, error: FetchError) -> None:
        kept = {"since": self._degraded.since} if self._degraded else {}
        signal = DegradedMode(
            attempts=attempts,
            last_error=error,
            policy_version=self.store.current().version,
            **kept,
        )
        self._degraded = signal
        rollout_degraded.set(1)
        logger.warning(
            f"Policy fetch failed after {attempts} attempts; serving frozen "
            f"policy v{signal.policy_version}",
            extra={
                "attempt": attempts,
                "policy_version": signal.policy_version,
                "error_code": error.code.value,
            },
        )

        if self.on_degraded is not None:
            try:
                self.on_degraded(signal)
            except Exception as e:
                logger.error(f"Degraded-mode observer error: {e}")

    def _leave_degraded(self) -> None:
        if self._degraded is None:
            return
        self._degraded = None
        rollout_degraded.set(0)
        logger.info("Policy fetch recovered; leaving degraded mode")

    # Polling

    def start_polling(self, interval: float) -> asyncio.Task:
        """Start the background polling task (idempotent)."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        if self.polling:
            return self._poll_task
        self._poll_task = asyncio.create_task(self._poll_loop(interval))
        logger.info(f"Started policy polling every {interval}s")
        return self._poll_task

    async def stop_polling(self, timeout: float = 5.0) -> None:
        """Stop polling.

        An in-flight fetch may finish within ``timeout`` seconds; after that
        it is cancelled. A fetch cancelled before validation publishes
        nothing; a publish already handed to the store completes whole.
        """
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        cycle, self._cycle_task = self._cycle_task, None
        if cycle is None or cycle.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(cycle), timeout)
        except asyncio.TimeoutError:
            cycle.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cycle
            logger.warning(f"Abandoned in-flight policy fetch after {timeout}s")

    async def _poll_loop(self, interval: float) -> None:
        while True:
            if self._cycle_task is None or self._cycle_task.done():
                self._cycle_task = asyncio.create_task(self._poll_once())
            else:
                logger.debug("Previous policy fetch still pending; tick skipped")
            await asyncio.sleep(interval)

    async def _poll_once(self) -> None:
        try:
            await self.refresh()
        except Exception as e:
            logger.error(f"Error in policy poll cycle: {e}")
