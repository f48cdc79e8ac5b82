"""Policy store.

Holds the current and previous rollout policy plus the cached default value of
every feature seen so far, and persists them best-effort to a JSON file so the
last known policy survives restarts.

Readers call :meth:`PolicyStore.current` without locking: the current policy
is immutable and replaced by a single reference swap. Writers serialize on one
lock and must publish strictly increasing versions.

With a ``path``, publishing writes the file before returning. Async callers
run :meth:`PolicyStore.publish` through ``asyncio.to_thread`` so the event
loop keeps running during that write.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Union

from rollout_control.core.errors import PersistenceWarning, StalePolicy
from rollout_control.core.metrics import rollout_policy_version, rollout_publish_total
from rollout_control.core.rollout.models import Policy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    """Outcome of a successful publish."""

    policy: Policy
    previous_version: int
    warning: Optional[PersistenceWarning] = None

    @property
    def persisted(self) -> bool:
        return self.warning is None


class PolicyListener(ABC):
    """Listener for policy swaps."""

    @abstractmethod
    def on_policy_published(self, old: Policy, new: Policy) -> None:
        """Called after ``new`` became current."""
        pass


class LoggingPolicyListener(PolicyListener):
    """Listener that logs which features changed."""

    def on_policy_published(self, old: Policy, new: Policy) -> None:
        changed = sorted(
            key
            for key in set(old.features) | set(new.features)
            if old.get(key) != new.get(key)
        )
        logger.info(
            f"Policy v{old.version} -> v{new.version}, changed features: {changed}",
            extra={"policy_version": new.version, "previous_version": old.version},
        )


class PolicyStore:
    """Owner of the current rollout policy."""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        initial: Optional[Policy] = None,
    ):
        """Initialize the store.

        Args:
            path: JSON file for persistence; ``None`` keeps everything in memory.
            initial: Policy to start from (defaults to the empty version 0).
        """
        self.path = Path(path) if path else None
        self._current: Policy = initial or Policy()
        self._previous: Optional[Policy] = None
        self._cached_defaults: Mapping[str, bool] = MappingProxyType(
            {key: rule.default_value for key, rule in self._current.features.items()}
        )
        self._lock = threading.Lock()
        self._listeners: List[PolicyListener] = []
        rollout_policy_version.set(self._current.version)

    def add_listener(self, listener: PolicyListener) -> None:
        self._listeners.append(listener)

    def current(self) -> Policy:
        """Snapshot of the current policy. Never blocks."""
        return self._current

    @property
    def previous(self) -> Optional[Policy]:
        return self._previous

    def cached_default(self, feature_key: str) -> Optional[bool]:
        """Last known ``default_value`` for a feature, even if since removed."""
        return self._cached_defaults.get(feature_key)

    def publish(self, policy: Policy) -> PublishResult:
        """Make ``policy`` current.

        Raises:
            StalePolicy: if ``policy.version`` is not newer than the current
                version. The current policy is left unchanged.
        """
        with self._lock:
            old = self._current
            if policy.version <= old.version:
                rollout_publish_total.labels(result="stale").inc()
                raise StalePolicy(policy.version, old.version)
            self._swap(policy)
            warning = self._persist_locked()

        rollout_publish_total.labels(result="published").inc()
        rollout_policy_version.set(policy.version)
        self._notify(old, policy)
        return PublishResult(policy=policy, previous_version=old.version, warning=warning)

    def revert_to_previous(self) -> Optional[PublishResult]:
        """Re-publish the previous policy's rules under a new version.

        Versions stay monotonic, so the reverted policy gets
        ``current.version + 1``. Returns ``None`` if there is nothing to
        revert to.
        """
        with self._lock:
            if self._previous is None:
                return None
            old = self._current
            source_version = self._previous.version
            reverted = self._previous.with_version(old.version + 1)
            self._swap(reverted)
            warning = self._persist_locked()

        rollout_publish_total.labels(result="published").inc()
        rollout_policy_version.set(reverted.version)
        logger.warning(
            f"Reverted policy v{old.version} to the rules of v{source_version}",
            extra={"policy_version": reverted.version, "previous_version": old.version},
        )
        self._notify(old, reverted)
        return PublishResult(policy=reverted, previous_version=old.version, warning=warning)

    def persist(self) -> Optional[PersistenceWarning]:
        """Write the current state to disk; returns a warning on failure."""
        with self._lock:
            return self._persist_locked()

    def load_from_disk(self) -> Optional[Policy]:
        """Restore the persisted policy if it is newer than the current one.

        A missing or unreadable file is logged and ignored.

        Returns:
            The loaded policy if it became current, else ``None``.
        """
        if self.path is None or not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            loaded = Policy.from_payload(data["policy"])
            defaults = {
                str(k): bool(v) for k, v in data.get("cached_defaults", {}).items()
            }
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(
                f"Failed to load rollout policy from {self.path}: {e}",
                extra={"path": str(self.path)},
            )
            return None

        with self._lock:
            merged = dict(defaults)
            merged.update(self._cached_defaults)
            self._cached_defaults = MappingProxyType(merged)

            if loaded.version <= self._current.version:
                logger.info(
                    f"Persisted policy v{loaded.version} is not newer than "
                    f"v{self._current.version}; keeping current"
                )
                return None
            old = self._current
            self._swap(loaded)

        rollout_policy_version.set(loaded.version)
        logger.info(
            f"Loaded rollout policy v{loaded.version} from {self.path}",
            extra={"policy_version": loaded.version, "path": str(self.path)},
        )
        self._notify(old, loaded)
        return loaded

    def _swap(self, policy: Policy) -> None:
        defaults = dict(self._cached_defaults)
        defaults.update({key: rule.default_value for key, rule in policy.features.items()})
        self._previous = self._current
        self._cached_defaults = MappingProxyType(defaults)
        self._current = policy

    def _persist_locked(self) -> Optional[PersistenceWarning]:
        if self.path is None:
            return None

        document: Dict[str, Any] = {
            "policy": self._current.to_payload(),
            "cached_defaults": dict(self._cached_defaults),
            "persisted_at": datetime.now(timezone.utc).isoformat(),
        }
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            rollout_publish_total.labels(result="persist_failed").inc()
            warning = PersistenceWarning(f"Failed to persist policy to {self.path}: {e}")
            logger.warning(
                str(warning),
                extra={"policy_version": self._current.version, "path": str(self.path)},
            )
            return warning
        return None

    def _notify(self, old: Policy, new: Policy) -> None:
        for listener in self._listeners:
            try:
                listener.on_policy_published(old, new)
            except Exception as e:
                logger.error(f"Policy listener error: {e}")
