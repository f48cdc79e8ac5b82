"""Tests for the versioned policy store."""

import json
from unittest.mock import MagicMock

import pytest

from rollout_control.core.errors import PersistenceWarning, StalePolicy
from rollout_control.core.rollout.models import FeatureRule, Policy
from rollout_control.core.rollout.store import PolicyListener, PolicyStore


def _policy(version, **percents):
    return Policy(
        version=version,
        features={key: FeatureRule(rollout_percent=p) for key, p in percents.items()},
    )


class TestPublish:
    """Tests for publish ordering."""

    def test_empty_store(self):
        store = PolicyStore()
        assert store.current().version == 0
        assert store.previous is None

    def test_publish_newer(self, store):
        result = store.publish(_policy(2, beta=10))
        assert result.previous_version == 1
        assert result.persisted is True
        assert store.current().version == 2
        assert store.previous.version == 1

    @pytest.mark.parametrize("version", [0, 1])
    def test_stale_publish_rejected(self, store, version):
        with pytest.raises(StalePolicy) as exc_info:
            store.publish(_policy(version, beta=50))
        assert exc_info.value.attempted_version == version
        assert exc_info.value.current_version == 1
        assert store.current().get("beta").rollout_percent == 0

    def test_versions_can_skip(self, store):
        store.publish(_policy(7, beta=10))
        assert store.current().version == 7

    def test_snapshot_unchanged_after_publish(self, store):
        snapshot = store.current()
        store.publish(_policy(2, beta=90))
        assert snapshot.version == 1
        assert snapshot.get("beta").rollout_percent == 0

    def test_listeners_notified(self, store):
        listener = MagicMock(spec=PolicyListener)
        store.add_listener(listener)
        new = _policy(2, beta=10)
        store.publish(new)
        listener.on_policy_published.assert_called_once()
        old_arg, new_arg = listener.on_policy_published.call_args[0]
        assert old_arg.version == 1
        assert new_arg is new

    def test_listener_error_does_not_fail_publish(self, store):
        listener = MagicMock(spec=PolicyListener)
        listener.on_policy_published.side_effect = RuntimeError("boom")
        store.add_listener(listener)
        assert store.publish(_policy(2, beta=10)).policy.version == 2


class TestRevert:
    """Tests for revert_to_previous."""

    def test_nothing_to_revert(self, store):
        assert store.revert_to_previous() is None
        assert store.current().version == 1

    def test_revert_restamps_previous_rules(self, store):
        store.publish(_policy(2, beta=40))
        result = store.revert_to_previous()
        assert result.policy.version == 3
        assert result.previous_version == 2
        assert store.current().get("beta").rollout_percent == 0
        assert store.previous.version == 2

    def test_revert_keeps_versions_monotonic(self, store):
        store.publish(_policy(2, beta=40))
        store.revert_to_previous()
        with pytest.raises(StalePolicy):
            store.publish(_policy(3, beta=60))


class TestCachedDefaults:
    """Tests for the last-known default snapshot."""

    def test_default_survives_feature_removal(self):
        store = PolicyStore(
            initial=Policy(version=1, features={"legacy": FeatureRule(default_value=True)})
        )
        store.publish(Policy(version=2))
        assert "legacy" not in store.current()
        assert store.cached_default("legacy") is True

    def test_unknown_feature_has_no_default(self, store):
        assert store.cached_default("never_seen") is None


class TestPersistence:
    """Tests for best-effort persistence."""

    def test_publish_writes_file(self, tmp_path):
        path = tmp_path / "policy.json"
        store = PolicyStore(path=path)
        store.publish(_policy(3, beta=30))

        data = json.loads(path.read_text())
        assert data["policy"]["version"] == 3
        assert data["policy"]["features"][0]["key"] == "beta"
        assert data["cached_defaults"] == {"beta": False}
        assert "persisted_at" in data
        assert not (tmp_path / "policy.json.tmp").exists()

    def test_load_restores_policy(self, tmp_path):
        path = tmp_path / "policy.json"
        PolicyStore(path=path).publish(_policy(5, beta=70))

        restored = PolicyStore(path=path)
        loaded = restored.load_from_disk()
        assert loaded.version == 5
        assert restored.current().get("beta").rollout_percent == 70

    def test_load_ignores_older_file(self, tmp_path):
        path = tmp_path / "policy.json"
        PolicyStore(path=path).publish(_policy(2, beta=70))

        store = PolicyStore(path=path, initial=_policy(4, beta=10))
        assert store.load_from_disk() is None
        assert store.current().version == 4

    def test_load_missing_file(self, tmp_path):
        store = PolicyStore(path=tmp_path / "missing.json")
        assert store.load_from_disk() is None
        assert store.current().version == 0

    def test_load_corrupt_file(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text("{not json")
        store = PolicyStore(path=path)
        assert store.load_from_disk() is None
        assert store.current().version == 0

    def test_persistence_failure_is_a_warning(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = PolicyStore(path=blocker / "policy.json", initial=_policy(1, beta=0))

        result = store.publish(_policy(2, beta=20))

        assert isinstance(result.warning, PersistenceWarning)
        assert result.persisted is False
        assert store.current().version == 2

    def test_persist_in_memory_store(self, store):
        assert store.persist() is None
