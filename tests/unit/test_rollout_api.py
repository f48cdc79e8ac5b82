"""Tests for the rollout HTTP API."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from rollout_control.core.config import Settings
from rollout_control.core.rollout import FeatureRule, Policy
from rollout_control.main import create_app
from rollout_control.runtime import build_runtime

ADMIN = {"X-Admin-Token": "secret"}
PREFIX = "/api/v1/rollout"


@pytest.fixture
def runtime():
    settings = Settings(ADMIN_TOKEN="secret", POLICY_PATH="")
    source = AsyncMock(
        return_value={"version": 2, "features": [{"key": "beta", "rolloutPercent": 10}]}
    )
    runtime = build_runtime(settings, source=source)
    runtime.store.publish(Policy(version=1, features={"beta": FeatureRule(rollout_percent=0)}))
    return runtime


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime=runtime, start_background=False))


class TestPublicRoutes:
    """Tests for read-only routes."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "policy_version": 1}

    def test_policy(self, client):
        data = client.get(f"{PREFIX}/policy").json()
        assert data["version"] == 1
        assert data["features"][0]["key"] == "beta"
        assert data["features"][0]["rolloutPercent"] == 0
        assert data["degraded"] is False

    def test_evaluate(self, client):
        response = client.get(f"{PREFIX}/evaluate", params={"identity": "u1", "feature_key": "beta"})
        assert response.status_code == 200
        data = response.json()
        assert data["decision"] is False
        assert data["reason"] == "rollout"
        assert data["policy_version"] == 1

    def test_evaluate_missing_feature_with_default(self, client):
        data = client.get(
            f"{PREFIX}/evaluate",
            params={"identity": "u1", "feature_key": "gone", "default": "true"},
        ).json()
        assert data["decision"] is True
        assert data["reason"] == "caller_default"
        assert data["policy_miss"] is True

    def test_evaluate_requires_identity(self, client):
        response = client.get(f"{PREFIX}/evaluate", params={"feature_key": "beta"})
        assert response.status_code == 422

    def test_status(self, client):
        client.get(f"{PREFIX}/evaluate", params={"identity": "u1", "feature_key": "beta"})
        data = client.get(f"{PREFIX}/status").json()
        assert data["policy_version"] == 1
        assert data["fetcher"]["degraded"] is False
        assert data["exposures"]["emitted"] == 1
        assert data["exposures"]["delivered"] == 0

    def test_metrics(self, client):
        response = client.get("/metrics/")
        assert response.status_code == 200
        assert "rollout_policy_version" in response.text


class TestAdminAuth:
    """Tests for the operator token."""

    def test_missing_token(self, client):
        response = client.post(f"{PREFIX}/features/beta/rollback")
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "AUTHORIZATION_FAILED"

    def test_wrong_token(self, client):
        response = client.post(
            f"{PREFIX}/features/beta/rollback", headers={"X-Admin-Token": "nope"}
        )
        assert response.status_code == 403

    def test_token_not_configured(self, runtime):
        runtime.settings = Settings(ADMIN_TOKEN="", POLICY_PATH="")
        client = TestClient(create_app(runtime=runtime, start_background=False))
        response = client.post(f"{PREFIX}/features/beta/rollback", headers=ADMIN)
        assert response.status_code == 500


class TestOperatorRoutes:
    """Tests for mutating rollout routes."""

    def test_add_target(self, client):
        response = client.post(
            f"{PREFIX}/targets",
            json={"feature_key": "beta", "desired_percent": 50, "step_size": 5},
            headers=ADMIN,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "ramping"
        assert data["target"]["desired_percent"] == 50

    def test_add_target_unknown_feature(self, client):
        response = client.post(f"{PREFIX}/targets", json={"feature_key": "nope"}, headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "UNKNOWN_FEATURE"

    def test_add_target_validation(self, client):
        response = client.post(
            f"{PREFIX}/targets", json={"feature_key": "beta", "desired_percent": 150}, headers=ADMIN
        )
        assert response.status_code == 422

    def test_rollback_rearm_resume(self, client, runtime):
        response = client.post(f"{PREFIX}/features/beta/rollback", headers=ADMIN)
        assert response.json()["state"] == "rolled_back"
        assert runtime.store.current().get("beta").kill_switch is True

        response = client.post(f"{PREFIX}/features/beta/rearm", headers=ADMIN)
        assert response.json()["state"] == "paused"

        response = client.post(f"{PREFIX}/features/beta/resume", headers=ADMIN)
        assert response.json()["state"] == "ramping"
        assert runtime.store.current().get("beta").kill_switch is False

    def test_invalid_transition(self, client):
        client.post(f"{PREFIX}/targets", json={"feature_key": "beta"}, headers=ADMIN)
        response = client.post(f"{PREFIX}/features/beta/rearm", headers=ADMIN)
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVALID_TRANSITION"

    def test_pause_and_retarget(self, client):
        client.post(f"{PREFIX}/targets", json={"feature_key": "beta"}, headers=ADMIN)
        response = client.post(f"{PREFIX}/features/beta/pause", headers=ADMIN)
        assert response.json()["state"] == "paused"

        response = client.put(
            f"{PREFIX}/features/beta/desired", json={"percent": 40}, headers=ADMIN
        )
        assert response.status_code == 200
        assert response.json()["target"]["desired_percent"] == 40

    def test_unregistered_feature_action(self, client):
        response = client.post(f"{PREFIX}/features/beta/pause", headers=ADMIN)
        assert response.status_code == 404

    def test_revert(self, client, runtime):
        response = client.post(f"{PREFIX}/revert", headers=ADMIN)
        assert response.json()["reverted"] is True
        assert response.json()["version"] == 2
        # Seeded v1 replaced the empty v0; reverting restores the empty rules
        assert "beta" not in runtime.store.current()

    def test_refresh(self, client, runtime):
        response = client.post(f"{PREFIX}/refresh", headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["version"] == 2
        assert runtime.store.current().get("beta").rollout_percent == 10

    def test_drain_exposures(self, client):
        for identity in ("u1", "u2", "u3"):
            client.get(f"{PREFIX}/evaluate", params={"identity": identity, "feature_key": "beta"})

        data = client.get(f"{PREFIX}/exposures", params={"limit": 2}, headers=ADMIN).json()
        assert data["count"] == 2
        assert [r["identity"] for r in data["records"]] == ["u1", "u2"]

        data = client.get(f"{PREFIX}/exposures", headers=ADMIN).json()
        assert data["count"] == 1
