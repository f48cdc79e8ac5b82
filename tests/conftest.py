import os

import pytest

from rollout_control.core.config import reset_settings
from rollout_control.core.rollout import FeatureRule, Policy, PolicyStore


# Environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "ROLLOUT_ADMIN_TOKEN",
    "ROLLOUT_POLICY_URL",
    "ROLLOUT_POLICY_PATH",
    "ROLLOUT_POLL_INTERVAL_SECONDS",
    "ROLLOUT_FETCH_MAX_ATTEMPTS",
    "ROLLOUT_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and cached settings between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_settings()


@pytest.fixture
def beta_policy():
    """Version 1 policy with a single feature at 0%."""
    return Policy(version=1, features={"beta": FeatureRule(rollout_percent=0)})


@pytest.fixture
def store(beta_policy):
    """In-memory store seeded with ``beta_policy``."""
    return PolicyStore(initial=beta_policy)
