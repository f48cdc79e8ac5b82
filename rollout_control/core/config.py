"""Runtime settings for the rollout control service.

Only the application wiring reads these; components take explicit
constructor arguments so they can be injected in tests.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Policy authority
    POLICY_URL: str = "http://localhost:8080/policy"
    POLICY_PATH: str = "data/rollout_policy.json"
    FETCH_TIMEOUT_SECONDS: float = 5.0
    POLL_INTERVAL_SECONDS: float = 30.0

    # Backoff per polling cycle: base doubles up to the cap, plus jitter
    FETCH_MAX_ATTEMPTS: int = 4
    FETCH_BACKOFF_BASE_SECONDS: float = 0.5
    FETCH_BACKOFF_MAX_SECONDS: float = 10.0
    FETCH_BACKOFF_JITTER_SECONDS: float = 0.5

    # Bound on waiting for an in-flight task when stopping
    STOP_TIMEOUT_SECONDS: float = 5.0

    # Rollout control loop
    CONTROLLER_INTERVAL_SECONDS: float = 60.0
    METRIC_WINDOW_SECONDS: float = 300.0

    EXPOSURE_BUFFER_SIZE: int = 10000

    # Operator routes are disabled when unset
    ADMIN_TOKEN: str = ""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings_cache
    _settings_cache = None
