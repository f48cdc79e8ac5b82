"""
Rollout control service entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from rollout_control import __version__
from rollout_control.api import api_router
from rollout_control.core.config import Settings, get_settings
from rollout_control.core.logging import setup_logging
from rollout_control.runtime import RolloutRuntime, build_runtime

logger = logging.getLogger(__name__)


def create_app(
    runtime: Optional[RolloutRuntime] = None,
    settings: Optional[Settings] = None,
    start_background: bool = True,
) -> FastAPI:
    """Build the FastAPI application around one rollout runtime.

    Args:
        runtime: Pre-built components; built from ``settings`` when omitted.
        settings: Runtime settings; read from the environment when omitted.
        start_background: Start polling and the control loop on startup.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    runtime = runtime or build_runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting rollout control service...")
        if start_background:
            await runtime.start()
        yield
        logger.info("Shutting down rollout control service...")
        if start_background:
            await runtime.stop()

    app = FastAPI(
        title="Rollout Control",
        description="Progressive rollout policy evaluation and control",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.rollout = runtime
    app.include_router(api_router, prefix="/api")
    app.mount("/metrics", make_asgi_app())

    @app.get("/health")
    async def health():
        return {
            "status": "degraded" if runtime.fetcher.degraded else "ok",
            "policy_version": runtime.store.current().version,
        }

    return app


def main() -> None:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
