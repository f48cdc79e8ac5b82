"""API router aggregation."""
from fastapi import APIRouter

from rollout_control.api.v1 import rollout

api_router = APIRouter()

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(rollout.router, prefix="/rollout", tags=["rollout"])

api_router.include_router(v1_router)
