"""Rollout operator and evaluation endpoints."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from rollout_control.api.dependencies import get_admin_token, get_runtime
from rollout_control.core.errors import (
    ErrorCode,
    InvalidTransition,
    UnknownFeature,
    build_error,
)
from rollout_control.core.rollout import FeatureRollout, RolloutTarget
from rollout_control.runtime import RolloutRuntime

router = APIRouter()


class PolicyResponse(BaseModel):
    version: int
    features: List[Dict[str, Any]]
    degraded: bool = False
    degraded_since: Optional[str] = None


class EvaluationResponse(BaseModel):
    identity: str
    feature_key: str
    decision: bool
    policy_version: int
    reason: str
    policy_miss: bool
    timestamp: str


class RolloutResponse(BaseModel):
    feature_key: str
    state: str
    target: Dict[str, Any]
    last_metric: Optional[float] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)


class TargetRequest(BaseModel):
    feature_key: str = Field(min_length=1)
    desired_percent: int = Field(default=100, ge=0, le=100)
    step_size: int = Field(default=10, ge=1, le=100)
    metric_threshold: float = 0.05
    start: bool = True


class DesiredPercentRequest(BaseModel):
    percent: int = Field(ge=0, le=100)


class RevertResponse(BaseModel):
    reverted: bool
    version: int
    persisted: bool = True


def _rollout_response(rollout: FeatureRollout) -> RolloutResponse:
    data = rollout.to_dict()
    return RolloutResponse(
        feature_key=rollout.feature_key,
        state=data["state"],
        target=data["target"],
        last_metric=data["last_metric"],
        events=data["events"],
    )


def _operator_call(fn, *args) -> RolloutResponse:
    try:
        return _rollout_response(fn(*args))
    except UnknownFeature as e:
        raise HTTPException(
            status_code=404, detail=build_error(ErrorCode.UNKNOWN_FEATURE, str(e))
        )
    except InvalidTransition as e:
        raise HTTPException(
            status_code=409, detail=build_error(ErrorCode.INVALID_TRANSITION, str(e))
        )


@router.get("/policy", response_model=PolicyResponse)
async def current_policy(runtime: RolloutRuntime = Depends(get_runtime)):
    payload = runtime.store.current().to_payload()
    signal = runtime.fetcher.degraded_signal
    return PolicyResponse(
        version=payload["version"],
        features=payload["features"],
        degraded=signal is not None,
        degraded_since=signal.since.isoformat() if signal else None,
    )


@router.get("/status")
async def rollout_status(runtime: RolloutRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    status = runtime.controller.status()
    status["fetcher"] = {
        "polling": runtime.fetcher.polling,
        "in_flight": runtime.fetcher.in_flight,
        "degraded": runtime.fetcher.degraded,
        "degraded_events": [s.to_dict() for s in runtime.degraded_events],
    }
    status["exposures"] = {
        "buffered": len(runtime.exposures),
        "emitted": runtime.exposures.emitted,
        "delivered": runtime.exposures.delivered,
        "dropped": runtime.exposures.dropped,
    }
    return status


@router.get("/evaluate", response_model=EvaluationResponse)
async def evaluate(
    identity: str = Query(..., min_length=1),
    feature_key: str = Query(..., min_length=1),
    default: Optional[bool] = None,
    runtime: RolloutRuntime = Depends(get_runtime),
):
    record = runtime.evaluator.evaluate(identity, feature_key, default)
    return EvaluationResponse(**record.to_dict())


@router.get("/exposures")
async def drain_exposures(
    limit: int = Query(default=1000, ge=1, le=10000),
    runtime: RolloutRuntime = Depends(get_runtime),
    _: str = Depends(get_admin_token),
) -> Dict[str, Any]:
    records = [r.to_dict() for r in runtime.exposures.drain(limit)]
    return {"count": len(records), "records": records}


@router.post("/refresh", response_model=PolicyResponse)
async def refresh_policy(
    runtime: RolloutRuntime = Depends(get_runtime),
    _: str = Depends(get_admin_token),
):
    await runtime.fetcher.refresh()
    return await current_policy(runtime)


@router.post("/revert", response_model=RevertResponse)
async def revert_policy(
    runtime: RolloutRuntime = Depends(get_runtime),
    _: str = Depends(get_admin_token),
):
    result = await asyncio.to_thread(runtime.store.revert_to_previous)
    if result is None:
        return RevertResponse(reverted=False, version=runtime.store.current().version)
    return RevertResponse(reverted=True, version=result.policy.version, persisted=result.persisted)


@router.post("/targets", response_model=RolloutResponse)
async def add_target(
    request: TargetRequest,
    runtime: RolloutRuntime = Depends(get_runtime),
    _: str = Depends(get_admin_token),
):
    target = RolloutTarget(
        feature_key=request.feature_key,
        desired_percent=request.desired_percent,
        step_size=request.step_size,
        metric_threshold=request.metric_threshold,
    )
    return _operator_call(runtime.controller.add_target, target, request.start)


@router.post("/features/{feature_key}/rollback", response_model=RolloutResponse)
async def force_rollback(
    feature_key: str,
    runtime: RolloutRuntime = Depends(get_runtime),
    _: str = Depends(get_admin_token),
):
    return _operator_call(runtime.controller.force_rollback, feature_key)


@router.post("/features/{feature_key}/rearm", response_model=RolloutResponse)
async def re_arm(
    feature_key: str,
    runtime: RolloutRuntime = Depends(get_runtime),
    _: str = Depends(get_admin_token),
):
    return _operator_call(runtime.controller.re_arm, feature_key)


@router.post("/features/{feature_key}/resume", response_model=RolloutResponse)
async def resume(
    feature_key: str,
    runtime: RolloutRuntime = Depends(get_runtime),
    _: str = Depends(get_admin_token),
):
    return _operator_call(runtime.controller.resume, feature_key)


@router.post("/features/{feature_key}/pause", response_model=RolloutResponse)
async def pause(
    feature_key: str,
    runtime: RolloutRuntime = Depends(get_runtime),
    _: str = Depends(get_admin_token),
):
    return _operator_call(runtime.controller.pause, feature_key)


@router.put("/features/{feature_key}/desired", response_model=RolloutResponse)
async def set_desired_percent(
    feature_key: str,
    request: DesiredPercentRequest,
    runtime: RolloutRuntime = Depends(get_runtime),
    _: str = Depends(get_admin_token),
):
    return _operator_call(runtime.controller.set_desired_percent, feature_key, request.percent)
