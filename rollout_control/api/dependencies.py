"""API dependencies."""

import hmac

from fastapi import Header, HTTPException, Request

from rollout_control.core.errors import ErrorCode, build_error
from rollout_control.runtime import RolloutRuntime


def get_runtime(request: Request) -> RolloutRuntime:
    return request.app.state.rollout


async def get_admin_token(
    request: Request,
    x_admin_token: str = Header(default="", alias="X-Admin-Token"),
) -> str:
    """
    Validate the operator token guarding mutating rollout routes.

    Raises:
        HTTPException: 401 if the token is missing, 403 if it is wrong,
            500 if no token is configured.
    """
    if not x_admin_token:
        raise HTTPException(
            status_code=401,
            detail=build_error(
                ErrorCode.AUTHORIZATION_FAILED,
                "Missing admin token",
                hint="Provide X-Admin-Token header",
            ),
        )

    expected_token = get_runtime(request).settings.ADMIN_TOKEN
    if not expected_token:
        raise HTTPException(
            status_code=500,
            detail=build_error(
                ErrorCode.AUTHORIZATION_FAILED,
                "Admin token not configured",
                hint="Set ROLLOUT_ADMIN_TOKEN",
            ),
        )

    if not hmac.compare_digest(x_admin_token, expected_token):
        raise HTTPException(
            status_code=403,
            detail=build_error(ErrorCode.AUTHORIZATION_FAILED, "Invalid admin token"),
        )
    return x_admin_token
