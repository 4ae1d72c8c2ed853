import logging
from typing import Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.maintenance_guard import MaintenanceGuard
from app.core.maintenance_policy import (
    TEST_OVERRIDE_PARAM,
    Actor,
    GateVerdict,
    MaintenanceConfig,
    is_active,
    is_blocked,
    notice_payload,
    parse_test_override,
)
from app.core.security import resolve_role
from app import database

logger = logging.getLogger(__name__)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None


def lookup_role(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    db = database.SessionLocal()
    try:
        return resolve_role(token, db)
    finally:
        db.close()


def retry_after_seconds(config: MaintenanceConfig, now) -> int:
    if config.window_end is not None and config.window_end > now:
        return max(int((config.window_end - now).total_seconds()), 1)
    return settings.MAINTENANCE_RETRY_AFTER


def loading_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Checking maintenance status", "status": "loading"},
        headers={"Retry-After": "1"}
    )


def notice_response(path: str, config: MaintenanceConfig, now) -> JSONResponse:
    retry_after = retry_after_seconds(config, now)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "detail": config.message or "Service temporarily unavailable for maintenance",
            "status": "maintenance",
            "path": path,
            "notice": notice_payload(config, now),
            "retry_after": retry_after
        },
        headers={"Retry-After": str(retry_after)}
    )


async def gate_request(request: Request, guard: MaintenanceGuard) -> Optional[JSONResponse]:
    """Response to send instead of the route, or None to let the request through"""
    path = request.url.path

    #unblocked routes are allowed whatever the settings say
    if not is_blocked(path):
        return None

    config = guard.config
    if config is None:
        return loading_response()

    now = guard.clock()
    if not is_active(config, now):
        return None

    token = bearer_token(request.headers.get("Authorization"))
    role = await run_in_threadpool(lookup_role, token) if token else None
    actor = Actor(
        role=role,
        test_override_requested=parse_test_override(request.query_params.get(TEST_OVERRIDE_PARAM))
    )

    evaluation = guard.check(path, actor, now)
    if evaluation is not None and evaluation.verdict == GateVerdict.SHOW_NOTICE:
        logger.warning(f"Route blocked during maintenance: {path}")
        return notice_response(path, config, now)
    return None


async def maintenance_mode_middleware(request: Request, call_next):
    """Show the maintenance notice in place of blocked storefront routes"""

    #allow health check and the API (admin controls live there) even in maintenance mode
    path = request.url.path
    if path == "/health" or path.startswith(settings.API_V1_STR):
        return await call_next(request)

    guard = getattr(request.app.state, "maintenance_guard", None)
    if guard is None:
        return await call_next(request)

    try:
        response = await gate_request(request, guard)
    except Exception as e:
        #fail open: a broken gate must not take the storefront down
        logger.error(f"Maintenance gate failed for {path}, letting request through: {e}")
        response = None

    if response is not None:
        return response
    return await call_next(request)
