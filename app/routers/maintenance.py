import asyncio
import json
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Security, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app import crud, models, schemas
from app.core.maintenance_guard import MaintenanceGuard, NavigationSession
from app.core.maintenance_policy import (
    FALLBACK_CONFIG,
    Actor,
    GateVerdict,
    countdown,
    is_active,
    notice_payload,
    parse_test_override,
)
from app.core.maintenance_state import maintenance_store
from app.core.realtime import MAINTENANCE_TABLE, change_feed, serialize_record
from app.core.security import audit_log, get_current_active_admin, get_optional_current_user
from app.database import get_db
from app.middleware.maintenance import lookup_role

logger = logging.getLogger(__name__)

router = APIRouter(tags=["maintenance"])


class MaintenanceToggle(BaseModel):
    enabled: bool
    message: Optional[str] = Field(None, max_length=2000)


#navigation messages are small, anything bigger is rejected before parsing
MAX_NAVIGATION_MESSAGE = 4096


class NavigationMessage(BaseModel):
    type: Literal["navigate"]
    path: str = Field(..., min_length=1, max_length=2048)


def get_guard(request: Request) -> MaintenanceGuard:
    return request.app.state.maintenance_guard


async def current_config(guard: MaintenanceGuard):
    if guard.config is not None:
        return guard.config
    return await maintenance_store.load()


async def publish_change(event_type: str, db_settings: models.MaintenanceSettings) -> None:
    #waits for in-process subscribers so the gate reflects the change before we answer
    await change_feed.apublish(MAINTENANCE_TABLE, event_type, serialize_record(db_settings))


def record_admin_action(db: Session, current_user: models.User, action: str, db_settings: models.MaintenanceSettings, details: str):
    crud.create_audit_log(
        db=db,
        action=action,
        user_id=current_user.id,
        resource_type="maintenance_settings",
        resource_id=str(db_settings.id),
        details=details,
        success=True
    )
    audit_log(f"Admin {current_user.id} {details}")

# ============= PUBLIC ENDPOINTS =============

@router.get("/maintenance/status", response_model=schemas.MaintenanceStatus)
async def get_maintenance_status(guard: MaintenanceGuard = Depends(get_guard)):
    """Current maintenance window and notice payload (public endpoint)"""
    config = await current_config(guard)
    now = guard.clock()
    notice = notice_payload(config, now)

    return schemas.MaintenanceStatus(
        enabled=config.enabled,
        active=is_active(config, now),
        window_start=config.window_start,
        window_end=config.window_end,
        title=config.title,
        message=config.message,
        countdown_label=config.countdown_label,
        countdown_active=notice["countdown_active"],
        countdown=countdown(config.window_end, now)
    )


@router.get("/maintenance/check", response_model=schemas.GateCheck)
async def check_route(
    path: str = Query(..., min_length=1),
    test_maintenance: Optional[str] = Query(None),
    current_user: Optional[models.User] = Depends(get_optional_current_user),
    guard: MaintenanceGuard = Depends(get_guard)
):
    """Explain the gate decision for ``path`` as seen by the caller"""
    actor = Actor(
        role=current_user.role if current_user else None,
        test_override_requested=parse_test_override(test_maintenance)
    )
    evaluation = guard.check(path, actor)
    if evaluation is None:
        raise HTTPException(status_code=503, detail="Maintenance settings are still loading")

    return schemas.GateCheck(
        path=evaluation.path,
        active=evaluation.active,
        blocked=evaluation.blocked,
        bypass=evaluation.bypass,
        verdict=evaluation.verdict.value,
        role=actor.role,
        test_override=actor.test_override_requested
    )

# ============= ADMIN ENDPOINTS =============

@router.get("/admin/maintenance", response_model=schemas.MaintenanceSettings)
def get_maintenance_settings(
    current_user: models.User = Security(get_current_active_admin),
    db: Session = Depends(get_db)
):
    db_settings = crud.get_maintenance_settings(db)
    if db_settings is None:
        raise HTTPException(status_code=404, detail="Maintenance settings not found")
    return schemas.MaintenanceSettings.from_orm_settings(db_settings)


@router.post("/admin/maintenance", response_model=schemas.MaintenanceSettings, status_code=201)
async def create_maintenance_settings(
    settings_data: schemas.MaintenanceSettingsCreate,
    current_user: models.User = Security(get_current_active_admin),
    db: Session = Depends(get_db)
):
    if crud.get_maintenance_settings(db) is not None:
        raise HTTPException(status_code=409, detail="Maintenance settings already exist")

    db_settings = crud.create_maintenance_settings(db, settings_data)
    record_admin_action(db, current_user, "maintenance.created", db_settings, f"created maintenance settings (enabled={db_settings.is_enabled})")
    await publish_change("INSERT", db_settings)
    return schemas.MaintenanceSettings.from_orm_settings(db_settings)


@router.patch("/admin/maintenance", response_model=schemas.MaintenanceSettings)
async def update_maintenance_settings(
    update: schemas.MaintenanceSettingsUpdate,
    current_user: models.User = Security(get_current_active_admin),
    db: Session = Depends(get_db)
):
    db_settings = crud.get_maintenance_settings(db)
    if db_settings is None:
        raise HTTPException(status_code=404, detail="Maintenance settings not found")

    try:
        db_settings = crud.update_maintenance_settings(db, db_settings, update)
    except crud.StaleVersionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    changed = ", ".join(sorted(update.model_dump(exclude_unset=True, exclude={"version"}))) or "nothing"
    record_admin_action(db, current_user, "maintenance.updated", db_settings, f"updated maintenance settings: {changed}")
    await publish_change("UPDATE", db_settings)
    return schemas.MaintenanceSettings.from_orm_settings(db_settings)


async def _set_enabled(db: Session, current_user: models.User, enabled: bool, message: Optional[str] = None):
    db_settings = crud.get_maintenance_settings(db)
    if db_settings is None:
        db_settings = crud.create_maintenance_settings(
            db, schemas.MaintenanceSettingsCreate(enabled=enabled, message=message)
        )
        event_type = "INSERT"
    else:
        update = schemas.MaintenanceSettingsUpdate(enabled=enabled)
        if message:
            update = schemas.MaintenanceSettingsUpdate(enabled=enabled, message=message)
        try:
            db_settings = crud.update_maintenance_settings(db, db_settings, update)
        except crud.StaleVersionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        event_type = "UPDATE"

    action = "maintenance.enabled" if enabled else "maintenance.disabled"
    record_admin_action(db, current_user, action, db_settings, f"{'enabled' if enabled else 'disabled'} maintenance mode")
    await publish_change(event_type, db_settings)
    return schemas.MaintenanceSettings.from_orm_settings(db_settings)


@router.post("/admin/maintenance/toggle", response_model=schemas.MaintenanceSettings)
async def toggle_maintenance(
    toggle: MaintenanceToggle,
    current_user: models.User = Security(get_current_active_admin),
    db: Session = Depends(get_db)
):
    """Enable or disable maintenance mode (admin only)"""
    return await _set_enabled(db, current_user, toggle.enabled, toggle.message)


@router.post("/admin/maintenance/enable", response_model=schemas.MaintenanceSettings)
async def enable_maintenance(
    message: Optional[str] = None,
    current_user: models.User = Security(get_current_active_admin),
    db: Session = Depends(get_db)
):
    """Enable maintenance mode (admin only)"""
    return await _set_enabled(db, current_user, True, message)


@router.post("/admin/maintenance/disable", response_model=schemas.MaintenanceSettings)
async def disable_maintenance(
    current_user: models.User = Security(get_current_active_admin),
    db: Session = Depends(get_db)
):
    """Disable maintenance mode (admin only)"""
    if crud.get_maintenance_settings(db) is None:
        raise HTTPException(status_code=404, detail="Maintenance settings not found")
    return await _set_enabled(db, current_user, False)

# ============= NAVIGATION SESSIONS =============

def verdict_message(session: NavigationSession, guard: MaintenanceGuard, reason: Optional[str] = None) -> dict:
    message = {
        "type": "verdict",
        "path": session.path,
        "state": session.state.value,
        "verdict": session.verdict.value if session.verdict else None,
    }
    if session.verdict == GateVerdict.SHOW_NOTICE:
        message["notice"] = notice_payload(guard.config or FALLBACK_CONFIG, guard.clock())
    if reason:
        message["reason"] = reason
    return message


@router.websocket("/maintenance/ws")
async def navigation_session(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    test_maintenance: Optional[str] = Query(None)
):
    """Gate verdicts for a client's navigations, pushed again when the settings change"""
    guard: MaintenanceGuard = websocket.app.state.maintenance_guard
    role = await run_in_threadpool(lookup_role, token)
    actor = Actor(role=role, test_override_requested=parse_test_override(test_maintenance))

    await websocket.accept()

    pushes: asyncio.Queue = asyncio.Queue()
    session = NavigationSession(guard, actor, on_change=pushes.put_nowait)
    receive_task = None
    push_task = None

    try:
        while True:
            if receive_task is None:
                receive_task = asyncio.ensure_future(websocket.receive())
            if push_task is None:
                push_task = asyncio.ensure_future(pushes.get())

            done, _ = await asyncio.wait({receive_task, push_task}, return_when=asyncio.FIRST_COMPLETED)

            if push_task in done:
                push_task = None
                await websocket.send_json(verdict_message(session, guard, reason="settings_changed"))

            if receive_task in done:
                frame = receive_task.result()
                receive_task = None
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))

                raw = frame.get("text")
                if raw is None:
                    await websocket.send_json({"type": "error", "detail": "Navigation messages must be text frames"})
                    continue
                if len(raw) > MAX_NAVIGATION_MESSAGE:
                    await websocket.send_json({"type": "error", "detail": "Navigation message too large"})
                    continue

                try:
                    navigation = NavigationMessage.model_validate(json.loads(raw))
                except (ValueError, RecursionError, ValidationError) as e:
                    await websocket.send_json({"type": "error", "detail": f"Invalid navigation message: {e}"})
                    continue

                session.navigate(navigation.path)
                if session.verdict is None:
                    await websocket.send_json(verdict_message(session, guard))
                    await guard.wait_ready()
                    session.navigate(navigation.path)
                await websocket.send_json(verdict_message(session, guard))
    except WebSocketDisconnect:
        logger.debug("Navigation session closed by client")
    finally:
        session.close()
        for task in (receive_task, push_task):
            if task is not None:
                task.cancel()
