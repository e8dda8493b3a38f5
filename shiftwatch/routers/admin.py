import asyncio
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from shiftwatch.audit import client_ip, log_audit
from shiftwatch.db import get_db
from shiftwatch.errors import UnauthorizedError
from shiftwatch.models import Admin, AuditActorType
from shiftwatch.schemas import (
    AdminLoginRequest,
    AlertRead,
    AlertResolveRequest,
    LogoutResponse,
    TokenResponse,
)
from shiftwatch.security import (
    create_access_token,
    ensure_login_attempt_allowed,
    principal_id,
    register_login_failure,
    register_login_success,
    require_admin,
    require_admin_stream,
    verify_password,
)
from shiftwatch.services.alerts import (
    acknowledge_alert,
    list_open_alerts,
    open_alert_payloads,
    resolve_alert,
    serialize_alert,
)
from shiftwatch.services.fanout import (
    ALL_ALERTS_TOPIC,
    NotificationFanout,
    alert_event_stream,
    get_notification_fanout,
    site_topic,
)
from shiftwatch.services.session_versions import PrincipalKind, SessionVersionGuard, get_session_version_guard

router = APIRouter(prefix="/api/admin", tags=["admin"])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _login_admin(
    db: Session,
    request: Request,
    payload: AdminLoginRequest,
    version_guard: SessionVersionGuard,
) -> tuple[int, int]:
    ip = client_ip(request) or "unknown"
    ensure_login_attempt_allowed(ip)
    email = payload.email.strip().lower()
    admin = db.scalar(select(Admin).where(func.lower(Admin.email) == email))
    if admin is None or not admin.is_active or not verify_password(payload.password, admin.password_hash):
        register_login_failure(ip)
        log_audit(
            db,
            request,
            actor_type=AuditActorType.ADMIN,
            actor_id=email,
            action="ADMIN_LOGIN_FAIL",
            success=False,
        )
        raise UnauthorizedError(code="INVALID_CREDENTIALS", message="Invalid email or password.")

    register_login_success(ip)
    new_version = version_guard.bump_version(db, PrincipalKind.ADMIN, admin.id)
    log_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(admin.id),
        action="ADMIN_LOGIN_SUCCESS",
        success=True,
        details={"token_version": new_version},
    )
    return admin.id, new_version


@router.post("/auth/login", response_model=TokenResponse)
async def admin_login(
    payload: AdminLoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    version_guard: SessionVersionGuard = Depends(get_session_version_guard),
) -> TokenResponse:
    admin_id, new_version = await asyncio.to_thread(_login_admin, db, request, payload, version_guard)
    token, expires_in, _ = create_access_token(
        kind=PrincipalKind.ADMIN,
        principal_id=admin_id,
        token_version=new_version,
    )
    return TokenResponse(access_token=token, expires_in=expires_in, token_version=new_version)


@router.post("/auth/logout", response_model=LogoutResponse)
def admin_logout(
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
    version_guard: SessionVersionGuard = Depends(get_session_version_guard),
) -> LogoutResponse:
    admin_id = principal_id(claims)
    version_guard.bump_version(db, PrincipalKind.ADMIN, admin_id)
    log_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(admin_id),
        action="ADMIN_LOGOUT",
        success=True,
    )
    return LogoutResponse()


@router.get("/alerts", response_model=list[AlertRead])
def get_open_alerts(
    site_id: int | None = Query(default=None, ge=1),
    _claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[AlertRead]:
    return [AlertRead.model_validate(alert) for alert in list_open_alerts(db, site_id=site_id)]


def _acknowledge(db: Session, request: Request, *, alert_id: int, admin_id: int) -> dict[str, Any]:
    alert = acknowledge_alert(db, alert_id=alert_id, admin_id=admin_id, now=datetime.now(timezone.utc))
    payload = serialize_alert(alert)
    log_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(admin_id),
        action="ALERT_ACKNOWLEDGED",
        success=True,
        entity_type="alert",
        entity_id=str(alert_id),
    )
    return payload


def _resolve(
    db: Session,
    request: Request,
    *,
    alert_id: int,
    admin_id: int,
    body: AlertResolveRequest,
) -> dict[str, Any]:
    alert = resolve_alert(
        db,
        alert_id=alert_id,
        admin_id=admin_id,
        outcome=body.outcome,
        note=body.note,
        now=datetime.now(timezone.utc),
    )
    payload = serialize_alert(alert)
    log_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(admin_id),
        action="ALERT_FORGIVEN" if body.outcome == "forgive" else "ALERT_RESOLVED",
        success=True,
        entity_type="alert",
        entity_id=str(alert_id),
        details={"shift_id": payload["shift_id"], "shift_status": payload["shift"]["status"]},
    )
    return payload


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertRead)
async def post_acknowledge_alert(
    alert_id: int,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> dict[str, Any]:
    payload = await asyncio.to_thread(_acknowledge, db, request, alert_id=alert_id, admin_id=principal_id(claims))
    await fanout.publish_alert("alert_updated", payload)
    return payload


@router.post("/alerts/{alert_id}/resolve", response_model=AlertRead)
async def post_resolve_alert(
    alert_id: int,
    body: AlertResolveRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> dict[str, Any]:
    payload = await asyncio.to_thread(
        _resolve,
        db,
        request,
        alert_id=alert_id,
        admin_id=principal_id(claims),
        body=body,
    )
    # Published only after the resolution committed.
    await fanout.publish_alert("alert_updated", payload)
    return payload


@router.get("/alerts/stream")
async def stream_alerts(
    request: Request,
    site_id: int | None = Query(default=None, ge=1),
    _claims: dict[str, Any] = Depends(require_admin_stream),
    db: Session = Depends(get_db),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> StreamingResponse:
    db.close()
    topic = site_topic(site_id) if site_id is not None else ALL_ALERTS_TOPIC

    async def load_backfill() -> list[dict[str, Any]]:
        return await asyncio.to_thread(open_alert_payloads, site_id)

    return StreamingResponse(
        alert_event_stream(
            fanout,
            topic=topic,
            load_backfill=load_backfill,
            disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
