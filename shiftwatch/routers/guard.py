import asyncio
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from shiftwatch.audit import client_ip, log_audit
from shiftwatch.db import get_db
from shiftwatch.errors import UnauthorizedError
from shiftwatch.models import AuditActorType, Guard
from shiftwatch.schemas import (
    ActiveShiftResponse,
    AttendanceCreateRequest,
    AttendanceRead,
    CheckinActionResponse,
    CheckinCreateRequest,
    CheckinRead,
    CheckinWindowRead,
    GuardLoginRequest,
    LogoutResponse,
    ShiftRead,
    TokenResponse,
)
from shiftwatch.security import (
    create_access_token,
    ensure_login_attempt_allowed,
    principal_id,
    register_login_failure,
    register_login_success,
    require_guard,
    require_guard_stream,
    verify_password,
)
from shiftwatch.services.attendance import record_attendance
from shiftwatch.services.checkins import record_checkin
from shiftwatch.services.fanout import NotificationFanout, get_notification_fanout, guard_session_stream
from shiftwatch.services.session_versions import PrincipalKind, SessionVersionGuard, get_session_version_guard
from shiftwatch.services.shifts import get_active_shift_for_guard

router = APIRouter(tags=["guard"])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _login_guard(
    db: Session,
    request: Request,
    payload: GuardLoginRequest,
    version_guard: SessionVersionGuard,
) -> tuple[int, int]:
    ip = client_ip(request) or "unknown"
    ensure_login_attempt_allowed(ip)
    guard = db.get(Guard, payload.guard_id)
    if guard is None or not guard.is_active or not verify_password(payload.password, guard.password_hash):
        register_login_failure(ip)
        log_audit(
            db,
            request,
            actor_type=AuditActorType.GUARD,
            actor_id=str(payload.guard_id),
            action="GUARD_LOGIN_FAIL",
            success=False,
        )
        raise UnauthorizedError(code="INVALID_CREDENTIALS", message="Invalid guard id or password.")

    register_login_success(ip)
    new_version = version_guard.bump_version(db, PrincipalKind.GUARD, guard.id)
    log_audit(
        db,
        request,
        actor_type=AuditActorType.GUARD,
        actor_id=str(guard.id),
        action="GUARD_LOGIN_SUCCESS",
        success=True,
        details={"token_version": new_version},
    )
    return guard.id, new_version


@router.post("/api/guard/auth/login", response_model=TokenResponse)
async def guard_login(
    payload: GuardLoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    version_guard: SessionVersionGuard = Depends(get_session_version_guard),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> TokenResponse:
    guard_id, new_version = await asyncio.to_thread(_login_guard, db, request, payload, version_guard)
    token, expires_in, _ = create_access_token(
        kind=PrincipalKind.GUARD,
        principal_id=guard_id,
        token_version=new_version,
    )
    # Other devices holding an older version log themselves out.
    await fanout.publish_session_revoked(guard_id, new_version)
    return TokenResponse(access_token=token, expires_in=expires_in, token_version=new_version)


@router.post("/api/guard/auth/logout", response_model=LogoutResponse)
async def guard_logout(
    request: Request,
    claims: dict[str, Any] = Depends(require_guard),
    db: Session = Depends(get_db),
    version_guard: SessionVersionGuard = Depends(get_session_version_guard),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> LogoutResponse:
    guard_id = principal_id(claims)
    new_version = await asyncio.to_thread(version_guard.bump_version, db, PrincipalKind.GUARD, guard_id)
    await asyncio.to_thread(
        log_audit,
        db,
        request,
        actor_type=AuditActorType.GUARD,
        actor_id=str(guard_id),
        action="GUARD_LOGOUT",
        success=True,
    )
    await fanout.publish_session_revoked(guard_id, new_version)
    return LogoutResponse()


@router.get("/api/my/active-shift", response_model=ActiveShiftResponse)
def get_my_active_shift(
    claims: dict[str, Any] = Depends(require_guard),
    db: Session = Depends(get_db),
) -> ActiveShiftResponse:
    view = get_active_shift_for_guard(db, guard_id=principal_id(claims), now=datetime.now(timezone.utc))
    active_shift = view["active_shift"]
    attendance = view["attendance"]
    next_shift = view["next_shift"]
    window = view["checkin_window"]
    return ActiveShiftResponse(
        active_shift=ShiftRead.model_validate(active_shift) if active_shift is not None else None,
        attendance=AttendanceRead.model_validate(attendance) if attendance is not None else None,
        checkin_window=CheckinWindowRead(**window) if window is not None else None,
        next_shift=ShiftRead.model_validate(next_shift) if next_shift is not None else None,
    )


@router.post(
    "/api/shifts/{shift_id}/attendance",
    response_model=AttendanceRead,
    status_code=status.HTTP_201_CREATED,
)
def create_attendance(
    shift_id: int,
    request: Request,
    payload: AttendanceCreateRequest | None = None,
    claims: dict[str, Any] = Depends(require_guard),
    db: Session = Depends(get_db),
) -> AttendanceRead:
    attendance = record_attendance(
        db,
        shift_id=shift_id,
        guard_id=principal_id(claims),
        now=datetime.now(timezone.utc),
        metadata=payload.metadata if payload is not None else None,
    )
    request.state.shift_id = shift_id
    return AttendanceRead.model_validate(attendance)


@router.post(
    "/api/shifts/{shift_id}/checkin",
    response_model=CheckinActionResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_checkin(
    shift_id: int,
    request: Request,
    payload: CheckinCreateRequest | None = None,
    claims: dict[str, Any] = Depends(require_guard),
    db: Session = Depends(get_db),
) -> CheckinActionResponse:
    body = payload or CheckinCreateRequest()
    outcome = record_checkin(
        db,
        shift_id=shift_id,
        guard_id=principal_id(claims),
        now=datetime.now(timezone.utc),
        source=body.source,
        metadata=body.metadata,
    )
    request.state.shift_id = shift_id
    return CheckinActionResponse(
        checkin=CheckinRead.model_validate(outcome.checkin),
        shift_status=outcome.shift_status,
        check_in_status=outcome.check_in_status,
        next_due_at=outcome.next_due_at,
    )


@router.get("/api/guard/notifications/stream")
async def guard_notifications_stream(
    request: Request,
    claims: dict[str, Any] = Depends(require_guard_stream),
    db: Session = Depends(get_db),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> StreamingResponse:
    # The stream outlives the request scope; do not pin a pooled connection to it.
    db.close()
    return StreamingResponse(
        guard_session_stream(
            fanout,
            guard_id=principal_id(claims),
            token_version=int(claims["tv"]),
            disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
