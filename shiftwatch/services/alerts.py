from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Literal

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from shiftwatch.db import SessionLocal, atomic
from shiftwatch.errors import AlreadyResolvedError, NotFoundError
from shiftwatch.models import (
    Alert,
    AlertReason,
    AlertResolution,
    Attendance,
    AttendanceStatus,
    Shift,
    ShiftStatus,
)
from shiftwatch.schemas import AlertRead
from shiftwatch.services.attendance import get_attendance_for_shift
from shiftwatch.services.shift_state import mark_completed, mark_missed, mark_started
from shiftwatch.services.shifts import lock_shift
from shiftwatch.services.windows import has_remaining_windows, normalize_ts

logger = logging.getLogger("shiftwatch.alerts")

ResolutionOutcome = Literal["resolve", "forgive"]

FORGIVEN_ATTENDANCE_NOTE = "Auto-created via alert forgiveness"
ABSENT_ATTENDANCE_NOTE = "Auto-created via alert resolution (absent)"


def _alert_with_context():  # type: ignore[no-untyped-def]
    return select(Alert).options(
        selectinload(Alert.site),
        selectinload(Alert.ack_admin),
        selectinload(Alert.resolver_admin),
        selectinload(Alert.shift).selectinload(Shift.guard),
        selectinload(Alert.shift).selectinload(Shift.shift_type),
    )


def serialize_alert(alert: Alert) -> dict[str, Any]:
    return AlertRead.model_validate(alert).model_dump(mode="json")


def get_alert_with_context(db: Session, alert_id: int) -> Alert | None:
    return db.scalar(
        _alert_with_context()
        .where(Alert.id == alert_id)
        .execution_options(populate_existing=True)
    )


def list_open_alerts(db: Session, *, site_id: int | None = None) -> list[Alert]:
    statement = _alert_with_context().where(Alert.resolved_at.is_(None))
    if site_id is not None:
        statement = statement.where(Alert.site_id == site_id)
    return list(db.scalars(statement.order_by(Alert.created_at.desc(), Alert.id.desc())).all())


def open_alert_payloads(site_id: int | None = None, db: Session | None = None) -> list[dict[str, Any]]:
    """Backfill snapshot: unresolved alerts, newest first."""
    if db is None:
        with SessionLocal() as managed_db:
            return open_alert_payloads(site_id, db=managed_db)
    return [serialize_alert(alert) for alert in list_open_alerts(db, site_id=site_id)]


def load_alert_payloads(db: Session, alert_ids: Sequence[int]) -> list[dict[str, Any]]:
    if not alert_ids:
        return []
    rows = db.scalars(
        _alert_with_context()
        .where(Alert.id.in_(list(alert_ids)))
        .order_by(Alert.created_at.asc(), Alert.id.asc())
    ).all()
    return [serialize_alert(row) for row in rows]


def _backfill_attendance(
    db: Session,
    *,
    alert: Alert,
    shift: Shift,
    status: AttendanceStatus,
    note: str,
    now: datetime,
) -> Attendance:
    attendance = Attendance(
        shift_id=shift.id,
        guard_id=shift.guard_id,
        recorded_at=now,
        status=status,
        meta={"kind": "other", "data": {"note": note, "backfill": True, "alert_id": alert.id}},
    )
    db.add(attendance)
    db.flush()
    return attendance


def _forgive_missed_checkin(*, alert: Alert, shift: Shift) -> None:
    if shift.missed_count > 0:
        shift.missed_count = Shift.missed_count - 1
    if not has_remaining_windows(alert):
        mark_completed(shift)


def _forgive_missed_attendance(db: Session, *, alert: Alert, shift: Shift, now: datetime) -> None:
    if get_attendance_for_shift(db, shift.id) is not None:
        return
    _backfill_attendance(
        db,
        alert=alert,
        shift=shift,
        status=AttendanceStatus.LATE,
        note=FORGIVEN_ATTENDANCE_NOTE,
        now=now,
    )
    mark_started(shift)


def _resolve_missed_attendance(db: Session, *, alert: Alert, shift: Shift, now: datetime) -> None:
    if get_attendance_for_shift(db, shift.id) is not None:
        return
    _backfill_attendance(
        db,
        alert=alert,
        shift=shift,
        status=AttendanceStatus.ABSENT,
        note=ABSENT_ATTENDANCE_NOTE,
        now=now,
    )
    mark_missed(shift)


def _apply_side_effects(
    db: Session,
    *,
    alert: Alert,
    shift: Shift,
    outcome: ResolutionOutcome,
    now: datetime,
) -> None:
    reason = AlertReason(alert.reason)
    if outcome == "forgive":
        if reason == AlertReason.MISSED_CHECKIN:
            _forgive_missed_checkin(alert=alert, shift=shift)
        elif reason == AlertReason.MISSED_ATTENDANCE:
            _forgive_missed_attendance(db, alert=alert, shift=shift, now=now)
        else:
            raise ValueError(f"Unhandled alert reason: {reason!r}")
    elif outcome == "resolve":
        if reason == AlertReason.MISSED_ATTENDANCE:
            _resolve_missed_attendance(db, alert=alert, shift=shift, now=now)
        elif reason != AlertReason.MISSED_CHECKIN:
            raise ValueError(f"Unhandled alert reason: {reason!r}")
    else:
        raise ValueError(f"Unknown resolution outcome: {outcome!r}")


def resolve_alert(
    db: Session,
    *,
    alert_id: int,
    admin_id: int,
    outcome: ResolutionOutcome,
    note: str,
    now: datetime,
) -> Alert:
    """Resolve or forgive an alert and settle its shift in one transaction.

    Forgiving a missed check-in gives the slot back (``missed_count`` - 1) and
    closes the shift when no slot remains after it. Forgiving a missed
    attendance backfills a ``late`` attendance; resolving one backfills
    ``absent`` and marks the shift ``missed``. Resolving a missed check-in only
    stamps the alert.
    """
    if outcome not in ("resolve", "forgive"):
        raise ValueError(f"Unknown resolution outcome: {outcome!r}")
    resolved_at = normalize_ts(now)
    resolution_type = AlertResolution.FORGIVEN if outcome == "forgive" else AlertResolution.STANDARD

    with atomic(db):
        alert = db.scalar(
            select(Alert).where(Alert.id == alert_id).execution_options(populate_existing=True)
        )
        if alert is None:
            raise NotFoundError(code="ALERT_NOT_FOUND", message="Alert not found.")
        if alert.resolved_at is not None:
            raise AlreadyResolvedError()
        shift = lock_shift(db, alert.shift_id)

        stamped = db.execute(
            update(Alert)
            .where(Alert.id == alert.id, Alert.resolved_at.is_(None))
            .values(
                resolved_at=resolved_at,
                resolved_by_id=admin_id,
                resolution_type=resolution_type,
                resolution_note=note,
            )
            .execution_options(synchronize_session=False)
        )
        if stamped.rowcount != 1:
            # Another admin resolved it between our read and the stamp.
            raise AlreadyResolvedError()

        _apply_side_effects(db, alert=alert, shift=shift, outcome=outcome, now=resolved_at)
        db.flush()
        resolved = get_alert_with_context(db, alert.id)
        if resolved is None:
            raise NotFoundError(code="ALERT_NOT_FOUND", message="Alert not found.")

    logger.info(
        "alert_resolved",
        extra={
            "alert_id": alert_id,
            "shift_id": resolved.shift_id,
            "admin_id": admin_id,
            "reason": AlertReason(resolved.reason).value,
            "resolution_type": resolution_type.value,
            "shift_status": ShiftStatus(resolved.shift.status).value,
        },
    )
    return resolved


def acknowledge_alert(db: Session, *, alert_id: int, admin_id: int, now: datetime) -> Alert:
    """Stamp the first acknowledgement. Resolved alerts may still be acknowledged."""
    with atomic(db):
        alert = db.scalar(
            select(Alert).where(Alert.id == alert_id).execution_options(populate_existing=True)
        )
        if alert is None:
            raise NotFoundError(code="ALERT_NOT_FOUND", message="Alert not found.")
        db.execute(
            update(Alert)
            .where(Alert.id == alert.id, Alert.acknowledged_at.is_(None))
            .values(acknowledged_at=normalize_ts(now), acknowledged_by_id=admin_id)
            .execution_options(synchronize_session=False)
        )
        acknowledged = get_alert_with_context(db, alert.id)
        if acknowledged is None:
            raise NotFoundError(code="ALERT_NOT_FOUND", message="Alert not found.")

    logger.info(
        "alert_acknowledged",
        extra={
            "alert_id": alert_id,
            "admin_id": admin_id,
            "acknowledged_by_id": acknowledged.acknowledged_by_id,
        },
    )
    return acknowledged
