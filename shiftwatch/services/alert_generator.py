from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shiftwatch.db import SessionLocal, atomic
from shiftwatch.models import (
    Alert,
    AlertReason,
    AlertSeverity,
    CheckInStatus,
    Checkin,
    Shift,
    ShiftStatus,
)
from shiftwatch.services.alerts import load_alert_payloads
from shiftwatch.services.attendance import get_attendance_for_shift
from shiftwatch.services.shift_state import mark_completed
from shiftwatch.services.shifts import lock_shift
from shiftwatch.services.windows import (
    checkin_windows,
    grace_deadline,
    is_slot_satisfied,
    normalize_ts,
)

logger = logging.getLogger("shiftwatch.alert_sweep")


def _existing_window_starts(session: Session, *, shift_id: int, reason: AlertReason) -> set[datetime]:
    rows = session.scalars(
        select(Alert.window_start).where(Alert.shift_id == shift_id, Alert.reason == reason)
    ).all()
    return {normalize_ts(value) for value in rows}


def _create_alert_if_needed(
    session: Session,
    *,
    shift: Shift,
    reason: AlertReason,
    severity: AlertSeverity,
    window_start: datetime,
    existing: set[datetime],
    now_utc: datetime,
) -> Alert | None:
    if window_start in existing:
        return None
    alert = Alert(
        shift_id=shift.id,
        site_id=shift.site_id,
        reason=reason,
        severity=severity,
        window_start=window_start,
        created_at=now_utc,
    )
    session.add(alert)
    existing.add(window_start)
    return alert


def _sweep_missing_attendance(session: Session, shift: Shift, now_utc: datetime) -> list[Alert]:
    if now_utc <= grace_deadline(shift):
        return []
    if get_attendance_for_shift(session, shift.id) is not None:
        return []
    alert = _create_alert_if_needed(
        session,
        shift=shift,
        reason=AlertReason.MISSED_ATTENDANCE,
        severity=AlertSeverity.CRITICAL,
        window_start=normalize_ts(shift.starts_at),
        existing=_existing_window_starts(session, shift_id=shift.id, reason=AlertReason.MISSED_ATTENDANCE),
        now_utc=now_utc,
    )
    return [alert] if alert is not None else []


def _sweep_in_progress_shift(session: Session, shift: Shift, now_utc: datetime) -> list[Alert]:
    # Check-ins start the shift without an attendance record; that is still a miss.
    created = _sweep_missing_attendance(session, shift, now_utc)
    attendance = get_attendance_for_shift(session, shift.id)
    monitoring_from = normalize_ts(attendance.recorded_at if attendance is not None else shift.starts_at)
    checkin_times = [
        normalize_ts(value)
        for value in session.scalars(select(Checkin.at).where(Checkin.shift_id == shift.id)).all()
    ]
    existing = _existing_window_starts(session, shift_id=shift.id, reason=AlertReason.MISSED_CHECKIN)

    windows = checkin_windows(shift)
    missed_checkins: list[Alert] = []
    for slot in windows:
        if slot.deadline > now_utc:
            break
        # Slots that closed before the guard showed up belong to the attendance alert.
        if slot.deadline <= monitoring_from:
            continue
        if is_slot_satisfied(slot, checkin_times):
            continue
        alert = _create_alert_if_needed(
            session,
            shift=shift,
            reason=AlertReason.MISSED_CHECKIN,
            severity=AlertSeverity.WARNING,
            window_start=slot.start,
            existing=existing,
            now_utc=now_utc,
        )
        if alert is not None:
            missed_checkins.append(alert)

    if missed_checkins:
        shift.missed_count = Shift.missed_count + len(missed_checkins)
        shift.check_in_status = CheckInStatus.MISSED

    last_slot = windows.last()
    if last_slot is None or last_slot.deadline <= now_utc:
        mark_completed(shift)
    return created + missed_checkins


def _sweep_shift(session: Session, shift_id: int, now_utc: datetime) -> list[int]:
    with atomic(session):
        shift = lock_shift(session, shift_id)
        status = ShiftStatus(shift.status)
        if status == ShiftStatus.SCHEDULED:
            created = _sweep_missing_attendance(session, shift, now_utc)
        elif status == ShiftStatus.IN_PROGRESS:
            created = _sweep_in_progress_shift(session, shift, now_utc)
        else:
            created = []
        session.flush()
        created_ids = [alert.id for alert in created]
    return created_ids


def sweep_missed_windows(now_utc: datetime, db: Session | None = None) -> list[dict[str, Any]]:
    """Raise alerts for missed attendance and missed check-in slots.

    Each shift is settled in its own transaction. Alerts are unique per
    ``(shift_id, reason, window_start)``, so a concurrent sweeper losing the
    race only rolls back that one shift. Returns the payloads of alerts
    created by this run, loaded after commit.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return sweep_missed_windows(now_utc, db=managed_db)

    session = db
    reference_utc = normalize_ts(now_utc)
    candidate_ids = session.scalars(
        select(Shift.id)
        .where(
            Shift.status.in_((ShiftStatus.SCHEDULED, ShiftStatus.IN_PROGRESS)),
            Shift.guard_id.is_not(None),
            Shift.starts_at <= reference_utc,
        )
        .order_by(Shift.starts_at.asc(), Shift.id.asc())
    ).all()
    session.rollback()

    created_ids: list[int] = []
    for shift_id in candidate_ids:
        try:
            created_ids.extend(_sweep_shift(session, shift_id, reference_utc))
        except IntegrityError:
            logger.warning(
                "alert_sweep_conflict",
                extra={"shift_id": shift_id},
            )
            continue

    if not created_ids:
        return []
    payloads = load_alert_payloads(session, created_ids)
    session.rollback()
    logger.info(
        "alert_sweep_completed",
        extra={"shift_count": len(candidate_ids), "created_alerts": len(created_ids)},
    )
    return payloads
