from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shiftwatch.db import atomic
from shiftwatch.errors import AlreadyRecordedError, ShiftClosedError
from shiftwatch.models import Attendance, AttendanceStatus, Shift
from shiftwatch.schemas import LocationMetadata, OtherMetadata
from shiftwatch.services.shift_state import is_terminal, mark_started
from shiftwatch.services.shifts import ensure_assigned, lock_shift
from shiftwatch.services.windows import grace_deadline, normalize_ts

logger = logging.getLogger("shiftwatch.attendance")


def get_attendance_for_shift(db: Session, shift_id: int) -> Attendance | None:
    return db.scalar(select(Attendance).where(Attendance.shift_id == shift_id))


def attendance_status_for(shift: Shift, recorded_at: datetime) -> AttendanceStatus:
    if normalize_ts(recorded_at) <= grace_deadline(shift):
        return AttendanceStatus.ON_TIME
    return AttendanceStatus.LATE


def dump_metadata(metadata: LocationMetadata | OtherMetadata | None) -> dict[str, Any] | None:
    if metadata is None:
        return None
    return metadata.model_dump(mode="json")


def record_attendance(
    db: Session,
    *,
    shift_id: int,
    guard_id: int,
    now: datetime,
    metadata: LocationMetadata | OtherMetadata | None = None,
) -> Attendance:
    recorded_at = normalize_ts(now)
    try:
        with atomic(db):
            shift = lock_shift(db, shift_id)
            ensure_assigned(shift, guard_id)
            if get_attendance_for_shift(db, shift.id) is not None:
                raise AlreadyRecordedError()
            if is_terminal(shift):
                raise ShiftClosedError(message="Shift is already closed.")

            attendance = Attendance(
                shift_id=shift.id,
                guard_id=guard_id,
                recorded_at=recorded_at,
                status=attendance_status_for(shift, recorded_at),
                meta=dump_metadata(metadata),
            )
            db.add(attendance)
            # Unique key on shift_id rejects a concurrent insert here.
            db.flush()
            mark_started(shift)
    except IntegrityError as exc:
        logger.info(
            "attendance_duplicate_rejected",
            extra={"shift_id": shift_id, "guard_id": guard_id},
        )
        raise AlreadyRecordedError() from exc

    logger.info(
        "attendance_recorded",
        extra={
            "shift_id": shift_id,
            "guard_id": guard_id,
            "attendance_id": attendance.id,
            "attendance_status": attendance.status.value,
        },
    )
    return attendance
