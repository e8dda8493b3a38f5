from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from shiftwatch.errors import ForbiddenError, NotFoundError
from shiftwatch.models import Shift, ShiftStatus
from shiftwatch.services.windows import evaluate_checkin_window, normalize_ts

ACTIVE_SHIFT_LEAD_TIME = timedelta(minutes=5)


def lock_shift(db: Session, shift_id: int) -> Shift:
    shift = db.scalar(
        select(Shift)
        .where(Shift.id == shift_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if shift is None:
        raise NotFoundError(code="SHIFT_NOT_FOUND", message="Shift not found.")
    return shift


def ensure_assigned(shift: Shift, guard_id: int) -> None:
    if shift.guard_id != guard_id:
        raise ForbiddenError(code="SHIFT_NOT_ASSIGNED", message="Not assigned to this shift.")


def _guard_shift_query(guard_id: int):  # type: ignore[no-untyped-def]
    return select(Shift).options(
        selectinload(Shift.site),
        selectinload(Shift.shift_type),
        selectinload(Shift.guard),
        selectinload(Shift.attendance),
    ).where(Shift.guard_id == guard_id)


def get_active_shift_for_guard(db: Session, *, guard_id: int, now: datetime) -> dict[str, Any]:
    reference = normalize_ts(now)
    active_shift = db.scalar(
        _guard_shift_query(guard_id)
        .where(
            Shift.status.in_((ShiftStatus.SCHEDULED, ShiftStatus.IN_PROGRESS)),
            Shift.starts_at <= reference + ACTIVE_SHIFT_LEAD_TIME,
            Shift.ends_at >= reference,
        )
        .order_by(Shift.starts_at.asc(), Shift.id.asc())
    )
    next_shift_query = _guard_shift_query(guard_id).where(
        Shift.status == ShiftStatus.SCHEDULED,
        Shift.starts_at > reference,
    )
    if active_shift is not None:
        next_shift_query = next_shift_query.where(Shift.id != active_shift.id)
    next_shift = db.scalar(next_shift_query.order_by(Shift.starts_at.asc(), Shift.id.asc()))

    window = evaluate_checkin_window(active_shift, reference) if active_shift is not None else None
    return {
        "active_shift": active_shift,
        "attendance": active_shift.attendance if active_shift is not None else None,
        "checkin_window": window.to_dict() if window is not None else None,
        "next_shift": next_shift,
    }
