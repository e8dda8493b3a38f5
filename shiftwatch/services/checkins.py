from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from shiftwatch.db import atomic
from shiftwatch.errors import ShiftClosedError
from shiftwatch.models import CheckInStatus, Checkin, Shift, ShiftStatus
from shiftwatch.schemas import LocationMetadata, OtherMetadata
from shiftwatch.services.attendance import dump_metadata
from shiftwatch.services.shift_state import is_terminal, mark_started
from shiftwatch.services.shifts import ensure_assigned, lock_shift
from shiftwatch.services.windows import CheckinSlot, checkin_windows, normalize_ts

logger = logging.getLogger("shiftwatch.checkins")


@dataclass(frozen=True, slots=True)
class CheckinOutcome:
    checkin: Checkin
    shift_status: ShiftStatus
    check_in_status: CheckInStatus | None
    next_due_at: datetime | None


def _ensure_shift_accepts_checkins(shift: Shift, at: datetime) -> None:
    if is_terminal(shift):
        raise ShiftClosedError(message="Shift is already closed.")
    starts_at = normalize_ts(shift.starts_at)
    allowed_until = normalize_ts(shift.ends_at) + timedelta(minutes=int(shift.grace_minutes or 0))
    if at < starts_at or at > allowed_until:
        raise ShiftClosedError()


def _slot_for(shift: Shift, at: datetime) -> CheckinSlot | None:
    windows = checkin_windows(shift)
    slot = windows.slot_at(at)
    if slot is None and at >= normalize_ts(shift.ends_at):
        return windows.last()
    return slot


def evaluate_checkin_status(shift: Shift, at: datetime) -> CheckInStatus:
    """Outcome of a check-in at ``at`` for the slot it falls into."""
    slot = _slot_for(shift, at)
    if slot is None:
        raise ValueError(f"Check-in at {at.isoformat()} falls outside shift {shift.id}")
    last_heartbeat = shift.last_heartbeat_at
    if last_heartbeat is not None and slot.accepts(last_heartbeat):
        # Slot already satisfied; a repeat check-in does not change its outcome.
        current = shift.check_in_status
        if current is not None and CheckInStatus(current) != CheckInStatus.MISSED:
            return CheckInStatus(current)
        return CheckInStatus.ON_TIME
    if at <= slot.start + timedelta(minutes=int(shift.grace_minutes or 0)):
        return CheckInStatus.ON_TIME
    return CheckInStatus.LATE


def record_checkin(
    db: Session,
    *,
    shift_id: int,
    guard_id: int,
    now: datetime,
    source: str = "api",
    metadata: LocationMetadata | OtherMetadata | None = None,
) -> CheckinOutcome:
    at = normalize_ts(now)
    with atomic(db):
        shift = lock_shift(db, shift_id)
        ensure_assigned(shift, guard_id)
        _ensure_shift_accepts_checkins(shift, at)

        status = evaluate_checkin_status(shift, at)
        checkin = Checkin(
            shift_id=shift.id,
            guard_id=guard_id,
            at=at,
            status=status,
            source=(source or "api").strip() or "api",
            meta=dump_metadata(metadata),
        )
        db.add(checkin)
        # missed_count is left alone: a late check-in never clears a recorded miss.
        shift.check_in_status = status
        shift.last_heartbeat_at = at
        mark_started(shift)
        db.flush()

        slot = _slot_for(shift, at)
        ends_at = normalize_ts(shift.ends_at)
        next_due_at = slot.end if slot is not None and slot.end < ends_at else None
        outcome = CheckinOutcome(
            checkin=checkin,
            shift_status=ShiftStatus(shift.status),
            check_in_status=status,
            next_due_at=next_due_at,
        )

    logger.info(
        "checkin_recorded",
        extra={
            "shift_id": shift_id,
            "guard_id": guard_id,
            "checkin_id": outcome.checkin.id,
            "check_in_status": status.value,
            "source": outcome.checkin.source,
        },
    )
    return outcome
