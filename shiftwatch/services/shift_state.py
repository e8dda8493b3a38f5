from __future__ import annotations

import logging

from shiftwatch.models import Shift, ShiftStatus

logger = logging.getLogger("shiftwatch.shift_state")

TERMINAL_STATUSES = frozenset({ShiftStatus.COMPLETED, ShiftStatus.MISSED})
OPEN_STATUSES = frozenset({ShiftStatus.SCHEDULED, ShiftStatus.IN_PROGRESS})

_ALLOWED_TRANSITIONS: dict[ShiftStatus, frozenset[ShiftStatus]] = {
    ShiftStatus.SCHEDULED: frozenset({ShiftStatus.IN_PROGRESS, ShiftStatus.COMPLETED, ShiftStatus.MISSED}),
    ShiftStatus.IN_PROGRESS: frozenset({ShiftStatus.COMPLETED, ShiftStatus.MISSED}),
    ShiftStatus.COMPLETED: frozenset(),
    ShiftStatus.MISSED: frozenset(),
}


class InvalidShiftTransition(ValueError):
    def __init__(self, shift_id: int | None, current: ShiftStatus, target: ShiftStatus) -> None:
        super().__init__(f"Shift {shift_id}: illegal transition {current.value} -> {target.value}")
        self.shift_id = shift_id
        self.current = current
        self.target = target


def is_terminal(shift: Shift) -> bool:
    return ShiftStatus(shift.status) in TERMINAL_STATUSES


def can_transition(current: ShiftStatus, target: ShiftStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[ShiftStatus(current)]


def transition(shift: Shift, target: ShiftStatus) -> None:
    current = ShiftStatus(shift.status)
    if not can_transition(current, target):
        raise InvalidShiftTransition(shift.id, current, target)
    shift.status = target
    logger.info(
        "shift_status_changed",
        extra={"shift_id": shift.id, "from_status": current.value, "to_status": target.value},
    )


def mark_started(shift: Shift) -> bool:
    if ShiftStatus(shift.status) != ShiftStatus.SCHEDULED:
        return False
    transition(shift, ShiftStatus.IN_PROGRESS)
    return True


def _finish(shift: Shift, target: ShiftStatus) -> bool:
    if is_terminal(shift):
        logger.warning(
            "shift_transition_skipped",
            extra={"shift_id": shift.id, "status": ShiftStatus(shift.status).value, "target": target.value},
        )
        return False
    transition(shift, target)
    return True


def mark_completed(shift: Shift) -> bool:
    return _finish(shift, ShiftStatus.COMPLETED)


def mark_missed(shift: Shift) -> bool:
    return _finish(shift, ShiftStatus.MISSED)
