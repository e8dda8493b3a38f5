"""Check-in window arithmetic for a shift.

All functions are pure: they read ``starts_at``, ``ends_at``,
``required_checkin_interval_mins`` and ``grace_minutes`` from any shift-like
object and never touch storage. Naive datetimes are treated as UTC, which is
how some drivers hand back ``timestamptz`` values.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

WindowStatus = Literal["early", "open", "late", "completed", "ended"]


def normalize_ts(ts: datetime | None) -> datetime:
    if ts is None:
        return datetime.now(timezone.utc)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _interval(shift: Any) -> timedelta:
    minutes = int(shift.required_checkin_interval_mins)
    if minutes <= 0:
        raise ValueError(f"Shift {getattr(shift, 'id', '?')} has non-positive check-in interval: {minutes}")
    return timedelta(minutes=minutes)


def _grace(shift: Any) -> timedelta:
    minutes = int(shift.grace_minutes or 0)
    if minutes < 0:
        raise ValueError(f"Shift {getattr(shift, 'id', '?')} has negative grace minutes: {minutes}")
    return timedelta(minutes=minutes)


@dataclass(frozen=True, slots=True)
class CheckinSlot:
    index: int
    start: datetime
    end: datetime
    deadline: datetime

    def accepts(self, at: datetime) -> bool:
        """True when a check-in at ``at`` satisfies this slot."""
        moment = normalize_ts(at)
        return self.start <= moment < self.deadline


class CheckinWindows:
    """Slots ``starts_at + k * interval`` for every start before ``ends_at``.

    Iterating twice yields the same slots; nothing is precomputed.
    """

    def __init__(self, shift: Any) -> None:
        self._start = normalize_ts(shift.starts_at)
        self._end = normalize_ts(shift.ends_at)
        self._interval = _interval(shift)
        self._grace = _grace(shift)

    def __iter__(self) -> Iterator[CheckinSlot]:
        index = 0
        slot_start = self._start
        while slot_start < self._end:
            yield self._slot(index, slot_start)
            index += 1
            slot_start = self._start + index * self._interval

    def __len__(self) -> int:
        span = self._end - self._start
        if span <= timedelta(0):
            return 0
        full, remainder = divmod(span, self._interval)
        return full + (1 if remainder else 0)

    def _slot(self, index: int, slot_start: datetime) -> CheckinSlot:
        slot_end = slot_start + self._interval
        return CheckinSlot(
            index=index,
            start=slot_start,
            end=slot_end,
            deadline=slot_end + self._grace,
        )

    def slot_at(self, at: datetime) -> CheckinSlot | None:
        """The slot whose ``[start, end)`` contains ``at``, if any."""
        moment = normalize_ts(at)
        if moment < self._start or moment >= self._end:
            return None
        index = (moment - self._start) // self._interval
        return self._slot(index, self._start + index * self._interval)

    def last(self) -> CheckinSlot | None:
        count = len(self)
        if count == 0:
            return None
        index = count - 1
        return self._slot(index, self._start + index * self._interval)


def checkin_windows(shift: Any) -> CheckinWindows:
    return CheckinWindows(shift)


def grace_deadline(shift: Any) -> datetime:
    return normalize_ts(shift.starts_at) + _grace(shift)


def next_slot_start(alert: Any) -> datetime:
    """Start of the slot after the one the alert was raised for."""
    return normalize_ts(alert.window_start) + _interval(alert.shift)


def has_remaining_windows(alert: Any) -> bool:
    return next_slot_start(alert) < normalize_ts(alert.shift.ends_at)


def is_slot_satisfied(slot: CheckinSlot, checkin_times: Iterable[datetime]) -> bool:
    return any(slot.accepts(at) for at in checkin_times)


@dataclass(frozen=True, slots=True)
class CheckinWindow:
    status: WindowStatus
    slot: CheckinSlot | None
    next_due_at: datetime | None
    is_last_slot: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "slot_start": self.slot.start if self.slot is not None else None,
            "slot_deadline": self.slot.deadline if self.slot is not None else None,
            "next_due_at": self.next_due_at,
            "is_last_slot": self.is_last_slot,
        }


def evaluate_checkin_window(shift: Any, now: datetime) -> CheckinWindow:
    windows = checkin_windows(shift)
    moment = normalize_ts(now)
    starts_at = normalize_ts(shift.starts_at)
    ends_at = normalize_ts(shift.ends_at)
    grace = _grace(shift)

    if moment < starts_at:
        first = next(iter(windows), None)
        return CheckinWindow(status="early", slot=first, next_due_at=starts_at)

    slot = windows.slot_at(moment)
    if slot is None:
        return CheckinWindow(status="ended", slot=windows.last(), next_due_at=None, is_last_slot=True)

    is_last = slot.end >= ends_at
    next_due_at = None if is_last else slot.end
    last_heartbeat = getattr(shift, "last_heartbeat_at", None)
    if last_heartbeat is not None and slot.accepts(last_heartbeat):
        return CheckinWindow(status="completed", slot=slot, next_due_at=next_due_at, is_last_slot=is_last)
    if moment <= slot.start + grace:
        return CheckinWindow(status="open", slot=slot, next_due_at=next_due_at, is_last_slot=is_last)
    return CheckinWindow(status="late", slot=slot, next_due_at=next_due_at, is_last_slot=is_last)
