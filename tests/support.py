from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shiftwatch.db import Base
from shiftwatch.models import (
    Admin,
    Alert,
    AlertReason,
    AlertSeverity,
    Attendance,
    AttendanceStatus,
    Checkin,
    CheckInStatus,
    Guard,
    Shift,
    ShiftStatus,
    ShiftType,
    Site,
)
from shiftwatch.services.windows import normalize_ts

SHIFT_START = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, second: int = 0) -> datetime:
    return SHIFT_START.replace(hour=hour, minute=minute, second=second)


class DatabaseTestCase(unittest.TestCase):
    """In-memory SQLite schema with one site, shift type, guard and admin."""

    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self.db: Session = self.session_factory()

        self.site = Site(name="North Gate")
        self.other_site = Site(name="Harbour Yard")
        self.shift_type = ShiftType(name="Day")
        self.guard = Guard(name="Ayse Demir", phone="+905550000001")
        self.other_guard = Guard(name="Mert Kaya")
        self.admin = Admin(email="ops@example.com", name="Ops Lead", password_hash="unused")
        self.db.add_all([self.site, self.other_site, self.shift_type, self.guard, self.other_guard, self.admin])
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def add_shift(
        self,
        *,
        starts_at: datetime = SHIFT_START,
        hours: float = 8,
        interval: int = 60,
        grace: int = 5,
        status: ShiftStatus = ShiftStatus.SCHEDULED,
        guard: Guard | None | bool = True,
        site: Site | None = None,
        missed_count: int = 0,
    ) -> Shift:
        assigned = self.guard if guard is True else (guard or None)
        shift = Shift(
            site_id=(site or self.site).id,
            shift_type_id=self.shift_type.id,
            guard_id=assigned.id if assigned is not None else None,
            shift_date=starts_at.date(),
            starts_at=starts_at,
            ends_at=starts_at + timedelta(hours=hours),
            required_checkin_interval_mins=interval,
            grace_minutes=grace,
            status=status,
            missed_count=missed_count,
        )
        self.db.add(shift)
        self.db.commit()
        return shift

    def add_attendance(
        self,
        shift: Shift,
        *,
        recorded_at: datetime,
        status: AttendanceStatus = AttendanceStatus.ON_TIME,
    ) -> Attendance:
        attendance = Attendance(
            shift_id=shift.id,
            guard_id=shift.guard_id,
            recorded_at=recorded_at,
            status=status,
        )
        self.db.add(attendance)
        self.db.commit()
        return attendance

    def add_checkin(self, shift: Shift, *, when: datetime) -> Checkin:
        checkin = Checkin(
            shift_id=shift.id,
            guard_id=shift.guard_id,
            at=when,
            status=CheckInStatus.ON_TIME,
            source="test",
        )
        self.db.add(checkin)
        self.db.commit()
        return checkin

    def add_alert(
        self,
        shift: Shift,
        *,
        reason: AlertReason,
        window_start: datetime,
        created_at: datetime | None = None,
        resolved_at: datetime | None = None,
    ) -> Alert:
        alert = Alert(
            shift_id=shift.id,
            site_id=shift.site_id,
            reason=reason,
            severity=AlertSeverity.CRITICAL if reason == AlertReason.MISSED_ATTENDANCE else AlertSeverity.WARNING,
            window_start=window_start,
            created_at=created_at or window_start,
            resolved_at=resolved_at,
        )
        self.db.add(alert)
        self.db.commit()
        return alert

    def reload(self, obj: Any) -> Any:
        self.db.refresh(obj)
        return obj

    def attendance_for(self, shift: Shift) -> Attendance | None:
        return self.db.scalar(
            select(Attendance).where(Attendance.shift_id == shift.id).execution_options(populate_existing=True)
        )

    def assertSameInstant(self, first: datetime | None, second: datetime | None) -> None:
        self.assertIsNotNone(first)
        self.assertIsNotNone(second)
        self.assertEqual(normalize_ts(first), normalize_ts(second))
