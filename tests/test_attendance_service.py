from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from shiftwatch.errors import (
    AlreadyRecordedError,
    ForbiddenError,
    NotFoundError,
    ShiftClosedError,
    TransientError,
)
from shiftwatch.models import Attendance, AttendanceStatus, ShiftStatus
from shiftwatch.schemas import LocationMetadata
from shiftwatch.services.attendance import record_attendance
from tests.support import DatabaseTestCase, at


class RecordAttendanceTests(DatabaseTestCase):
    def _attendance_count(self, shift_id: int) -> int:
        return int(self.db.scalar(select(func.count(Attendance.id)).where(Attendance.shift_id == shift_id)) or 0)

    def test_recorded_at_grace_deadline_is_on_time(self) -> None:
        shift = self.add_shift()
        attendance = record_attendance(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 5))

        self.assertEqual(attendance.status, AttendanceStatus.ON_TIME)
        self.assertEqual(self.reload(shift).status, ShiftStatus.IN_PROGRESS)

    def test_one_second_after_grace_is_late(self) -> None:
        shift = self.add_shift()
        attendance = record_attendance(
            self.db,
            shift_id=shift.id,
            guard_id=self.guard.id,
            now=at(8, 5) + timedelta(seconds=1),
        )
        self.assertEqual(attendance.status, AttendanceStatus.LATE)

    def test_second_attempt_fails_without_duplicate(self) -> None:
        shift = self.add_shift()
        record_attendance(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 1))

        with self.assertRaises(AlreadyRecordedError):
            record_attendance(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 2))
        self.assertEqual(self._attendance_count(shift.id), 1)

    def test_concurrent_insert_is_rejected_by_unique_key(self) -> None:
        shift = self.add_shift()
        record_attendance(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 1))

        # The second caller read "no attendance" before the first committed.
        with patch("shiftwatch.services.attendance.get_attendance_for_shift", return_value=None):
            with self.assertRaises(AlreadyRecordedError):
                record_attendance(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 2))

        self.assertEqual(self._attendance_count(shift.id), 1)
        self.assertEqual(self.reload(shift).status, ShiftStatus.IN_PROGRESS)

    def test_storage_failure_is_transient_and_leaves_nothing_behind(self) -> None:
        shift = self.add_shift()
        failure = OperationalError("INSERT INTO attendances", {}, Exception("server closed the connection"))

        with patch.object(self.db, "flush", side_effect=failure):
            with self.assertLogs("shiftwatch.db", level="WARNING"):
                with self.assertRaises(TransientError):
                    record_attendance(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 1))

        self.assertEqual(self._attendance_count(shift.id), 0)
        self.assertEqual(self.reload(shift).status, ShiftStatus.SCHEDULED)
        # Nothing was applied, so a retry goes through.
        record_attendance(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 2))
        self.assertEqual(self._attendance_count(shift.id), 1)

    def test_guard_must_be_assigned(self) -> None:
        shift = self.add_shift()
        with self.assertRaises(ForbiddenError):
            record_attendance(self.db, shift_id=shift.id, guard_id=self.other_guard.id, now=at(8, 1))
        self.assertEqual(self._attendance_count(shift.id), 0)

    def test_unknown_shift(self) -> None:
        with self.assertRaises(NotFoundError):
            record_attendance(self.db, shift_id=9999, guard_id=self.guard.id, now=at(8, 1))

    def test_closed_shift_is_refused(self) -> None:
        shift = self.add_shift(status=ShiftStatus.MISSED)
        with self.assertRaises(ShiftClosedError):
            record_attendance(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 1))

    def test_location_metadata_is_stored_tagged(self) -> None:
        shift = self.add_shift()
        attendance = record_attendance(
            self.db,
            shift_id=shift.id,
            guard_id=self.guard.id,
            now=at(8, 1),
            metadata=LocationMetadata(lat=41.01, lng=28.97, accuracy_m=12),
        )
        stored = self.attendance_for(shift)
        self.assertIsNotNone(stored)
        self.assertEqual(stored.meta, {"kind": "location", "lat": 41.01, "lng": 28.97, "accuracy_m": 12.0})
        self.assertEqual(attendance.id, stored.id)  # type: ignore[union-attr]


if __name__ == "__main__":
    unittest.main()
