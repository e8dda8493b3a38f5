from __future__ import annotations

import unittest

from sqlalchemy import select

from shiftwatch.errors import ForbiddenError, ShiftClosedError
from shiftwatch.models import CheckInStatus, Checkin, ShiftStatus
from shiftwatch.services.checkins import record_checkin
from tests.support import DatabaseTestCase, at


class RecordCheckinTests(DatabaseTestCase):
    def _checkins(self, shift_id: int) -> list[Checkin]:
        return list(self.db.scalars(select(Checkin).where(Checkin.shift_id == shift_id).order_by(Checkin.at)).all())

    def test_checkin_within_grace_is_on_time_and_starts_shift(self) -> None:
        shift = self.add_shift()
        outcome = record_checkin(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 3))

        self.assertEqual(outcome.check_in_status, CheckInStatus.ON_TIME)
        self.assertEqual(outcome.shift_status, ShiftStatus.IN_PROGRESS)
        self.assertEqual(outcome.next_due_at, at(9))
        shift = self.reload(shift)
        self.assertEqual(shift.check_in_status, CheckInStatus.ON_TIME)
        self.assertSameInstant(shift.last_heartbeat_at, at(8, 3))

    def test_checkin_after_grace_is_late(self) -> None:
        shift = self.add_shift(status=ShiftStatus.IN_PROGRESS)
        outcome = record_checkin(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(10, 20))
        self.assertEqual(outcome.check_in_status, CheckInStatus.LATE)
        self.assertEqual(outcome.checkin.status, CheckInStatus.LATE)

    def test_repeat_checkin_in_satisfied_slot_keeps_status_and_is_logged(self) -> None:
        shift = self.add_shift(status=ShiftStatus.IN_PROGRESS)
        record_checkin(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 20))
        second = record_checkin(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(8, 40), source="nfc")

        self.assertEqual(second.check_in_status, CheckInStatus.LATE)
        rows = self._checkins(shift.id)
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[1].source, "nfc")
        self.assertSameInstant(self.reload(shift).last_heartbeat_at, at(8, 40))

    def test_checkin_does_not_clear_missed_count(self) -> None:
        shift = self.add_shift(status=ShiftStatus.IN_PROGRESS, missed_count=1)
        shift.check_in_status = CheckInStatus.MISSED
        self.db.commit()

        outcome = record_checkin(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(9, 2))

        self.assertEqual(outcome.check_in_status, CheckInStatus.ON_TIME)
        self.assertEqual(self.reload(shift).missed_count, 1)

    def test_checkin_before_start_is_refused(self) -> None:
        shift = self.add_shift()
        with self.assertRaises(ShiftClosedError):
            record_checkin(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(7, 59))
        self.assertEqual(self._checkins(shift.id), [])

    def test_checkin_in_trailing_grace_counts_for_last_slot(self) -> None:
        shift = self.add_shift(status=ShiftStatus.IN_PROGRESS)
        outcome = record_checkin(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(16, 3))
        self.assertIsNone(outcome.next_due_at)
        self.assertEqual(len(self._checkins(shift.id)), 1)

    def test_checkin_after_end_plus_grace_is_refused(self) -> None:
        shift = self.add_shift(status=ShiftStatus.IN_PROGRESS)
        with self.assertRaises(ShiftClosedError):
            record_checkin(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(16, 6))

    def test_checkin_on_terminal_shift_is_refused(self) -> None:
        shift = self.add_shift(status=ShiftStatus.COMPLETED)
        with self.assertRaises(ShiftClosedError):
            record_checkin(self.db, shift_id=shift.id, guard_id=self.guard.id, now=at(9))

    def test_unassigned_guard_is_forbidden(self) -> None:
        shift = self.add_shift(status=ShiftStatus.IN_PROGRESS)
        with self.assertRaises(ForbiddenError):
            record_checkin(self.db, shift_id=shift.id, guard_id=self.other_guard.id, now=at(9))


if __name__ == "__main__":
    unittest.main()
