from __future__ import annotations

import unittest
from types import SimpleNamespace

from shiftwatch.models import ShiftStatus
from shiftwatch.services.shift_state import (
    InvalidShiftTransition,
    can_transition,
    is_terminal,
    mark_completed,
    mark_missed,
    mark_started,
    transition,
)


def _shift(status: ShiftStatus):  # type: ignore[no-untyped-def]
    return SimpleNamespace(id=7, status=status)


class ShiftStateMachineTests(unittest.TestCase):
    def test_start_moves_scheduled_to_in_progress_once(self) -> None:
        shift = _shift(ShiftStatus.SCHEDULED)
        self.assertTrue(mark_started(shift))
        self.assertEqual(shift.status, ShiftStatus.IN_PROGRESS)
        self.assertFalse(mark_started(shift))
        self.assertEqual(shift.status, ShiftStatus.IN_PROGRESS)

    def test_scheduled_shift_can_be_missed_directly(self) -> None:
        shift = _shift(ShiftStatus.SCHEDULED)
        self.assertTrue(mark_missed(shift))
        self.assertEqual(shift.status, ShiftStatus.MISSED)

    def test_in_progress_can_complete(self) -> None:
        shift = _shift(ShiftStatus.IN_PROGRESS)
        self.assertTrue(mark_completed(shift))
        self.assertTrue(is_terminal(shift))

    def test_terminal_states_do_not_move(self) -> None:
        for status in (ShiftStatus.COMPLETED, ShiftStatus.MISSED):
            for target in ShiftStatus:
                self.assertFalse(can_transition(status, target))

    def test_illegal_transition_raises(self) -> None:
        shift = _shift(ShiftStatus.COMPLETED)
        with self.assertRaises(InvalidShiftTransition):
            transition(shift, ShiftStatus.IN_PROGRESS)
        self.assertEqual(shift.status, ShiftStatus.COMPLETED)

    def test_finishing_terminal_shift_is_skipped_and_logged(self) -> None:
        shift = _shift(ShiftStatus.MISSED)
        with self.assertLogs("shiftwatch.shift_state", level="WARNING") as captured:
            self.assertFalse(mark_completed(shift))
        self.assertEqual(shift.status, ShiftStatus.MISSED)
        self.assertIn("shift_transition_skipped", captured.output[0])

    def test_transition_is_logged(self) -> None:
        shift = _shift(ShiftStatus.IN_PROGRESS)
        with self.assertLogs("shiftwatch.shift_state", level="INFO") as captured:
            mark_missed(shift)
        self.assertIn("shift_status_changed", captured.output[0])


if __name__ == "__main__":
    unittest.main()
