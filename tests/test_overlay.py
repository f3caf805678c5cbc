# Chronicle
# Copyright (C) 2024 The Chronicle developers
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; version 3
# of the License or (at your option) any later version of
# the License.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston,
# MA  02110-1301, USA.

"""Tests for chronicle.overlay."""

import unittest
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from chronicle.model import PARTSTAT_ACCEPTED, Alarm, EventFields, Participant
from chronicle.overlay import (
    ChangeException,
    ConflictingOverrideError,
    DeleteException,
    OrphanedRecurrenceIDError,
    Series,
    SlotState,
    TooManyInstances,
    apply_change_exception,
    apply_delete_exception,
    build_overrides,
    get_occurrence,
    materialize,
    rebase_overrides,
)
from chronicle.recurrence import RecurrenceRule

BERLIN = ZoneInfo("Europe/Berlin")
ALICE = "mailto:alice@example.com"
BOB = "mailto:bob@example.com"

START = datetime(2024, 1, 1, tzinfo=BERLIN)
END = datetime(2024, 2, 1, tzinfo=BERLIN)


def berlin(day, hour=10, minute=0):
    return datetime(2024, 1, day, hour, minute, tzinfo=BERLIN)


def make_series(rule="FREQ=DAILY;COUNT=10"):
    master = EventFields(
        summary="Standup",
        start=berlin(1),
        end=berlin(1, 11),
        organizer=ALICE,
        participants=[Participant(BOB)],
    )
    return Series(
        "standup",
        ALICE,
        master,
        RecurrenceRule.parse(rule) if rule else None,
        "Europe/Berlin",
    )


class MaterializeTests(unittest.TestCase):
    def test_inherited(self):
        series = make_series()
        occurrences = materialize(series, START, END)
        self.assertEqual(10, len(occurrences))
        self.assertFalse(any(o.overridden for o in occurrences))
        self.assertEqual(berlin(3), occurrences[2].recurrence_id)
        self.assertEqual(berlin(3, 11), occurrences[2].end)
        self.assertEqual("Standup", occurrences[2].summary)

    def test_window(self):
        series = make_series()
        occurrences = materialize(series, berlin(3, 10, 30), berlin(3, 10, 45))
        self.assertEqual([berlin(3)], [o.recurrence_id for o in occurrences])

    def test_single(self):
        series = make_series(rule=None)
        occurrences = materialize(series, START, END)
        self.assertEqual(1, len(occurrences))
        self.assertIsNone(occurrences[0].recurrence_id)
        self.assertEqual([], materialize(series, berlin(2), END))

    def test_change_exception(self):
        series = make_series()
        apply_change_exception(
            series, berlin(3), {"start": berlin(3, 12), "end": berlin(3, 13)}
        )
        occurrences = materialize(series, START, END)
        self.assertEqual(10, len(occurrences))
        self.assertEqual(berlin(3, 12), occurrences[2].start)
        self.assertEqual(berlin(3), occurrences[2].recurrence_id)
        self.assertTrue(occurrences[2].overridden)
        self.assertEqual("Standup", occurrences[2].summary)
        self.assertEqual("20240103T090000Z", occurrences[2].recurrence_name)

    def test_change_exception_merges_by_presence(self):
        series = make_series()
        apply_change_exception(series, berlin(3), {"start": berlin(3, 12), "end": berlin(3, 13)})
        apply_change_exception(series, berlin(3), {"summary": "Moved"})
        occurrence = get_occurrence(series, berlin(3))
        self.assertEqual("Moved", occurrence.summary)
        self.assertEqual(berlin(3, 12), occurrence.start)

    def test_ordered_by_effective_start(self):
        series = make_series()
        apply_change_exception(
            series, berlin(3), {"start": berlin(5, 9), "end": berlin(5, 9, 30)}
        )
        occurrences = materialize(series, START, END)
        self.assertEqual(
            [berlin(1), berlin(2), berlin(4), berlin(3), berlin(5)],
            [o.recurrence_id for o in occurrences[:5]],
        )

    def test_moved_into_window(self):
        series = make_series()
        apply_change_exception(
            series, berlin(1), {"start": berlin(20), "end": berlin(20, 11)}
        )
        occurrences = materialize(series, berlin(15), berlin(25))
        self.assertEqual([berlin(1)], [o.recurrence_id for o in occurrences])
        self.assertEqual(berlin(20), occurrences[0].start)

    def test_moved_out_of_window(self):
        series = make_series()
        apply_change_exception(
            series, berlin(3), {"start": berlin(20), "end": berlin(20, 11)}
        )
        self.assertEqual([], materialize(series, berlin(3), berlin(4)))

    def test_delete_exception(self):
        series = make_series()
        apply_delete_exception(series, berlin(3))
        occurrences = materialize(series, START, END)
        self.assertEqual(9, len(occurrences))
        self.assertNotIn(berlin(3), [o.recurrence_id for o in occurrences])
        self.assertIsNone(get_occurrence(series, berlin(3)))

    def test_delete_at_anchor_keeps_rule(self):
        series = make_series()
        rule = series.rule
        apply_delete_exception(series, berlin(1))
        self.assertEqual(rule, series.rule)
        self.assertEqual(berlin(1), series.master.start)
        self.assertEqual(9, len(materialize(series, START, END)))
        self.assertEqual([berlin(1)], series.suppressed())

    def test_delete_last_occurrence(self):
        series = make_series("FREQ=DAILY;COUNT=1")
        apply_delete_exception(series, berlin(1))
        self.assertEqual([], materialize(series, START, END))

    def test_change_replaced_by_delete(self):
        series = make_series()
        apply_change_exception(series, berlin(3), {"summary": "Special"})
        apply_delete_exception(series, berlin(3))
        self.assertEqual([], series.change_exceptions())
        self.assertEqual(9, len(materialize(series, START, END)))

    def test_reinstantiate(self):
        series = make_series()
        apply_delete_exception(series, berlin(3))
        with self.assertLogs("chronicle.overlay", level="WARNING"):
            apply_change_exception(series, berlin(3), {"summary": "Back"})
        occurrences = materialize(series, START, END)
        self.assertEqual(10, len(occurrences))
        self.assertEqual("Back", occurrences[2].summary)

    def test_orphaned(self):
        series = make_series()
        with self.assertRaises(OrphanedRecurrenceIDError) as cm:
            apply_change_exception(series, berlin(3, 11), {"summary": "x"})
        self.assertEqual("ORPHANED_RECURRENCE_ID", cm.exception.reason)
        self.assertRaises(
            OrphanedRecurrenceIDError, apply_delete_exception, series, berlin(11)
        )
        self.assertEqual({}, series.overrides)

    def test_address_in_other_timezone(self):
        series = make_series()
        apply_delete_exception(series, datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc))
        self.assertIsInstance(series.find_override(berlin(3)), DeleteException)

    def test_too_many(self):
        series = make_series("FREQ=DAILY")
        self.assertRaises(
            TooManyInstances, materialize, series, START, START + timedelta(days=30), 5
        )

    def test_all_day(self):
        master = EventFields(summary="Holiday", start=date(2024, 1, 1), end=date(2024, 1, 2))
        series = Series(
            "holiday", ALICE, master, RecurrenceRule.parse("FREQ=WEEKLY;COUNT=3"), "UTC"
        )
        occurrences = materialize(
            series,
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            datetime(2024, 2, 1, tzinfo=timezone.utc),
        )
        self.assertEqual(
            [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15)],
            [o.recurrence_id for o in occurrences],
        )
        self.assertEqual(date(2024, 1, 9), occurrences[1].end)

    def test_copy_is_independent(self):
        series = make_series()
        copy = series.copy()
        apply_change_exception(copy, berlin(3), {"summary": "Copy"})
        copy.master.participants[0].partstat = "ACCEPTED"
        self.assertEqual({}, series.overrides)
        self.assertEqual("NEEDS-ACTION", series.master.participants[0].partstat)


class BuildOverridesTests(unittest.TestCase):
    def test_build(self):
        series = make_series()
        fields = series.nominal_fields(berlin(3))
        fields.summary = "Special"
        overrides = build_overrides(series, [(berlin(3), fields)], [berlin(5)])
        self.assertEqual(2, len(overrides))
        self.assertEqual(
            [ChangeException, DeleteException],
            [type(o) for (k, o) in sorted(overrides.items())],
        )

    def test_duplicate_exception(self):
        series = make_series()
        fields = series.nominal_fields(berlin(3))
        self.assertRaises(
            ConflictingOverrideError,
            build_overrides,
            series,
            [(berlin(3), fields), (datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc), fields)],
        )

    def test_exception_and_exdate(self):
        series = make_series()
        fields = series.nominal_fields(berlin(3))
        self.assertRaises(
            ConflictingOverrideError,
            build_overrides,
            series,
            [(berlin(3), fields)],
            [berlin(3)],
        )

    def test_orphan(self):
        series = make_series()
        self.assertRaises(
            OrphanedRecurrenceIDError, build_overrides, series, [], [berlin(12)]
        )


class RebaseTests(unittest.TestCase):
    def test_shift(self):
        previous = make_series()
        apply_change_exception(
            previous, berlin(3), {"start": berlin(3, 12), "end": berlin(3, 13)}
        )
        apply_change_exception(previous, berlin(4), {"summary": "Retro"})
        apply_delete_exception(previous, berlin(5))
        series = previous.copy()
        series.master.start = berlin(1, 11)
        series.master.end = berlin(1, 12)
        self.assertEqual([], rebase_overrides(series, previous))
        moved = series.find_override(berlin(3, 11))
        self.assertIsInstance(moved, ChangeException)
        self.assertEqual(berlin(3, 12), moved.fields.start)
        unmoved = series.find_override(berlin(4, 11))
        self.assertEqual(berlin(4, 11), unmoved.fields.start)
        self.assertEqual(berlin(4, 12), unmoved.fields.end)
        self.assertEqual("Retro", unmoved.fields.summary)
        self.assertIsInstance(series.find_override(berlin(5, 11)), DeleteException)
        self.assertIsNone(series.find_override(berlin(3)))

    def test_rule_change_drops(self):
        previous = make_series()
        apply_change_exception(previous, berlin(2), {"summary": "Kept"})
        apply_change_exception(previous, berlin(5), {"summary": "Dropped"})
        series = previous.copy()
        series.rule = RecurrenceRule.parse("FREQ=DAILY;COUNT=3")
        with self.assertLogs("chronicle.overlay", level="WARNING"):
            dropped = rebase_overrides(series, previous)
        self.assertEqual([berlin(5)], dropped)
        self.assertEqual([berlin(2)], [o.recurrence_id for o in series.change_exceptions()])

    def test_shift_reports_followed_exceptions(self):
        previous = make_series()
        apply_change_exception(
            previous, berlin(3), {"start": berlin(3, 12), "end": berlin(3, 13)}
        )
        apply_change_exception(previous, berlin(4), {"summary": "Retro"})
        series = previous.copy()
        series.master.start = berlin(1, 11)
        series.master.end = berlin(1, 12)
        moved = []
        rebase_overrides(series, previous, moved)
        self.assertEqual([berlin(4, 11)], moved)

    def test_shift_rekeys_slot_states(self):
        previous = make_series()
        previous.slot_state(berlin(6), BOB).reply = {"partstat": PARTSTAT_ACCEPTED}
        series = previous.copy()
        series.master.start = berlin(1, 11)
        series.master.end = berlin(1, 12)
        rebase_overrides(series, previous)
        self.assertEqual(
            PARTSTAT_ACCEPTED,
            series.slot_fields(berlin(6, 11)).participant(BOB).partstat,
        )
        self.assertEqual(berlin(6, 11), series.slot_state(berlin(6, 11), BOB).recurrence_id)


class SlotStateTests(unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.series = make_series()
        state = self.series.slot_state(berlin(3), BOB)
        state.reply = {"partstat": PARTSTAT_ACCEPTED, "comment": "Yes"}
        state.alarms = [Alarm("b1", trigger=timedelta(minutes=-5))]

    def test_slot_fields(self):
        fields = self.series.slot_fields(berlin(3))
        self.assertEqual(PARTSTAT_ACCEPTED, fields.participant(BOB).partstat)
        self.assertEqual("Yes", fields.participant(BOB).comment)
        self.assertEqual(["b1"], [a.uid for a in fields.alarms[BOB]])
        self.assertEqual(
            "NEEDS-ACTION", self.series.slot_fields(berlin(4)).participant(BOB).partstat
        )
        self.assertEqual([], self.series.change_exceptions())

    def test_materialize(self):
        occurrences = materialize(self.series, START, END)
        self.assertFalse(occurrences[2].overridden)
        self.assertEqual(
            PARTSTAT_ACCEPTED, occurrences[2].fields.participant(BOB).partstat
        )
        self.assertEqual(
            PARTSTAT_ACCEPTED,
            get_occurrence(self.series, berlin(3)).fields.participant(BOB).partstat,
        )

    def test_change_exception_absorbs_state(self):
        apply_change_exception(self.series, berlin(3), {"summary": "Planning"})
        fields = self.series.find_override(berlin(3)).fields
        self.assertEqual("Planning", fields.summary)
        self.assertEqual(PARTSTAT_ACCEPTED, fields.participant(BOB).partstat)
        self.assertEqual({}, self.series.slot_states)

    def test_delete_exception_drops_state(self):
        apply_delete_exception(self.series, berlin(3))
        self.assertEqual({}, self.series.slot_states)

    def test_prune(self):
        self.series.master.participants = []
        self.series.prune_slot_states()
        self.assertEqual({}, self.series.slot_states)

    def test_clear_replies_keeps_alarms(self):
        self.series.clear_slot_replies()
        state = self.series.slot_state(berlin(3), BOB)
        self.assertIsNone(state.reply)
        self.assertEqual(["b1"], [a.uid for a in state.alarms])

    def test_copy_is_independent(self):
        copy = self.series.copy()
        copy.slot_state(berlin(3), BOB).reply["partstat"] = "DECLINED"
        self.assertEqual(
            PARTSTAT_ACCEPTED, self.series.slot_state(berlin(3), BOB).reply["partstat"]
        )

    def test_is_empty(self):
        self.assertTrue(SlotState(berlin(5)).is_empty())
        self.assertFalse(self.series.slot_state(berlin(3), BOB).is_empty())
