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

"""Tests for chronicle.participants."""

import unittest
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from chronicle.model import (
    CLASS_PRIVATE,
    PARTSTAT_ACCEPTED,
    Alarm,
    EventFields,
    Participant,
)
from chronicle.overlay import (
    DeleteException,
    Series,
    apply_change_exception,
    get_occurrence,
)
from chronicle.participants import (
    ALL_CAPABILITIES,
    CAP_READ,
    CAP_READ_PRIVATE,
    GrantTable,
    NotFoundAfterVisibilityChange,
    involved_users,
    parse_unit_name,
    project,
    project_series,
    unit_name,
    visible_units,
)
from chronicle.recurrence import RecurrenceRule

BERLIN = ZoneInfo("Europe/Berlin")
ALICE = "mailto:alice@example.com"
BOB = "mailto:bob@example.com"
CAROL = "mailto:carol@example.com"


def berlin(day, hour=10):
    return datetime(2024, 1, day, hour, tzinfo=BERLIN)


def make_series(classification="PUBLIC"):
    master = EventFields(
        summary="Review",
        location="Room 1",
        start=berlin(1),
        end=berlin(1, 11),
        classification=classification,
        organizer=ALICE,
        participants=[
            Participant(ALICE, partstat=PARTSTAT_ACCEPTED, comment="Organizing"),
            Participant(BOB, comment="Might be late"),
        ],
        alarms={
            ALICE: [Alarm("a1", trigger=timedelta(minutes=-15))],
            BOB: [Alarm("b1", trigger=timedelta(minutes=-5))],
        },
    )
    return Series(
        "review", ALICE, master, RecurrenceRule.parse("FREQ=WEEKLY;COUNT=4"), "Europe/Berlin"
    )


class GrantTableTests(unittest.TestCase):
    def test_owner(self):
        table = GrantTable()
        self.assertEqual(ALL_CAPABILITIES, table.capabilities(ALICE, "mailto:Alice@Example.com"))

    def test_grants(self):
        table = GrantTable()
        self.assertEqual(frozenset(), table.capabilities(ALICE, CAROL))
        table.grant(ALICE, CAROL, [CAP_READ])
        table.grant(ALICE, CAROL, [CAP_READ_PRIVATE])
        self.assertEqual(
            frozenset([CAP_READ, CAP_READ_PRIVATE]), table.capabilities(ALICE, CAROL)
        )
        self.assertEqual(frozenset(), table.capabilities(BOB, CAROL))
        table.revoke(ALICE, CAROL)
        self.assertEqual(frozenset(), table.capabilities(ALICE, CAROL))


class ProjectTests(unittest.TestCase):
    def test_own_alarms(self):
        occurrence = get_occurrence(make_series(), berlin(8))
        view = project(occurrence, BOB)
        self.assertEqual(["b1"], [a.uid for a in view.alarms()])
        self.assertEqual({BOB}, set(view.fields.alarms))
        self.assertFalse(view.redacted)
        self.assertEqual("Review", view.summary)
        self.assertEqual(berlin(8), view.start)

    def test_comments(self):
        occurrence = get_occurrence(make_series(), berlin(8))
        view = project(occurrence, BOB)
        self.assertEqual("Might be late", view.participant().comment)
        self.assertIsNone(view.fields.participant(ALICE).comment)
        view = project(occurrence, ALICE)
        self.assertEqual("Might be late", view.fields.participant(BOB).comment)

    def test_source_untouched(self):
        series = make_series()
        occurrence = get_occurrence(series, berlin(8))
        project(occurrence, BOB)
        self.assertEqual(2, len(occurrence.fields.alarms))
        self.assertEqual("Organizing", occurrence.fields.participant(ALICE).comment)

    def test_outsider_needs_read(self):
        occurrence = get_occurrence(make_series(), berlin(8))
        self.assertRaises(NotFoundAfterVisibilityChange, project, occurrence, CAROL)
        self.assertRaises(
            NotFoundAfterVisibilityChange, project, occurrence, CAROL, frozenset()
        )
        view = project(occurrence, CAROL, frozenset([CAP_READ]))
        self.assertEqual("Review", view.summary)
        self.assertEqual([], view.alarms())

    def test_redacted(self):
        occurrence = get_occurrence(make_series(CLASS_PRIVATE), berlin(8))
        view = project(occurrence, CAROL, frozenset([CAP_READ]), placeholder="Busy")
        self.assertTrue(view.redacted)
        self.assertEqual("Busy", view.summary)
        self.assertIsNone(view.fields.location)
        self.assertIsNone(view.fields.organizer)
        self.assertEqual([], view.fields.participants)
        self.assertEqual(berlin(8), view.start)
        self.assertEqual(berlin(8, 11), view.end)

    def test_read_private(self):
        occurrence = get_occurrence(make_series(CLASS_PRIVATE), berlin(8))
        view = project(
            occurrence, CAROL, frozenset([CAP_READ, CAP_READ_PRIVATE])
        )
        self.assertFalse(view.redacted)
        self.assertEqual("Review", view.summary)

    def test_participants_see_private(self):
        occurrence = get_occurrence(make_series(CLASS_PRIVATE), berlin(8))
        view = project(occurrence, BOB)
        self.assertFalse(view.redacted)
        self.assertEqual("Room 1", view.fields.location)

    def test_hidden(self):
        series = make_series()
        series.master.participant(BOB).hidden = True
        occurrence = get_occurrence(series, berlin(8))
        self.assertRaises(NotFoundAfterVisibilityChange, project, occurrence, BOB)


class ProjectSeriesTests(unittest.TestCase):
    def test_invisible_exception(self):
        series = make_series()
        apply_change_exception(
            series, berlin(8), {"participants": [Participant(ALICE)]}
        )
        view = project_series(series, BOB)
        self.assertIsInstance(view.find_override(berlin(8)), DeleteException)
        view = project_series(series, ALICE)
        self.assertEqual(
            [ALICE], view.find_override(berlin(8)).fields.attendee_addresses()
        )

    def test_invisible_master(self):
        self.assertRaises(
            NotFoundAfterVisibilityChange, project_series, make_series(), CAROL
        )


class UnitNameTests(unittest.TestCase):
    def test_series(self):
        self.assertEqual("review.ics", unit_name("review"))
        self.assertEqual(("review", None), parse_unit_name("review.ics"))

    def test_exception(self):
        name = unit_name("review", berlin(8))
        self.assertEqual("review.ics#20240108T090000Z", name)
        (uid, rid) = parse_unit_name(name)
        self.assertEqual("review", uid)
        self.assertEqual(berlin(8), rid)

    def test_invalid(self):
        self.assertRaises(ValueError, parse_unit_name, "review")
        self.assertRaises(ValueError, parse_unit_name, ".ics")
        self.assertRaises(ValueError, parse_unit_name, "review.ics#tomorrow")


class VisibleUnitsTests(unittest.TestCase):
    def test_units(self):
        series = make_series()
        apply_change_exception(series, berlin(8), {"summary": "Special"})
        apply_change_exception(
            series, berlin(15), {"participants": [Participant(ALICE)]}
        )
        self.assertEqual(
            {"review.ics", "review.ics#20240108T090000Z", "review.ics#20240115T090000Z"},
            set(visible_units(series, ALICE)),
        )
        self.assertEqual(
            {"review.ics", "review.ics#20240108T090000Z"},
            set(visible_units(series, BOB)),
        )
        self.assertEqual({}, visible_units(series, CAROL))

    def test_hidden(self):
        series = make_series()
        series.master.participant(BOB).hidden = True
        self.assertEqual({}, visible_units(series, BOB))

    def test_involved(self):
        series = make_series()
        apply_change_exception(
            series, berlin(8), {"participants": [Participant(ALICE), Participant(CAROL)]}
        )
        self.assertEqual({ALICE, BOB, CAROL}, involved_users(series))
