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

"""Tests for chronicle.sync."""

import unittest

from chronicle.sync import (
    CHANGE_CREATED,
    CHANGE_DELETED,
    CHANGE_UPDATED,
    InvalidToken,
    SyncLedger,
    SyncToken,
    TokenExpiredError,
)


class SyncTokenTests(unittest.TestCase):
    def test_str(self):
        self.assertEqual("urn:chronicle:sync:abc-3", str(SyncToken("abc", 3)))

    def test_parse(self):
        self.assertEqual(
            SyncToken("abc", 3), SyncToken.parse("urn:chronicle:sync:abc-3")
        )

    def test_parse_invalid(self):
        for token in [
            "abc-3",
            "urn:chronicle:sync:abc",
            "urn:chronicle:sync:-3",
            "urn:chronicle:sync:abc-x",
            None,
        ]:
            self.assertRaises(InvalidToken, SyncToken.parse, token)


class SyncLedgerTests(unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.ledger = SyncLedger()

    def test_invalid_history(self):
        self.assertRaises(ValueError, SyncLedger, 0)

    def test_full(self):
        self.ledger.record_change("alice", "a.ics", CHANGE_CREATED)
        self.ledger.record_change("alice", "b.ics", CHANGE_CREATED)
        self.ledger.record_change("alice", "a.ics", CHANGE_DELETED)
        delta = self.ledger.delta("alice", None)
        self.assertEqual(["b.ics"], delta.created)
        self.assertEqual([], delta.updated)
        self.assertEqual([], delta.deleted)
        self.assertEqual(self.ledger.current_token("alice"), delta.token)

    def test_incremental(self):
        token = self.ledger.record_change("alice", "a.ics", CHANGE_CREATED)
        self.ledger.record_change("alice", "b.ics", CHANGE_CREATED)
        self.ledger.record_change("alice", "a.ics", CHANGE_UPDATED)
        delta = self.ledger.delta("alice", token)
        self.assertEqual(["b.ics"], delta.created)
        self.assertEqual(["a.ics"], delta.updated)
        self.assertEqual([], delta.deleted)

    def test_collapse(self):
        token = self.ledger.current_token("alice")
        self.ledger.record_change("alice", "a.ics", CHANGE_CREATED)
        self.ledger.record_change("alice", "a.ics", CHANGE_UPDATED)
        self.ledger.record_change("alice", "b.ics", CHANGE_CREATED)
        self.ledger.record_change("alice", "b.ics", CHANGE_DELETED)
        delta = self.ledger.delta("alice", token)
        self.assertEqual(["a.ics"], delta.created)
        self.assertEqual([], delta.updated)
        self.assertEqual(["b.ics"], delta.deleted)

    def test_no_changes(self):
        self.ledger.record_change("alice", "a.ics", CHANGE_CREATED)
        token = self.ledger.current_token("alice")
        delta = self.ledger.delta("alice", token)
        self.assertEqual(([], [], []), (delta.created, delta.updated, delta.deleted))
        self.assertEqual(token, delta.token)

    def test_repeat_token(self):
        token = self.ledger.current_token("alice")
        self.ledger.record_change("alice", "a.ics", CHANGE_CREATED)
        first = self.ledger.delta("alice", token)
        self.ledger.record_change("alice", "b.ics", CHANGE_CREATED)
        second = self.ledger.delta("alice", token)
        self.assertEqual(["a.ics", "b.ics"], second.created)
        self.assertTrue(set(first.created) <= set(second.created))

    def test_batch_is_one_revision(self):
        token = self.ledger.current_token("alice")
        new_token = self.ledger.record_changes(
            "alice", [("a.ics", CHANGE_CREATED), ("a.ics#x", CHANGE_CREATED)]
        )
        self.assertEqual(
            SyncToken.parse(token).revision + 1, SyncToken.parse(new_token).revision
        )

    def test_empty_batch(self):
        token = self.ledger.current_token("alice")
        self.assertEqual(token, self.ledger.record_changes("alice", []))

    def test_unknown_kind(self):
        self.assertRaises(
            ValueError, self.ledger.record_change, "alice", "a.ics", "moved"
        )

    def test_collections_independent(self):
        token = self.ledger.current_token("bob")
        self.ledger.record_change("alice", "a.ics", CHANGE_CREATED)
        delta = self.ledger.delta("bob", token)
        self.assertEqual([], delta.created)

    def test_expired(self):
        ledger = SyncLedger(max_history=2)
        token = ledger.record_change("alice", "a.ics", CHANGE_CREATED)
        ledger.record_change("alice", "b.ics", CHANGE_CREATED)
        self.assertEqual(["b.ics"], ledger.delta("alice", token).created)
        ledger.record_change("alice", "c.ics", CHANGE_CREATED)
        ledger.record_change("alice", "d.ics", CHANGE_CREATED)
        with self.assertLogs("chronicle.sync", level="INFO"):
            self.assertRaises(TokenExpiredError, ledger.delta, "alice", token)
        self.assertEqual(
            ["a.ics", "b.ics", "c.ics", "d.ics"], ledger.delta("alice", None).created
        )

    def test_other_epoch(self):
        other = SyncLedger()
        token = other.record_change("alice", "a.ics", CHANGE_CREATED)
        with self.assertLogs("chronicle.sync", level="INFO"):
            self.assertRaises(TokenExpiredError, self.ledger.delta, "alice", token)

    def test_future(self):
        token = str(SyncToken(self.ledger.epoch, 5))
        self.assertRaises(InvalidToken, self.ledger.delta, "alice", token)

    def test_malformed(self):
        self.assertRaises(InvalidToken, self.ledger.delta, "alice", "garbage")
