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

"""Tests for chronicle.config."""

from io import StringIO
from unittest import TestCase

from chronicle.config import (
    DEFAULT_MAX_HISTORY,
    DEFAULT_MAX_INSTANCES,
    DEFAULT_PRIVATE_PLACEHOLDER,
    DEFAULT_TIMEZONE,
    EngineConfig,
)


class EngineConfigTests(TestCase):
    def test_defaults(self):
        config = EngineConfig.from_file(StringIO(""))
        self.assertEqual(DEFAULT_TIMEZONE, config.get_timezone())
        self.assertEqual(DEFAULT_MAX_HISTORY, config.get_max_history())
        self.assertEqual(DEFAULT_PRIVATE_PLACEHOLDER, config.get_private_placeholder())
        self.assertTrue(config.get_default_alarm())
        self.assertEqual(DEFAULT_MAX_INSTANCES, config.get_max_instances())

    def test_get_timezone(self):
        f = StringIO(
            """\
[DEFAULT]
timezone = Europe/Berlin
"""
        )
        config = EngineConfig.from_file(f)
        self.assertEqual("Europe/Berlin", config.get_timezone())

    def test_set_timezone(self):
        config = EngineConfig()
        config.set_timezone("America/New_York")
        self.assertEqual("America/New_York", config.get_timezone())
        config.set_timezone(None)
        self.assertEqual(DEFAULT_TIMEZONE, config.get_timezone())

    def test_get_max_history(self):
        f = StringIO(
            """\
[sync]
max-history = 20
"""
        )
        config = EngineConfig.from_file(f)
        self.assertEqual(20, config.get_max_history())

    def test_set_max_history(self):
        config = EngineConfig()
        config.set_max_history(5)
        self.assertEqual(5, config.get_max_history())

    def test_private_placeholder(self):
        config = EngineConfig.from_string(
            """\
[privacy]
placeholder = Busy
"""
        )
        self.assertEqual("Busy", config.get_private_placeholder())
        config.set_private_placeholder("Away")
        self.assertEqual("Away", config.get_private_placeholder())

    def test_default_alarm(self):
        config = EngineConfig.from_string(
            """\
[alarms]
default-alarm = no
"""
        )
        self.assertFalse(config.get_default_alarm())
        config.set_default_alarm(True)
        self.assertTrue(config.get_default_alarm())

    def test_max_instances(self):
        config = EngineConfig()
        config.set_max_instances(100)
        config.set_max_instances(200)
        self.assertEqual(200, config.get_max_instances())
