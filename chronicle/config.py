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

"""Engine configuration file.

The configuration is a plain INI file, e.g.::

    [DEFAULT]
    timezone = Europe/Berlin

    [sync]
    max-history = 1000

    [privacy]
    placeholder = Private

    [alarms]
    default-alarm = true

    [recurrence]
    max-instances = 10000
"""

import configparser

DEFAULT_TIMEZONE = "UTC"
DEFAULT_MAX_HISTORY = 1000
DEFAULT_PRIVATE_PLACEHOLDER = "Private"
DEFAULT_MAX_INSTANCES = 10000


class EngineConfig:
    """Settings for a calendar engine."""

    def __init__(self, cp=None) -> None:
        if cp is None:
            cp = configparser.ConfigParser()
        self._configparser = cp

    @classmethod
    def from_file(cls, f):
        cp = configparser.ConfigParser()
        cp.read_file(f)
        return cls(cp)

    @classmethod
    def from_string(cls, text):
        cp = configparser.ConfigParser()
        cp.read_string(text)
        return cls(cp)

    def _ensure_section(self, section):
        try:
            self._configparser.add_section(section)
        except configparser.DuplicateSectionError:
            pass

    def get_timezone(self) -> str:
        """Reference timezone for floating date-times."""
        return self._configparser["DEFAULT"].get("timezone", DEFAULT_TIMEZONE)

    def set_timezone(self, timezone):
        if timezone is not None:
            self._configparser["DEFAULT"]["timezone"] = timezone
        else:
            del self._configparser["DEFAULT"]["timezone"]

    def get_max_history(self) -> int:
        """Number of ledger entries retained per collection."""
        return self._configparser.getint(
            "sync", "max-history", fallback=DEFAULT_MAX_HISTORY
        )

    def set_max_history(self, max_history):
        self._ensure_section("sync")
        self._configparser["sync"]["max-history"] = str(max_history)

    def get_private_placeholder(self) -> str:
        return self._configparser.get(
            "privacy", "placeholder", fallback=DEFAULT_PRIVATE_PLACEHOLDER
        )

    def set_private_placeholder(self, placeholder):
        self._ensure_section("privacy")
        self._configparser["privacy"]["placeholder"] = placeholder

    def get_default_alarm(self) -> bool:
        """Whether to synthesize a disabled alarm for clients that expect one."""
        return self._configparser.getboolean(
            "alarms", "default-alarm", fallback=True
        )

    def set_default_alarm(self, enabled):
        self._ensure_section("alarms")
        self._configparser["alarms"]["default-alarm"] = "true" if enabled else "false"

    def get_max_instances(self) -> int:
        return self._configparser.getint(
            "recurrence", "max-instances", fallback=DEFAULT_MAX_INSTANCES
        )

    def set_max_instances(self, max_instances):
        self._ensure_section("recurrence")
        self._configparser["recurrence"]["max-instances"] = str(max_instances)
