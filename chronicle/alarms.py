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

"""Reconciliation of personal alarms.

Clients usually send back only a subset of the alarm properties they
received, so incoming alarms are merged into the stored ones by presence:
properties present in an update replace the stored value, absent
properties are retained and explicitly removed properties are cleared.
"""

import collections
import logging
import uuid
from datetime import datetime, timezone

from .model import ACTION_NONE, Alarm

logger = logging.getLogger(__name__)

# Alarm attributes that can be set through a patch; any other (upper case)
# name refers to a raw property kept in Alarm.extra.
ALARM_ATTRIBUTES = (
    "action",
    "trigger",
    "related",
    "description",
    "acknowledged",
    "related_to",
)

# The disabled alarm Apple clients expect on every event.
DEFAULT_ALARM_TRIGGER = datetime(1976, 4, 1, 0, 55, 45, tzinfo=timezone.utc)
DEFAULT_ALARM_UID = "default-alarm"
DEFAULT_ALARM_MARKERS = ("X-APPLE-DEFAULT-ALARM", "X-APPLE-LOCAL-DEFAULT-ALARM")

# Thunderbird records acknowledgements here rather than in ACKNOWLEDGED.
MOZ_LASTACK = "X-MOZ-LASTACK"


class AlarmPatch:
    """An alarm as sent by a client.

    Args:
      uid: Alarm uid, or None if the client did not send one
      properties: dict with the properties the client sent; keys are either
        alarm attribute names or raw property names
      removed: names of properties the client explicitly removed
    """

    def __init__(self, uid=None, properties=None, removed=()) -> None:
        self.uid = uid
        self.properties = dict(properties or {})
        self.removed = tuple(removed)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.uid!r}, {self.properties!r})"

    @classmethod
    def from_alarm(cls, alarm: Alarm) -> "AlarmPatch":
        properties = {name: getattr(alarm, name) for name in ALARM_ATTRIBUTES}
        properties = {k: v for (k, v) in properties.items() if v is not None}
        properties.update(alarm.extra)
        return cls(alarm.uid, properties)


MergedAlarmSet = collections.namedtuple(
    "MergedAlarmSet", ["alarms", "created", "updated", "deleted"]
)


def _is_true(value) -> bool:
    if isinstance(value, bytes):
        value = value.decode("ascii", "replace")
    return str(value).upper() == "TRUE"


def is_default_alarm(alarm) -> bool:
    """Check whether an Alarm or AlarmPatch is the synthesized default alarm."""
    if isinstance(alarm, AlarmPatch):
        extra = alarm.properties
        action = alarm.properties.get("action")
        trigger = alarm.properties.get("trigger")
    else:
        extra = alarm.extra
        action = alarm.action
        trigger = alarm.trigger
    if any(_is_true(extra.get(name, "")) for name in DEFAULT_ALARM_MARKERS):
        return True
    return action == ACTION_NONE and trigger == DEFAULT_ALARM_TRIGGER


def default_alarm(uid: str = DEFAULT_ALARM_UID) -> Alarm:
    return Alarm(
        uid,
        action=ACTION_NONE,
        trigger=DEFAULT_ALARM_TRIGGER,
        extra={name: "TRUE" for name in DEFAULT_ALARM_MARKERS},
    )


def with_default_alarm(alarms) -> list:
    """Add the default alarm to a list of alarms unless it is present."""
    alarms = list(alarms)
    if not any(is_default_alarm(alarm) for alarm in alarms):
        alarms.append(default_alarm())
    return alarms


def apply_patch(alarm: Alarm, patch: AlarmPatch) -> Alarm:
    """Apply a patch to an alarm, returning a new alarm."""
    ret = alarm.copy()
    for name in patch.removed:
        if name in ALARM_ATTRIBUTES:
            setattr(ret, name, None)
        else:
            ret.extra.pop(name, None)
    for name, value in patch.properties.items():
        if name in ALARM_ATTRIBUTES:
            setattr(ret, name, value)
        else:
            ret.extra[name] = value
    return ret


def _find(alarms, predicate):
    for alarm in alarms:
        if predicate(alarm):
            return alarm
    return None


def merge_alarms(existing, incoming, viewer) -> MergedAlarmSet:
    """Merge the alarms sent by a client into the stored alarms of a user.

    Args:
      existing: list of stored Alarm objects of the viewer
      incoming: list of AlarmPatch objects; the complete set of alarms the
        client wants to keep
      viewer: Calendar user address owning the alarms
    Returns: MergedAlarmSet
    """
    remaining = list(existing)
    alarms = []
    created = []
    updated = []
    for patch in incoming:
        if is_default_alarm(patch):
            logger.debug("Ignoring default alarm sent by %s", viewer)
            continue
        match = None
        if patch.uid is not None:
            match = _find(remaining, lambda a: a.uid == patch.uid)
        if match is None and "action" in patch.properties and "trigger" in patch.properties:
            match = _find(
                remaining,
                lambda a: (a.action, a.trigger)
                == (patch.properties["action"], patch.properties["trigger"]),
            )
        if match is not None:
            remaining.remove(match)
            alarm = apply_patch(match, patch)
            if alarm != match:
                updated.append(alarm)
        else:
            alarm = apply_patch(Alarm(patch.uid or str(uuid.uuid4())), patch)
            created.append(alarm)
        alarms.append(alarm)
    snoozed = {alarm.related_to for alarm in alarms if alarm.related_to}
    deleted = []
    for alarm in remaining:
        if alarm.uid in snoozed:
            alarms.append(alarm)
        else:
            deleted.append(alarm)
    return MergedAlarmSet(alarms, created, updated, deleted)


def acknowledge(alarm: Alarm, when: datetime) -> AlarmPatch:
    """Create a patch acknowledging an alarm."""
    properties = {"acknowledged": when}
    if MOZ_LASTACK in alarm.extra:
        properties[MOZ_LASTACK] = when
    return AlarmPatch(alarm.uid, properties)


def snooze(alarm: Alarm, until: datetime, when: datetime) -> list:
    """Create the patches that snooze an alarm.

    Returns: list with a patch acknowledging the original alarm and a patch
      creating the snoozed alarm
    """
    return [
        acknowledge(alarm, when),
        AlarmPatch(
            None,
            {
                "action": alarm.action,
                "trigger": until,
                "description": alarm.description,
                "related_to": alarm.uid,
            },
        ),
    ]
