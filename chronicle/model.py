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

"""Event data model."""

from datetime import timedelta
from typing import Optional

PARTSTAT_NEEDS_ACTION = "NEEDS-ACTION"
PARTSTAT_ACCEPTED = "ACCEPTED"
PARTSTAT_DECLINED = "DECLINED"
PARTSTAT_TENTATIVE = "TENTATIVE"
PARTSTAT_DELEGATED = "DELEGATED"
PARTSTATS = (
    PARTSTAT_NEEDS_ACTION,
    PARTSTAT_ACCEPTED,
    PARTSTAT_DECLINED,
    PARTSTAT_TENTATIVE,
    PARTSTAT_DELEGATED,
)

ROLE_CHAIR = "CHAIR"
ROLE_REQ_PARTICIPANT = "REQ-PARTICIPANT"
ROLE_OPT_PARTICIPANT = "OPT-PARTICIPANT"
ROLE_NON_PARTICIPANT = "NON-PARTICIPANT"

CLASS_PUBLIC = "PUBLIC"
CLASS_PRIVATE = "PRIVATE"
CLASS_CONFIDENTIAL = "CONFIDENTIAL"
CLASSIFIED = (CLASS_PRIVATE, CLASS_CONFIDENTIAL)

TRANSP_OPAQUE = "OPAQUE"
TRANSP_TRANSPARENT = "TRANSPARENT"

SHOWN_AS_RESERVED = "RESERVED"
SHOWN_AS_FREE = "FREE"
SHOWN_AS_TEMPORARY = "TEMPORARY"
SHOWN_AS_ABSENT = "ABSENT"

STATUS_CONFIRMED = "CONFIRMED"
STATUS_TENTATIVE = "TENTATIVE"
STATUS_CANCELLED = "CANCELLED"

ACTION_DISPLAY = "DISPLAY"
ACTION_AUDIO = "AUDIO"
ACTION_EMAIL = "EMAIL"
ACTION_NONE = "NONE"

RELATED_START = "START"
RELATED_END = "END"


def normalize_address(address: str) -> str:
    """Normalize a calendar user address for comparison."""
    address = address.strip()
    if address.lower().startswith("mailto:"):
        return "mailto:" + address[len("mailto:") :].lower()
    return address


# Attributes of a participant record that the participant controls.
PARTICIPANT_STATE = ("partstat", "rsvp", "comment", "hidden")


class Participant:
    """Scheduling state of one participant."""

    __slots__ = (
        "address",
        "role",
        "partstat",
        "rsvp",
        "comment",
        "common_name",
        "hidden",
    )

    def __init__(
        self,
        address: str,
        role: str = ROLE_REQ_PARTICIPANT,
        partstat: str = PARTSTAT_NEEDS_ACTION,
        rsvp: bool = False,
        comment: Optional[str] = None,
        common_name: Optional[str] = None,
        hidden: bool = False,
    ) -> None:
        self.address = normalize_address(address)
        self.role = role
        self.partstat = partstat
        self.rsvp = rsvp
        self.comment = comment
        self.common_name = common_name
        self.hidden = hidden

    def _key(self):
        return tuple(getattr(self, name) for name in self.__slots__)

    def __eq__(self, other):
        return isinstance(other, Participant) and self._key() == other._key()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.address!r}, partstat={self.partstat!r})"

    def copy(self, **kwargs) -> "Participant":
        values = {name: getattr(self, name) for name in self.__slots__}
        values.update(kwargs)
        return Participant(**values)

    def state(self) -> dict:
        return {name: getattr(self, name) for name in PARTICIPANT_STATE}


class Alarm:
    """A personal alarm.

    Attributes:
      uid: Alarm uid, stable across updates
      action: DISPLAY, AUDIO, EMAIL or NONE
      trigger: timedelta relative to ``related``, or an absolute datetime
      related: START or END
      description: Optional description
      acknowledged: datetime at which the alarm was last acknowledged
      related_to: uid of the alarm this one snoozes
      extra: dict of other properties (name -> icalendar property value)
    """

    __slots__ = (
        "uid",
        "action",
        "trigger",
        "related",
        "description",
        "acknowledged",
        "related_to",
        "extra",
    )

    def __init__(
        self,
        uid: str,
        action: str = ACTION_DISPLAY,
        trigger=timedelta(0),
        related: str = RELATED_START,
        description: Optional[str] = None,
        acknowledged=None,
        related_to: Optional[str] = None,
        extra: Optional[dict] = None,
    ) -> None:
        self.uid = uid
        self.action = action
        self.trigger = trigger
        self.related = related
        self.description = description
        self.acknowledged = acknowledged
        self.related_to = related_to
        self.extra = dict(extra or {})

    def _key(self):
        return tuple(getattr(self, name) for name in self.__slots__)

    def __eq__(self, other):
        return isinstance(other, Alarm) and self._key() == other._key()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.uid!r}, {self.action!r}, {self.trigger!r})"

    def copy(self, **kwargs) -> "Alarm":
        values = {name: getattr(self, name) for name in self.__slots__}
        values.update(kwargs)
        return Alarm(**values)


# Fields that can be patched on an event; everything else is managed.
PATCHABLE_FIELDS = (
    "summary",
    "location",
    "description",
    "start",
    "end",
    "classification",
    "transp",
    "shown_as",
    "status",
    "organizer",
    "participants",
    "alarms",
    "extra",
)

# Fields that make up the scheduling view of an event.
SCHEDULING_FIELDS = ("start", "end", "organizer", "participants")


class EventFields:
    """Field set of a master or change exception.

    ``participants`` is a list of Participant objects; ``alarms`` maps a
    calendar user address to the list of that user's alarms; ``extra`` is a
    list of (name, value) tuples with properties that are preserved
    verbatim.
    """

    def __init__(
        self,
        summary: Optional[str] = None,
        location: Optional[str] = None,
        description: Optional[str] = None,
        start=None,
        end=None,
        classification: str = CLASS_PUBLIC,
        transp: str = TRANSP_OPAQUE,
        shown_as: Optional[str] = None,
        status: Optional[str] = None,
        organizer: Optional[str] = None,
        participants=(),
        alarms=None,
        sequence: int = 0,
        extra=(),
    ) -> None:
        self.summary = summary
        self.location = location
        self.description = description
        self.start = start
        self.end = end
        self.classification = classification
        self.transp = transp
        self.shown_as = shown_as
        self.status = status
        self.organizer = normalize_address(organizer) if organizer else None
        self.participants = list(participants)
        self.alarms = {user: list(alarms) for (user, alarms) in (alarms or {}).items()}
        self.sequence = sequence
        self.extra = list(extra)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(summary={self.summary!r}, start={self.start!r})"

    def __eq__(self, other):
        if not isinstance(other, EventFields):
            return False
        return self.canonical() == other.canonical()

    def canonical(self):
        """Return a hashable, comparable representation."""
        return (
            self.summary,
            self.location,
            self.description,
            self.start,
            self.end,
            self.classification,
            self.transp,
            self.shown_as,
            self.status,
            self.organizer,
            tuple(p._key() for p in self.participants),
            tuple(
                (user, tuple(_alarm_canonical(a) for a in alarms))
                for (user, alarms) in sorted(self.alarms.items())
            ),
            self.sequence,
            tuple((name, _value_canonical(value)) for (name, value) in self.extra),
        )

    def shared_canonical(self):
        """Like canonical(), but without per-participant state and sequence."""
        return (
            self.summary,
            self.location,
            self.description,
            self.start,
            self.end,
            self.classification,
            self.transp,
            self.shown_as,
            self.status,
            self.organizer,
            tuple((p.address, p.role, p.common_name) for p in self.participants),
            tuple((name, _value_canonical(value)) for (name, value) in self.extra),
        )

    def copy(self) -> "EventFields":
        return EventFields(
            summary=self.summary,
            location=self.location,
            description=self.description,
            start=self.start,
            end=self.end,
            classification=self.classification,
            transp=self.transp,
            shown_as=self.shown_as,
            status=self.status,
            organizer=self.organizer,
            participants=[p.copy() for p in self.participants],
            alarms={
                user: [a.copy() for a in alarms]
                for (user, alarms) in self.alarms.items()
            },
            sequence=self.sequence,
            extra=self.extra,
        )

    def updated(self, patch: dict) -> "EventFields":
        """Return a copy with the fields present in ``patch`` replaced.

        Raises:
          KeyError: if the patch names a field that can not be patched
        """
        ret = self.copy()
        for name, value in patch.items():
            if name not in PATCHABLE_FIELDS:
                raise KeyError(name)
            if name == "participants":
                value = [p.copy() for p in value]
            elif name == "alarms":
                value = {user: list(alarms) for (user, alarms) in value.items()}
            elif name == "extra":
                value = list(value)
            elif name == "organizer" and value:
                value = normalize_address(value)
            setattr(ret, name, value)
        return ret

    @property
    def duration(self) -> timedelta:
        if self.start is None or self.end is None:
            return timedelta(0)
        return self.end - self.start

    def participant(self, address: str) -> Optional[Participant]:
        address = normalize_address(address)
        for p in self.participants:
            if p.address == address:
                return p
        return None

    def attendee_addresses(self):
        return [p.address for p in self.participants]

    def is_organizer(self, address: str) -> bool:
        return self.organizer is not None and self.organizer == normalize_address(
            address
        )


def _alarm_canonical(alarm):
    return alarm._key()[:-1] + (
        tuple(sorted((k, _value_canonical(v)) for (k, v) in alarm.extra.items())),
    )


def _value_canonical(value):
    try:
        return value.to_ical()
    except AttributeError:
        return value
