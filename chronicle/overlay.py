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

"""Exception overlay.

A series is stored as a single master record plus a sparse map of
overrides, keyed by the UTC-normalized recurrence id of the slot they
apply to. Each slot is in exactly one of three states: inherited (no
override), overridden (ChangeException) or suppressed (DeleteException).

Inherited slots can additionally carry personal state of individual
participants: their reply or their alarms for just that slot. Personal
state does not change the shared event, so it is kept apart from the
overrides.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .guard import MutationRejected
from .model import EventFields, normalize_address
from .recurrence import (
    RecurrencePlanner,
    as_tz_aware_ts,
    asutc,
    format_recurrence_id,
    recurrence_key,
)

logger = logging.getLogger(__name__)


class NoSuchSeries(MutationRejected):
    """The series does not exist."""

    reason = "NOT_FOUND"

    def __init__(self, uid) -> None:
        super().__init__(f"No such series: {uid!r}")
        self.uid = uid


class DuplicateUidError(MutationRejected):
    """A series with this uid already exists."""

    reason = "DUPLICATE_UID"

    def __init__(self, uid, existing_owner=None) -> None:
        super().__init__(f"Series with uid {uid!r} already exists")
        self.uid = uid
        self.existing_owner = existing_owner


class OrphanedRecurrenceIDError(MutationRejected):
    """A recurrence id does not denote a nominal slot of the series."""

    reason = "ORPHANED_RECURRENCE_ID"

    def __init__(self, uid, recurrence_id) -> None:
        super().__init__(
            f"{recurrence_id!r} is not an occurrence of series {uid!r}"
        )
        self.uid = uid
        self.recurrence_id = recurrence_id


class ConflictingOverrideError(MutationRejected):
    """More than one override was submitted for the same slot."""

    reason = "CONFLICTING_OVERRIDE"

    def __init__(self, uid, recurrence_id) -> None:
        super().__init__(
            f"Conflicting overrides for {recurrence_id!r} in series {uid!r}"
        )
        self.uid = uid
        self.recurrence_id = recurrence_id


class TooManyInstances(Exception):
    """Expanding a window would produce too many instances."""

    def __init__(self, uid, limit: int) -> None:
        super().__init__(f"Series {uid!r} expands to more than {limit} instances")
        self.uid = uid
        self.limit = limit


class ChangeException:
    """Replacement field set for a single slot."""

    def __init__(self, recurrence_id, fields: EventFields) -> None:
        self.recurrence_id = recurrence_id
        self.fields = fields

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.recurrence_id!r}, {self.fields!r})"

    def __eq__(self, other):
        return (
            isinstance(other, ChangeException)
            and recurrence_key(self.recurrence_id) == recurrence_key(other.recurrence_id)
            and self.fields == other.fields
        )


class DeleteException:
    """Suppression of a single slot."""

    def __init__(self, recurrence_id) -> None:
        self.recurrence_id = recurrence_id

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.recurrence_id!r})"

    def __eq__(self, other):
        return isinstance(other, DeleteException) and recurrence_key(
            self.recurrence_id
        ) == recurrence_key(other.recurrence_id)


class SlotState:
    """Personal state of one participant for an inherited slot.

    Attributes:
      recurrence_id: Nominal start of the slot
      reply: dict with the participant's own attributes (see
        PARTICIPANT_STATE), or None to inherit them from the master
      alarms: list of the participant's alarms, or None to inherit them
        from the master
    """

    def __init__(self, recurrence_id, reply=None, alarms=None) -> None:
        self.recurrence_id = recurrence_id
        self.reply = reply
        self.alarms = alarms

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.recurrence_id!r}, reply={self.reply!r}, "
            f"alarms={self.alarms!r})"
        )

    def __eq__(self, other):
        return (
            isinstance(other, SlotState)
            and recurrence_key(self.recurrence_id) == recurrence_key(other.recurrence_id)
            and self.reply == other.reply
            and self.alarms == other.alarms
        )

    def is_empty(self) -> bool:
        return self.reply is None and self.alarms is None

    def copy(self, recurrence_id=None) -> "SlotState":
        return SlotState(
            recurrence_id if recurrence_id is not None else self.recurrence_id,
            dict(self.reply) if self.reply is not None else None,
            [a.copy() for a in self.alarms] if self.alarms is not None else None,
        )

    def apply(self, fields: EventFields, user: str) -> None:
        if self.reply is not None:
            me = fields.participant(user)
            if me is not None:
                fields.participants[fields.participants.index(me)] = me.copy(
                    **self.reply
                )
        if self.alarms is not None:
            if self.alarms:
                fields.alarms[user] = [a.copy() for a in self.alarms]
            else:
                fields.alarms.pop(user, None)


class Series:
    """A recurring (or single) event.

    Args:
      uid: Stable identifier
      owner: Calendar user address of the owner of the organizer copy
      master: EventFields of the master
      rule: RecurrenceRule, or None
      timezone: Reference timezone name
      rdates: Additional occurrence starts
      overrides: dict mapping recurrence keys to ChangeException or
        DeleteException objects
      slot_states: dict mapping recurrence keys of inherited slots to dicts
        mapping calendar user addresses to SlotState objects
    """

    def __init__(
        self,
        uid,
        owner,
        master,
        rule=None,
        timezone=None,
        rdates=(),
        overrides=None,
        slot_states=None,
    ) -> None:
        self.uid = uid
        self.owner = owner
        self.master = master
        self.rule = rule
        self.timezone = timezone
        self.rdates = tuple(rdates)
        self.overrides = dict(overrides or {})
        self.slot_states = {
            key: dict(states) for (key, states) in (slot_states or {}).items()
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.uid!r}, {self.owner!r})"

    @property
    def is_recurring(self) -> bool:
        return self.rule is not None or bool(self.rdates)

    @property
    def all_day(self) -> bool:
        return not isinstance(self.master.start, datetime)

    def planner(self) -> RecurrencePlanner:
        return RecurrencePlanner(
            self.rule, self.master.start, self.timezone, self.rdates
        )

    def copy(self) -> "Series":
        overrides = {}
        for key, override in self.overrides.items():
            if isinstance(override, ChangeException):
                override = ChangeException(override.recurrence_id, override.fields.copy())
            overrides[key] = override
        return Series(
            self.uid,
            self.owner,
            self.master.copy(),
            self.rule,
            self.timezone,
            self.rdates,
            overrides,
            {
                key: {user: state.copy() for (user, state) in states.items()}
                for (key, states) in self.slot_states.items()
            },
        )

    def nominal_fields(self, recurrence_id) -> EventFields:
        """Project the master onto one slot."""
        fields = self.master.copy()
        if self.master.end is not None:
            fields.end = recurrence_id + self.master.duration
        fields.start = recurrence_id
        return fields

    def slot_fields(self, recurrence_id) -> EventFields:
        """Project the master onto one slot, with personal state applied."""
        fields = self.nominal_fields(recurrence_id)
        for user, state in sorted(
            self.slot_states.get(recurrence_key(recurrence_id), {}).items()
        ):
            state.apply(fields, user)
        return fields

    def slot_state(self, recurrence_id, user) -> SlotState:
        """Return the personal state of a user for a slot, adding it if needed."""
        states = self.slot_states.setdefault(recurrence_key(recurrence_id), {})
        try:
            return states[user]
        except KeyError:
            state = states[user] = SlotState(recurrence_id)
            return state

    def clear_slot_replies(self) -> None:
        for states in self.slot_states.values():
            for state in states.values():
                state.reply = None
        self.prune_slot_states()

    def prune_slot_states(self) -> None:
        """Drop personal state that no longer has any effect."""
        owner = normalize_address(self.owner)
        for key in list(self.slot_states):
            states = self.slot_states[key]
            if key in self.overrides:
                del self.slot_states[key]
                continue
            for user in list(states):
                state = states[user]
                if self.master.participant(user) is None:
                    state.reply = None
                    if user != owner and not self.master.is_organizer(user):
                        state.alarms = None
                if state.is_empty():
                    del states[user]
            if not states:
                del self.slot_states[key]

    def change_exceptions(self):
        return [o for o in self.overrides.values() if isinstance(o, ChangeException)]

    def suppressed(self):
        return [
            o.recurrence_id
            for o in self.overrides.values()
            if isinstance(o, DeleteException)
        ]

    def find_override(self, recurrence_id):
        return self.overrides.get(recurrence_key(recurrence_id))

    def resolve(self, recurrence_id):
        """Normalize a recurrence id, checking it denotes a nominal slot.

        Raises:
          OrphanedRecurrenceIDError: if it does not
        """
        planner = self.planner()
        value = planner.normalize(recurrence_id)
        if value is None or not planner.resolve(value):
            raise OrphanedRecurrenceIDError(self.uid, recurrence_id)
        return value


class Occurrence:
    """A logical occurrence of a series."""

    def __init__(self, uid, owner, recurrence_id, fields, overridden=False) -> None:
        self.uid = uid
        self.owner = owner
        self.recurrence_id = recurrence_id
        self.fields = fields
        self.overridden = overridden

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.uid!r}, {self.recurrence_id!r}, "
            f"start={self.start!r})"
        )

    @property
    def start(self):
        return self.fields.start

    @property
    def end(self):
        return self.fields.end

    @property
    def summary(self):
        return self.fields.summary

    @property
    def recurrence_name(self) -> Optional[str]:
        if self.recurrence_id is None:
            return None
        return format_recurrence_id(self.recurrence_id)


def effective_span(fields: EventFields, timezone):
    """Return the (start, end) of a field set as aware timestamps."""
    start = as_tz_aware_ts(fields.start, timezone)
    if fields.end is not None:
        end = as_tz_aware_ts(fields.end, timezone)
    elif not isinstance(fields.start, datetime):
        end = as_tz_aware_ts(fields.start + timedelta(days=1), timezone)
    else:
        end = start
    return (start, end)


def overlaps(fields: EventFields, start, end, timezone) -> bool:
    """Check whether a field set overlaps a half-open window.

    See https://tools.ietf.org/html/rfc4791, section 9.9.
    """
    (dtstart, dtend) = effective_span(fields, timezone)
    if start is not None:
        start = as_tz_aware_ts(start, timezone)
    if end is not None:
        end = as_tz_aware_ts(end, timezone)
    if dtstart == dtend:
        return (start is None or start <= dtstart) and (end is None or end > dtstart)
    return (start is None or start < dtend) and (end is None or end > dtstart)


def apply_change_exception(series: Series, recurrence_id, fields) -> ChangeException:
    """Override a single slot.

    Args:
      series: Series to modify in place
      recurrence_id: Nominal start of the slot
      fields: Either an EventFields with the full replacement, or a dict
        with the fields to change; other fields are taken from the existing
        change exception or from the master
    Raises:
      OrphanedRecurrenceIDError: if recurrence_id is not a slot of the series
    Returns: the new ChangeException
    """
    recurrence_id = series.resolve(recurrence_id)
    key = recurrence_key(recurrence_id)
    existing = series.overrides.get(key)
    if isinstance(fields, EventFields):
        new_fields = fields.copy()
    else:
        if isinstance(existing, ChangeException):
            base = existing.fields
        else:
            base = series.slot_fields(recurrence_id)
        new_fields = base.updated(fields)
    if isinstance(existing, DeleteException):
        logger.warning(
            "Re-instantiating deleted occurrence %s of %s",
            format_recurrence_id(recurrence_id),
            series.uid,
        )
    if new_fields.start is None:
        new_fields.start = recurrence_id
    series.slot_states.pop(key, None)
    override = series.overrides[key] = ChangeException(recurrence_id, new_fields)
    return override


def apply_delete_exception(series: Series, recurrence_id) -> DeleteException:
    """Suppress a single slot, replacing any change exception for it.

    Raises:
      OrphanedRecurrenceIDError: if recurrence_id is not a slot of the series
    """
    recurrence_id = series.resolve(recurrence_id)
    key = recurrence_key(recurrence_id)
    series.slot_states.pop(key, None)
    override = series.overrides[key] = DeleteException(recurrence_id)
    return override


def build_overrides(series: Series, exceptions, exdates=()):
    """Build an override map from a submitted payload.

    Args:
      series: Series the overrides apply to (its master and rule are used to
        resolve recurrence ids)
      exceptions: Iterable of (recurrence_id, EventFields) tuples
      exdates: Iterable of suppressed recurrence ids
    Raises:
      ConflictingOverrideError: if a slot is overridden more than once
      OrphanedRecurrenceIDError: if a recurrence id is not a slot
    """
    overrides = {}
    for recurrence_id, fields in exceptions:
        value = series.resolve(recurrence_id)
        key = recurrence_key(value)
        if key in overrides:
            raise ConflictingOverrideError(series.uid, recurrence_id)
        overrides[key] = ChangeException(value, fields)
    for recurrence_id in exdates:
        value = series.resolve(recurrence_id)
        key = recurrence_key(value)
        existing = overrides.get(key)
        if isinstance(existing, DeleteException):
            continue
        if existing is not None:
            raise ConflictingOverrideError(series.uid, recurrence_id)
        overrides[key] = DeleteException(value)
    return overrides


def _wallclock(value):
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime.combine(value, datetime.min.time())


def rebase_overrides(series: Series, previous: Series, moved=None) -> list:
    """Re-key the overrides of a series after its master changed.

    When only the start of the master moved, every override is shifted by
    the same wall-clock offset. Overrides that do not denote a slot of the
    new rule are dropped. Personal slot state is re-keyed the same way.

    Args:
      series: Series with the new master; its overrides are replaced
      previous: Series before the change
      moved: Optional list to which the recurrence ids of change exceptions
        whose times followed the master are appended
    Returns: list of recurrence ids of dropped overrides
    """
    old_start = previous.master.start
    new_start = series.master.start
    offset = None
    if (
        old_start != new_start
        and isinstance(old_start, datetime) == isinstance(new_start, datetime)
        and previous.rule == series.rule
        and previous.rdates == series.rdates
    ):
        offset = _wallclock(new_start) - _wallclock(old_start)
    planner = series.planner()

    def rekey(old_id):
        if offset is not None:
            new_id = planner.normalize(_wallclock(old_id) + offset)
        else:
            new_id = planner.normalize(old_id)
        if new_id is None or not planner.resolve(new_id):
            return None
        return new_id

    old_duration = previous.master.duration
    overrides = {}
    dropped = []
    for override in previous.overrides.values():
        old_id = override.recurrence_id
        new_id = rekey(old_id)
        if new_id is None:
            logger.warning(
                "Dropping override %s of %s: no longer an occurrence",
                format_recurrence_id(old_id),
                series.uid,
            )
            dropped.append(old_id)
            continue
        if isinstance(override, ChangeException):
            fields = override.fields.copy()
            if fields.start == old_id and (
                fields.end is None or fields.end - fields.start == old_duration
            ):
                # Unmoved exceptions follow the master.
                fields.start = new_id
                if fields.end is not None:
                    fields.end = new_id + series.master.duration
                if moved is not None and (fields.start, fields.end) != (
                    override.fields.start,
                    override.fields.end,
                ):
                    moved.append(new_id)
            override = ChangeException(new_id, fields)
        else:
            override = DeleteException(new_id)
        overrides[recurrence_key(new_id)] = override
    series.overrides = overrides
    slot_states = {}
    for states in previous.slot_states.values():
        if not states:
            continue
        old_id = next(iter(states.values())).recurrence_id
        new_id = rekey(old_id)
        if new_id is None:
            logger.warning(
                "Dropping personal state for %s of %s: no longer an occurrence",
                format_recurrence_id(old_id),
                series.uid,
            )
            continue
        slot_states[recurrence_key(new_id)] = {
            user: state.copy(new_id) for (user, state) in states.items()
        }
    series.slot_states = slot_states
    series.prune_slot_states()
    return dropped


def _sort_key(occurrence, timezone):
    return (
        as_tz_aware_ts(occurrence.start, timezone),
        asutc(as_tz_aware_ts(occurrence.recurrence_id, timezone))
        if occurrence.recurrence_id is not None
        else None,
    )


def materialize(series: Series, start=None, end=None, limit: Optional[int] = None):
    """Merge a series and its overrides into logical occurrences.

    Args:
      series: The series
      start: Window start (inclusive), or None
      end: Window end (exclusive); None is only allowed for bounded series
      limit: Maximum number of occurrences to produce
    Raises:
      TooManyInstances: if more than ``limit`` occurrences are produced
    Returns: list of Occurrence objects, ordered by effective start and then
      recurrence id
    """
    planner = series.planner()
    timezone = planner.timezone
    if not series.is_recurring:
        fields = series.master.copy()
        if overlaps(fields, start, end, timezone) and not series.overrides:
            return [Occurrence(series.uid, series.owner, None, fields)]
        return []
    duration = series.master.duration
    if series.all_day and series.master.end is None:
        duration = timedelta(days=1)
    if start is not None and duration:
        adjusted_start = as_tz_aware_ts(start, timezone) - duration
    else:
        adjusted_start = start
    leftover = dict(series.overrides)
    ret = []
    for recurrence_id in planner.between(adjusted_start, end):
        key = recurrence_key(recurrence_id)
        override = leftover.pop(key, None)
        if isinstance(override, DeleteException):
            continue
        if override is None:
            occurrence = Occurrence(
                series.uid,
                series.owner,
                recurrence_id,
                series.slot_fields(recurrence_id),
            )
        else:
            occurrence = Occurrence(
                series.uid,
                series.owner,
                recurrence_id,
                override.fields.copy(),
                overridden=True,
            )
        if not overlaps(occurrence.fields, start, end, timezone):
            continue
        ret.append(occurrence)
        if limit is not None and len(ret) > limit:
            raise TooManyInstances(series.uid, limit)
    # Change exceptions moved into the window from a slot outside it
    for override in leftover.values():
        if not isinstance(override, ChangeException):
            continue
        if overlaps(override.fields, start, end, timezone):
            ret.append(
                Occurrence(
                    series.uid,
                    series.owner,
                    override.recurrence_id,
                    override.fields.copy(),
                    overridden=True,
                )
            )
    if limit is not None and len(ret) > limit:
        raise TooManyInstances(series.uid, limit)
    ret.sort(key=lambda o: _sort_key(o, timezone))
    return ret


def get_occurrence(series: Series, recurrence_id) -> Optional[Occurrence]:
    """Return the logical occurrence for a slot, or None if it is suppressed.

    Raises:
      OrphanedRecurrenceIDError: if recurrence_id is not a slot of the series
    """
    recurrence_id = series.resolve(recurrence_id)
    override = series.overrides.get(recurrence_key(recurrence_id))
    if isinstance(override, DeleteException):
        return None
    if isinstance(override, ChangeException):
        return Occurrence(
            series.uid,
            series.owner,
            override.recurrence_id,
            override.fields.copy(),
            overridden=True,
        )
    return Occurrence(
        series.uid, series.owner, recurrence_id, series.slot_fields(recurrence_id)
    )
