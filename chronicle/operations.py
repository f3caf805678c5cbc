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

"""Mutations of a series.

Every operation is applied to a private copy of the committed series, so
that a rejected operation leaves no trace. Operations implement the role
policy of the calendar:

* the organizer (or owner) of a series controls the shared fields; moving
  the master resets the participation status of all other participants
  and increments the sequence number.
* attendees may only change their own participation status, their own
  comment and their own alarms. Deleting an occurrence or the series
  declines it on their behalf.
"""

import logging
from datetime import datetime
from typing import Optional

from .alarms import AlarmPatch, is_default_alarm, merge_alarms
from .guard import MutationRejected, PermissionDenied
from .model import (
    PARTSTAT_DECLINED,
    PARTSTAT_NEEDS_ACTION,
    PARTSTATS,
    EventFields,
    normalize_address,
)
from .overlay import (
    ChangeException,
    DeleteException,
    DuplicateUidError,
    NoSuchSeries,
    OrphanedRecurrenceIDError,
    Series,
    apply_change_exception,
    apply_delete_exception,
    build_overrides,
    get_occurrence,
    rebase_overrides,
)
from .recurrence import (
    format_recurrence_id,
    get_timezone,
    localize,
    parse_rule,
    recurrence_key,
    timezone_name,
)

logger = logging.getLogger(__name__)


class _Unchanged:

    def __repr__(self) -> str:
        return "UNCHANGED"


UNCHANGED = _Unchanged()


class InvalidEventError(MutationRejected):
    """The submitted event data is not acceptable."""

    reason = "INVALID_EVENT"

    def __init__(self, uid, error: str) -> None:
        super().__init__(f"Invalid event {uid!r}: {error}")
        self.uid = uid
        self.error = error


class ResourcePayload:
    """A complete series as submitted by a client.

    Args:
      uid: UID of the series
      master: EventFields of the master (alarms are taken from ``alarms``)
      rule: Recurrence rule, or None
      timezone: Reference timezone name, or None to derive it from the start
      rdates: Additional occurrence starts
      exdates: Suppressed recurrence ids
      exceptions: list of (recurrence_id, EventFields) tuples
      alarms: dict mapping None (for the master) or the recurrence key of an
        exception to the list of AlarmPatch objects sent for it
    """

    def __init__(
        self,
        uid,
        master,
        rule=None,
        timezone=None,
        rdates=(),
        exdates=(),
        exceptions=(),
        alarms=None,
    ) -> None:
        self.uid = uid
        self.master = master
        self.rule = rule
        self.timezone = timezone
        self.rdates = list(rdates)
        self.exdates = list(exdates)
        self.exceptions = list(exceptions)
        self.alarms = dict(alarms or {})

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.uid!r})"


def is_organizer(series: Series, actor: str) -> bool:
    """Check whether a calendar user controls the shared fields of a series."""
    actor = normalize_address(actor)
    return actor == normalize_address(series.owner) or series.master.is_organizer(
        actor
    )


def _series_timezone(uid, start, timezone, config) -> str:
    if timezone is not None:
        try:
            return timezone_name(get_timezone(timezone)) or timezone
        except ValueError as exc:
            raise InvalidEventError(uid, str(exc)) from exc
    if isinstance(start, datetime) and start.tzinfo is not None:
        name = timezone_name(start.tzinfo)
        if name is not None:
            return name
    return config.get_timezone()


def _in_timezone(value, tz):
    if not isinstance(value, datetime):
        return value
    if value.tzinfo is None:
        return localize(value, tz)
    return value.astimezone(tz)


def _prepare_fields(fields: EventFields, timezone) -> EventFields:
    tz = get_timezone(timezone)
    ret = fields.copy()
    ret.start = _in_timezone(ret.start, tz)
    ret.end = _in_timezone(ret.end, tz)
    ret.alarms = {
        normalize_address(user): [a for a in alarms if not is_default_alarm(a)]
        for (user, alarms) in ret.alarms.items()
    }
    return ret


def _check_fields(uid, fields: EventFields) -> None:
    if fields.start is None:
        raise InvalidEventError(uid, "a start is required")
    if fields.end is not None:
        if isinstance(fields.start, datetime) != isinstance(fields.end, datetime):
            raise InvalidEventError(uid, "start and end must be of the same type")
        if fields.end < fields.start:
            raise InvalidEventError(uid, "end is before start")


def _check_series(series: Series) -> None:
    _check_fields(series.uid, series.master)
    try:
        planner = series.planner()
    except ValueError as exc:
        raise InvalidEventError(series.uid, str(exc)) from exc
    # Builds the rule, which reports rules dateutil can not expand.
    next(planner.occurrences(), None)
    for override in series.change_exceptions():
        _check_fields(series.uid, override.fields)


def _as_patches(alarms):
    return [a if isinstance(a, AlarmPatch) else AlarmPatch.from_alarm(a) for a in alarms]


def _merge_user_alarms(fields: EventFields, user: str, incoming):
    merged = merge_alarms(fields.alarms.get(user, []), _as_patches(incoming), user)
    if merged.alarms:
        fields.alarms[user] = merged.alarms
    else:
        fields.alarms.pop(user, None)
    return merged


def _merge_participants(previous, incoming, actor):
    """Merge a submitted participant list into the stored one.

    Participation state of existing participants is retained, except for
    the actor's own record; new participants start out as NEEDS-ACTION.
    """
    stored = {p.address: p for p in previous}
    ret = []
    for p in incoming:
        old = stored.get(p.address)
        if p.address == actor:
            ret.append(p.copy())
        elif old is not None:
            ret.append(old.copy(role=p.role, common_name=p.common_name))
        else:
            ret.append(
                p.copy(
                    partstat=PARTSTAT_NEEDS_ACTION, rsvp=True, comment=None, hidden=False
                )
            )
    return ret


def _participant_set(fields: EventFields):
    return {(p.address, p.role) for p in fields.participants}


def _reset_partstats(fields: EventFields, organizer: str) -> None:
    for p in fields.participants:
        if p.address != organizer and p.address != fields.organizer:
            p.partstat = PARTSTAT_NEEDS_ACTION
            p.rsvp = True


def _schedule(series: Series):
    return (
        series.master.start,
        series.master.end,
        series.rule,
        series.rdates,
        series.timezone,
    )


def _finish_master(previous: Series, new: Series, actor: str) -> None:
    if _schedule(previous) != _schedule(new):
        _reset_partstats(new.master, actor)
        new.clear_slot_replies()
        new.master.sequence = previous.master.sequence + 1
    elif _participant_set(previous.master) != _participant_set(new.master):
        new.master.sequence = previous.master.sequence + 1
    else:
        new.master.sequence = previous.master.sequence
    new.prune_slot_states()


def _finish_exception(base: EventFields, fields: EventFields, actor, master_sequence):
    sequence = max(base.sequence, master_sequence)
    if (base.start, base.end) != (fields.start, fields.end):
        _reset_partstats(fields, actor)
        sequence += 1
    elif _participant_set(base) != _participant_set(fields):
        sequence += 1
    fields.sequence = sequence


def _store_slot_state(series: Series, recurrence_id, actor, reply=UNCHANGED, alarms=UNCHANGED):
    """Record personal state of a participant for an inherited slot.

    Values equal to what the slot inherits from the master are not stored.
    """
    me = series.master.participant(actor)
    if me is None and not is_organizer(series, actor):
        raise PermissionDenied(actor, "not a participant of this event")
    state = series.slot_state(recurrence_id, actor)
    if reply is not UNCHANGED:
        if me is None:
            raise PermissionDenied(actor, "not a participant of this event")
        state.reply = None if reply == me.state() else reply
    if alarms is not UNCHANGED:
        inherited = series.master.alarms.get(actor, [])
        state.alarms = None if alarms == inherited else list(alarms)
    series.prune_slot_states()


def _merge_slot_alarms(series: Series, recurrence_id, actor, incoming):
    current = series.slot_fields(recurrence_id).alarms.get(actor, [])
    merged = merge_alarms(current, _as_patches(incoming), actor)
    _store_slot_state(series, recurrence_id, actor, alarms=merged.alarms)
    return merged


def _set_own_state(series: Series, recurrence_id, actor, **changes) -> bool:
    """Update the actor's participant record, on the master or one slot.

    Replies for a single slot that is not overridden are kept as personal
    slot state, so they do not change the event for anybody else.

    Returns: whether anything changed
    """
    if recurrence_id is None:
        fields = series.master
    else:
        recurrence_id = series.resolve(recurrence_id)
        override = series.find_override(recurrence_id)
        if isinstance(override, DeleteException):
            return False
        if isinstance(override, ChangeException):
            fields = override.fields
        else:
            current = series.slot_fields(recurrence_id).participant(actor)
            if current is None:
                raise PermissionDenied(actor, "not a participant of this event")
            updated = current.copy(**changes)
            if updated == current:
                return False
            _store_slot_state(series, recurrence_id, actor, reply=updated.state())
            return True
    me = fields.participant(actor)
    if me is None:
        raise PermissionDenied(actor, "not a participant of this event")
    updated = me.copy(**changes)
    if updated == me:
        return False
    fields.participants[fields.participants.index(me)] = updated
    return True


class Operation:
    """A mutation of a single series.

    Subclasses implement apply(), which receives a private copy of the
    stored series (or None if there is none) and returns the new series,
    or None if the series is to be removed.
    """

    def apply(self, series: Optional[Series], uid, actor: str, config) -> Optional[Series]:
        raise NotImplementedError(self.apply)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _create(uid, actor, config, master, rule, timezone, rdates, exceptions, exdates, alarms):
    timezone = _series_timezone(uid, master.start, timezone, config)
    master = _prepare_fields(master, timezone)
    if master.organizer is None:
        master.organizer = actor
    own_alarms = alarms.get(None, master.alarms.get(actor, []))
    master.alarms = {}
    for p in master.participants:
        if p.address != master.organizer:
            p.partstat = PARTSTAT_NEEDS_ACTION
    master.sequence = 0
    rdates = [_in_timezone(r, get_timezone(timezone)) for r in rdates]
    series = Series(uid, actor, master, parse_rule(rule), timezone, rdates)
    _check_fields(uid, master)
    _merge_user_alarms(series.master, actor, own_alarms)
    prepared = []
    for recurrence_id, fields in exceptions:
        fields = _prepare_fields(fields, timezone)
        prepared.append((recurrence_id, fields))
    series.overrides = build_overrides(series, prepared, exdates)
    for override in series.change_exceptions():
        fields = override.fields
        own_alarms = alarms.get(
            recurrence_key(override.recurrence_id), fields.alarms.get(actor, [])
        )
        fields.alarms = {}
        _merge_user_alarms(fields, actor, own_alarms)
        if fields.organizer is None:
            fields.organizer = master.organizer
        fields.participants = _merge_participants(
            master.participants, fields.participants, actor
        )
        _finish_exception(
            series.nominal_fields(override.recurrence_id), fields, actor, 0
        )
    _check_series(series)
    return series


class CreateSeries(Operation):
    """Create a new series, owned and organized by the acting user."""

    def __init__(self, fields: EventFields, rule=None, timezone=None, rdates=(),
                 exceptions=(), exdates=()) -> None:
        self.fields = fields
        self.rule = rule
        self.timezone = timezone
        self.rdates = rdates
        self.exceptions = exceptions
        self.exdates = exdates

    def apply(self, series, uid, actor, config):
        if series is not None:
            raise DuplicateUidError(uid, series.owner)
        return _create(
            uid,
            normalize_address(actor),
            config,
            self.fields,
            self.rule,
            self.timezone,
            self.rdates,
            self.exceptions,
            self.exdates,
            {},
        )


class UpdateSeries(Operation):
    """Change fields of the master.

    Args:
      patch: dict with the master fields to change
      rule: New recurrence rule (None to remove it)
      rdates: New recurrence dates
      timezone: New reference timezone
    """

    def __init__(self, patch=None, rule=UNCHANGED, rdates=UNCHANGED, timezone=UNCHANGED) -> None:
        self.patch = dict(patch or {})
        self.rule = rule
        self.rdates = rdates
        self.timezone = timezone

    def apply(self, series, uid, actor, config):
        if series is None:
            raise NoSuchSeries(uid)
        actor = normalize_address(actor)
        if not is_organizer(series, actor):
            raise PermissionDenied(actor, "only the organizer can change the series")
        new = series.copy()
        patch = dict(self.patch)
        alarms = patch.pop("alarms", None)
        if self.timezone is not UNCHANGED:
            new.timezone = _series_timezone(uid, None, self.timezone, config)
        try:
            master = new.master.updated(patch)
        except KeyError as exc:
            raise InvalidEventError(uid, f"field {exc.args[0]} can not be changed") from exc
        if "participants" in patch:
            master.participants = _merge_participants(
                series.master.participants, master.participants, actor
            )
        new.master = _prepare_fields(master, new.timezone)
        if alarms is not None:
            _merge_user_alarms(new.master, actor, alarms)
        if self.rule is not UNCHANGED:
            new.rule = parse_rule(self.rule)
        tz = get_timezone(new.timezone)
        if self.rdates is not UNCHANGED:
            new.rdates = tuple(_in_timezone(r, tz) for r in self.rdates)
        _check_series(new)
        moved = []
        if _schedule(series) != _schedule(new):
            rebase_overrides(new, series, moved)
        _finish_master(series, new, actor)
        for recurrence_id in moved:
            # Exceptions that followed the master were rescheduled too.
            fields = new.find_override(recurrence_id).fields
            _reset_partstats(fields, actor)
            fields.sequence = max(fields.sequence + 1, new.master.sequence)
        return new


class PutChangeException(Operation):
    """Override a single occurrence.

    Args:
      recurrence_id: Nominal start of the occurrence
      fields: dict with the fields to change, or complete EventFields
    """

    def __init__(self, recurrence_id, fields) -> None:
        self.recurrence_id = recurrence_id
        self.fields = fields

    def apply(self, series, uid, actor, config):
        if series is None:
            raise NoSuchSeries(uid)
        actor = normalize_address(actor)
        if not is_organizer(series, actor):
            raise PermissionDenied(
                actor, "only the organizer can change occurrences"
            )
        new = series.copy()
        recurrence_id = new.resolve(self.recurrence_id)
        existing = new.find_override(recurrence_id)
        if isinstance(existing, ChangeException):
            base = existing.fields
        else:
            base = new.slot_fields(recurrence_id)
        alarms = None
        if isinstance(self.fields, EventFields):
            fields = self.fields.copy()
            alarms = fields.alarms.get(actor)
            fields.alarms = dict(base.alarms)
        else:
            patch = dict(self.fields)
            alarms = patch.pop("alarms", None)
            try:
                fields = base.updated(patch)
            except KeyError as exc:
                raise InvalidEventError(
                    uid, f"field {exc.args[0]} can not be changed"
                ) from exc
        fields = _prepare_fields(fields, new.timezone)
        fields.participants = _merge_participants(
            base.participants, fields.participants, actor
        )
        if alarms is not None:
            _merge_user_alarms(fields, actor, alarms)
        _check_fields(uid, fields)
        _finish_exception(base, fields, actor, new.master.sequence)
        apply_change_exception(new, recurrence_id, fields)
        return new


class DeleteOccurrence(Operation):
    """Delete a single occurrence.

    For the organizer this suppresses the occurrence for everybody; for an
    attendee it declines the occurrence.
    """

    def __init__(self, recurrence_id) -> None:
        self.recurrence_id = recurrence_id

    def apply(self, series, uid, actor, config):
        if series is None:
            raise NoSuchSeries(uid)
        actor = normalize_address(actor)
        new = series.copy()
        if is_organizer(series, actor):
            apply_delete_exception(new, self.recurrence_id)
            new.master.sequence += 1
        else:
            _set_own_state(
                new, self.recurrence_id, actor, partstat=PARTSTAT_DECLINED, rsvp=False
            )
        return new


class DeleteSeries(Operation):
    """Delete a series.

    For the organizer this removes the series; an attendee declines it and
    hides it from their own calendar.
    """

    def apply(self, series, uid, actor, config):
        if series is None:
            raise NoSuchSeries(uid)
        actor = normalize_address(actor)
        if is_organizer(series, actor):
            return None
        new = series.copy()
        found = False
        for fields in [new.master] + [o.fields for o in new.change_exceptions()]:
            me = fields.participant(actor)
            if me is not None:
                me.partstat = PARTSTAT_DECLINED
                me.rsvp = False
                me.hidden = True
                found = True
        if not found:
            raise PermissionDenied(actor, "not a participant of this event")
        for states in new.slot_states.values():
            if actor in states:
                states[actor].reply = None
        new.prune_slot_states()
        return new


class Reply(Operation):
    """Set the participation status of the acting user.

    Args:
      partstat: New participation status
      recurrence_id: Occurrence to reply for, or None for the series
      comment: New comment, or UNCHANGED
    """

    def __init__(self, partstat, recurrence_id=None, comment=UNCHANGED) -> None:
        self.partstat = partstat
        self.recurrence_id = recurrence_id
        self.comment = comment

    def apply(self, series, uid, actor, config):
        if series is None:
            raise NoSuchSeries(uid)
        if self.partstat not in PARTSTATS:
            raise InvalidEventError(uid, f"invalid participation status {self.partstat!r}")
        actor = normalize_address(actor)
        new = series.copy()
        changes = {"partstat": self.partstat, "rsvp": False}
        if self.partstat != PARTSTAT_DECLINED:
            changes["hidden"] = False
        if self.comment is not UNCHANGED:
            changes["comment"] = self.comment
        if self.recurrence_id is not None:
            new.resolve(self.recurrence_id)
        _set_own_state(new, self.recurrence_id, actor, **changes)
        return new


class UpdateAlarms(Operation):
    """Replace the alarms of the acting user.

    Args:
      alarms: list of AlarmPatch (or Alarm) objects; the complete set of
        alarms the user wants to keep
      recurrence_id: Occurrence to update, or None for the master
    """

    def __init__(self, alarms, recurrence_id=None) -> None:
        self.alarms = list(alarms)
        self.recurrence_id = recurrence_id

    def apply(self, series, uid, actor, config):
        if series is None:
            raise NoSuchSeries(uid)
        actor = normalize_address(actor)
        new = series.copy()
        if self.recurrence_id is None:
            _merge_user_alarms(new.master, actor, self.alarms)
            return new
        recurrence_id = new.resolve(self.recurrence_id)
        override = new.find_override(recurrence_id)
        if isinstance(override, DeleteException):
            raise OrphanedRecurrenceIDError(uid, self.recurrence_id)
        if isinstance(override, ChangeException):
            _merge_user_alarms(override.fields, actor, self.alarms)
        else:
            _merge_slot_alarms(new, recurrence_id, actor, self.alarms)
        return new


class PutResource(Operation):
    """Store a complete series as submitted by a client.

    Args:
      payload: ResourcePayload
    """

    def __init__(self, payload: ResourcePayload) -> None:
        self.payload = payload

    def apply(self, series, uid, actor, config):
        payload = self.payload
        if payload.uid is not None and payload.uid != uid:
            raise InvalidEventError(uid, f"UID {payload.uid!r} does not match")
        actor = normalize_address(actor)
        if series is None:
            return _create(
                uid,
                actor,
                config,
                payload.master,
                payload.rule,
                payload.timezone,
                payload.rdates,
                payload.exceptions,
                payload.exdates,
                payload.alarms,
            )
        if is_organizer(series, actor):
            return self._apply_organizer(series, uid, actor, config)
        return self._apply_attendee(series, uid, actor)

    def _apply_organizer(self, series, uid, actor, config):
        payload = self.payload
        timezone = _series_timezone(uid, payload.master.start, payload.timezone, config)
        tz = get_timezone(timezone)
        master = _prepare_fields(payload.master, timezone)
        if master.organizer is None:
            master.organizer = series.master.organizer
        master.participants = _merge_participants(
            series.master.participants, master.participants, actor
        )
        master.alarms = dict(series.master.alarms)
        new = Series(
            uid,
            series.owner,
            master,
            parse_rule(payload.rule),
            timezone,
            [_in_timezone(r, tz) for r in payload.rdates],
        )
        _check_fields(uid, master)
        _merge_user_alarms(master, actor, payload.alarms.get(None, []))
        submitted = {
            recurrence_key(new.resolve(recurrence_id))
            for (recurrence_id, unused_fields) in payload.exceptions
        }
        for key, states in series.slot_states.items():
            states = {
                user: state.copy()
                for (user, state) in states.items()
                if user != actor or key in submitted
            }
            try:
                new.resolve(key)
            except OrphanedRecurrenceIDError:
                continue
            if states:
                new.slot_states[key] = states
        _finish_master(series, new, actor)
        prepared = [
            (recurrence_id, _prepare_fields(fields, timezone))
            for (recurrence_id, fields) in payload.exceptions
        ]
        new.overrides = build_overrides(new, prepared, payload.exdates)
        for key, override in list(new.overrides.items()):
            if not isinstance(override, ChangeException):
                continue
            previous = series.overrides.get(key)
            if isinstance(previous, ChangeException):
                base = previous.fields
            else:
                base = new.slot_fields(override.recurrence_id)
            fields = override.fields
            if fields.organizer is None:
                fields.organizer = master.organizer
            fields.participants = _merge_participants(
                base.participants, fields.participants, actor
            )
            if not isinstance(previous, ChangeException) and (
                fields.shared_canonical()
                == new.nominal_fields(override.recurrence_id).shared_canonical()
            ):
                # Only personal state differs from the master.
                del new.overrides[key]
                self._store_personal(new, override.recurrence_id, actor, fields, key)
                continue
            fields.alarms = dict(base.alarms)
            _merge_user_alarms(fields, actor, payload.alarms.get(key, []))
            _finish_exception(base, fields, actor, new.master.sequence)
        new.prune_slot_states()
        _check_series(new)
        return new

    def _store_personal(self, series, recurrence_id, actor, fields, key):
        me = fields.participant(actor)
        if me is not None and series.master.participant(actor) is not None:
            _store_slot_state(series, recurrence_id, actor, reply=me.state())
        if key in self.payload.alarms:
            _merge_slot_alarms(series, recurrence_id, actor, self.payload.alarms[key])

    def _apply_attendee(self, series, uid, actor):
        payload = self.payload
        new = series.copy()
        if (
            payload.master.summary,
            payload.master.location,
            payload.master.description,
            parse_rule(payload.rule),
        ) != (
            series.master.summary,
            series.master.location,
            series.master.description,
            series.rule,
        ):
            logger.debug("Ignoring changes to shared fields of %s by %s", uid, actor)
        me = payload.master.participant(actor)
        if new.master.participant(actor) is not None:
            if me is not None:
                _set_own_state(
                    new, None, actor, partstat=me.partstat, comment=me.comment
                )
            _merge_user_alarms(new.master, actor, payload.alarms.get(None, []))
        for recurrence_id, fields in payload.exceptions:
            recurrence_id = new.resolve(recurrence_id)
            occurrence = get_occurrence(new, recurrence_id)
            if occurrence is None:
                continue
            me = fields.participant(actor)
            current = occurrence.fields.participant(actor)
            if me is None or current is None:
                logger.debug(
                    "Ignoring occurrence %s of %s submitted by %s",
                    format_recurrence_id(recurrence_id),
                    uid,
                    actor,
                )
                continue
            _set_own_state(
                new, recurrence_id, actor, partstat=me.partstat, comment=me.comment
            )
            key = recurrence_key(recurrence_id)
            override = new.overrides.get(key)
            if key not in payload.alarms:
                continue
            if isinstance(override, ChangeException):
                _merge_user_alarms(override.fields, actor, payload.alarms[key])
            else:
                _merge_slot_alarms(new, recurrence_id, actor, payload.alarms[key])
        for recurrence_id in payload.exdates:
            occurrence = get_occurrence(new, recurrence_id)
            if occurrence is None:
                continue
            current = occurrence.fields.participant(actor)
            if current is not None and current.partstat != PARTSTAT_DECLINED:
                _set_own_state(
                    new, recurrence_id, actor, partstat=PARTSTAT_DECLINED, rsvp=False
                )
        return new
