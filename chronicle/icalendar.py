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

"""Conversion between iCalendar data and series.

Properties that have no meaning for scheduling are passed through
verbatim. TZID parameters are emitted for date-time values; VTIMEZONE
components are not generated, since timezones are referred to by their
IANA names.
"""

import logging
from datetime import datetime, timedelta, timezone

from icalendar.cal import Alarm as VAlarm
from icalendar.cal import Calendar, Event
from icalendar.prop import vCalAddress, vDDDTypes, vRecur, vText

from .alarms import AlarmPatch, with_default_alarm
from .model import (
    CLASS_PUBLIC,
    PARTSTAT_NEEDS_ACTION,
    RELATED_END,
    ROLE_REQ_PARTICIPANT,
    SHOWN_AS_ABSENT,
    SHOWN_AS_FREE,
    SHOWN_AS_RESERVED,
    SHOWN_AS_TEMPORARY,
    TRANSP_OPAQUE,
    EventFields,
    Participant,
    normalize_address,
)
from .operations import ResourcePayload
from .overlay import ChangeException, DeleteException
from .recurrence import (
    RecurrenceRule,
    get_timezone,
    localize,
    recurrence_key,
    timezone_name,
)

logger = logging.getLogger(__name__)

PRODID = "-//Chronicle//Chronicle//EN"

BUSYSTATUS = "X-MICROSOFT-CDO-BUSYSTATUS"
PRIVATE_COMMENT = "X-CALENDARSERVER-PRIVATE-COMMENT"
ATTENDEE_COMMENT = "X-CALENDARSERVER-ATTENDEE-COMMENT"
ATTENDEE_REF = "X-CALENDARSERVER-ATTENDEE-REF"
ALARM_UID_PROPERTIES = ("UID", "X-WR-ALARMUID")

BUSYSTATUS_TO_SHOWN_AS = {
    "FREE": SHOWN_AS_FREE,
    "TENTATIVE": SHOWN_AS_TEMPORARY,
    "BUSY": SHOWN_AS_RESERVED,
    "OOF": SHOWN_AS_ABSENT,
}
SHOWN_AS_TO_BUSYSTATUS = {v: k for (k, v) in BUSYSTATUS_TO_SHOWN_AS.items()}

# Properties that are regenerated on output and ignored on input.
IGNORED_PROPERTIES = ("DTSTAMP", "LAST-MODIFIED", "CREATED")

# Properties that are mapped to event fields.
HANDLED_PROPERTIES = (
    "UID",
    "DTSTART",
    "DTEND",
    "DURATION",
    "RECURRENCE-ID",
    "RRULE",
    "RDATE",
    "EXDATE",
    "SUMMARY",
    "LOCATION",
    "DESCRIPTION",
    "CLASS",
    "TRANSP",
    "STATUS",
    "SEQUENCE",
    "ORGANIZER",
    "ATTENDEE",
    BUSYSTATUS,
    PRIVATE_COMMENT,
    ATTENDEE_COMMENT,
)

HANDLED_ALARM_PROPERTIES = ALARM_UID_PROPERTIES + (
    "ACTION",
    "TRIGGER",
    "DESCRIPTION",
    "ACKNOWLEDGED",
    "RELATED-TO",
)


class InvalidCalendarData(Exception):
    """Calendar data could not be understood."""

    reason = "INVALID_DATA"
    retriable = False

    def __init__(self, error: str) -> None:
        super().__init__(error)
        self.error = error


def _as_list(value):
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(comp, name):
    try:
        return str(comp[name])
    except KeyError:
        return None


def _param(prop, name):
    try:
        return str(prop.params[name])
    except (AttributeError, KeyError):
        return None


class _Reader:
    """Reads components of one resource, resolving floating times."""

    def __init__(self, default_timezone, viewer) -> None:
        self.default_timezone = get_timezone(default_timezone)
        self.viewer = normalize_address(viewer) if viewer else None

    def value(self, value):
        if isinstance(value, datetime) and value.tzinfo is None:
            return localize(value, self.default_timezone)
        return value

    def dates(self, comp, name):
        ret = []
        for prop in _as_list(comp.get(name)):
            for item in prop.dts:
                if isinstance(item.dt, (tuple, timedelta)):
                    logger.debug("Ignoring period in %s", name)
                    continue
                ret.append(self.value(item.dt))
        return ret

    def participants(self, comp):
        comments = {}
        for prop in _as_list(comp.get(ATTENDEE_COMMENT)):
            ref = _param(prop, ATTENDEE_REF)
            if ref:
                comments[normalize_address(ref)] = str(prop)
        private_comment = _text(comp, PRIVATE_COMMENT)
        ret = []
        for prop in _as_list(comp.get("ATTENDEE")):
            address = normalize_address(str(prop))
            rsvp = _param(prop, "RSVP")
            comment = comments.get(address)
            if address == self.viewer and private_comment is not None:
                comment = private_comment
            ret.append(
                Participant(
                    address,
                    role=(_param(prop, "ROLE") or ROLE_REQ_PARTICIPANT).upper(),
                    partstat=(_param(prop, "PARTSTAT") or PARTSTAT_NEEDS_ACTION).upper(),
                    rsvp=rsvp is not None and rsvp.upper() == "TRUE",
                    comment=comment,
                    common_name=_param(prop, "CN"),
                )
            )
        return ret

    def alarms(self, comp):
        ret = []
        for sub in comp.subcomponents:
            if sub.name != "VALARM":
                continue
            uid = None
            for name in ALARM_UID_PROPERTIES:
                if name in sub:
                    uid = str(sub[name])
                    break
            properties = {}
            if "ACTION" in sub:
                properties["action"] = str(sub["ACTION"]).upper()
            if "TRIGGER" in sub:
                properties["trigger"] = sub["TRIGGER"].dt
                related = _param(sub["TRIGGER"], "RELATED")
                if related:
                    properties["related"] = related.upper()
            if "DESCRIPTION" in sub:
                properties["description"] = str(sub["DESCRIPTION"])
            if "ACKNOWLEDGED" in sub:
                properties["acknowledged"] = sub["ACKNOWLEDGED"].dt
            if "RELATED-TO" in sub:
                properties["related_to"] = str(sub["RELATED-TO"])
            for name, value in sub.property_items(recursive=False, sorted=False):
                if name in HANDLED_ALARM_PROPERTIES or name in ("BEGIN", "END"):
                    continue
                properties[name] = value
            ret.append(AlarmPatch(uid, properties))
        return ret

    def fields(self, comp) -> EventFields:
        if "DTSTART" not in comp:
            raise InvalidCalendarData("VEVENT without DTSTART")
        start = self.value(comp["DTSTART"].dt)
        if "DTEND" in comp:
            end = self.value(comp["DTEND"].dt)
        elif "DURATION" in comp:
            end = start + comp["DURATION"].dt
        else:
            end = None
        busystatus = _text(comp, BUSYSTATUS)
        organizer = _text(comp, "ORGANIZER")
        extra = []
        for name, value in comp.property_items(recursive=False, sorted=False):
            if name in ("BEGIN", "END"):
                continue
            if name in HANDLED_PROPERTIES or name in IGNORED_PROPERTIES:
                continue
            extra.append((name, value))
        return EventFields(
            summary=_text(comp, "SUMMARY"),
            location=_text(comp, "LOCATION"),
            description=_text(comp, "DESCRIPTION"),
            start=start,
            end=end,
            classification=(_text(comp, "CLASS") or CLASS_PUBLIC).upper(),
            transp=(_text(comp, "TRANSP") or TRANSP_OPAQUE).upper(),
            shown_as=BUSYSTATUS_TO_SHOWN_AS.get(busystatus.upper())
            if busystatus
            else None,
            status=_text(comp, "STATUS").upper() if "STATUS" in comp else None,
            organizer=organizer,
            participants=self.participants(comp),
            sequence=int(comp.get("SEQUENCE", 0)),
            extra=extra,
        )


def parse_calendar(data, default_timezone="UTC", viewer=None) -> ResourcePayload:
    """Parse a calendar resource.

    Args:
      data: iCalendar data (bytes or str) or a Calendar object
      default_timezone: Timezone for floating times
      viewer: Calendar user address of the submitting user; their private
        comment is attached to their participant record
    Raises:
      InvalidCalendarData: if the data can not be parsed or does not
        describe a single series
      MalformedRuleError: if the recurrence rule is malformed
    Returns: ResourcePayload
    """
    if isinstance(data, Calendar):
        cal = data
    else:
        try:
            cal = Calendar.from_ical(data)
        except ValueError as exc:
            raise InvalidCalendarData(str(exc)) from exc
    vevents = [comp for comp in cal.subcomponents if comp.name == "VEVENT"]
    if not vevents:
        raise InvalidCalendarData("no VEVENT components")
    uids = {_text(comp, "UID") for comp in vevents}
    if len(uids) != 1 or None in uids:
        raise InvalidCalendarData(f"expected a single UID, got {sorted(map(str, uids))}")
    masters = [comp for comp in vevents if "RECURRENCE-ID" not in comp]
    if len(masters) != 1:
        raise InvalidCalendarData(f"expected one master component, got {len(masters)}")
    master = masters[0]
    reader = _Reader(default_timezone, viewer)
    fields = reader.fields(master)
    tzname = None
    if isinstance(master["DTSTART"].dt, datetime):
        if master["DTSTART"].dt.tzinfo is not None:
            tzname = timezone_name(master["DTSTART"].dt.tzinfo)
        if tzname is None:
            tzname = timezone_name(reader.default_timezone)
    rules = _as_list(master.get("RRULE"))
    if len(rules) > 1:
        raise InvalidCalendarData("multiple RRULE properties")
    rule = RecurrenceRule.from_vrecur(rules[0]) if rules else None
    alarms = {None: reader.alarms(master)}
    exceptions = []
    for comp in vevents:
        if comp is master:
            continue
        recurrence_id = reader.value(comp["RECURRENCE-ID"].dt)
        exceptions.append((recurrence_id, reader.fields(comp)))
        alarms[recurrence_key(recurrence_id)] = reader.alarms(comp)
    return ResourcePayload(
        uid=_text(master, "UID"),
        master=fields,
        rule=rule,
        timezone=tzname,
        rdates=reader.dates(master, "RDATE"),
        exdates=reader.dates(master, "EXDATE"),
        exceptions=exceptions,
        alarms=alarms,
    )


def _alarm_component(alarm) -> VAlarm:
    comp = VAlarm()
    comp.add("UID", alarm.uid)
    comp.add("ACTION", alarm.action)
    trigger = vDDDTypes(alarm.trigger)
    if isinstance(alarm.trigger, datetime):
        trigger.params["VALUE"] = "DATE-TIME"
    elif alarm.related == RELATED_END:
        trigger.params["RELATED"] = RELATED_END
    comp.add("TRIGGER", trigger, encode=False)
    if alarm.description is not None:
        comp.add("DESCRIPTION", alarm.description)
    if alarm.acknowledged is not None:
        comp.add("ACKNOWLEDGED", alarm.acknowledged.astimezone(timezone.utc))
    if alarm.related_to is not None:
        comp.add("RELATED-TO", alarm.related_to)
    for name, value in alarm.extra.items():
        comp.add(name, value, encode=not hasattr(value, "to_ical"))
    return comp


def _event_component(uid, fields, viewer, recurrence_id=None, default_alarm=False, now=None) -> Event:
    comp = Event()
    comp.add("UID", uid)
    comp.add("DTSTAMP", (now or datetime.now(timezone.utc)).astimezone(timezone.utc))
    if recurrence_id is not None:
        comp.add("RECURRENCE-ID", recurrence_id)
    comp.add("DTSTART", fields.start)
    if fields.end is not None:
        comp.add("DTEND", fields.end)
    comp.add("SEQUENCE", fields.sequence)
    if fields.summary is not None:
        comp.add("SUMMARY", fields.summary)
    if fields.location is not None:
        comp.add("LOCATION", fields.location)
    if fields.description is not None:
        comp.add("DESCRIPTION", fields.description)
    if fields.classification != CLASS_PUBLIC:
        comp.add("CLASS", fields.classification)
    if fields.transp != TRANSP_OPAQUE:
        comp.add("TRANSP", fields.transp)
    if fields.status is not None:
        comp.add("STATUS", fields.status)
    if fields.shown_as is not None:
        comp.add(BUSYSTATUS, SHOWN_AS_TO_BUSYSTATUS[fields.shown_as])
    if fields.organizer is not None:
        comp.add("ORGANIZER", vCalAddress(fields.organizer), encode=False)
    for p in fields.participants:
        attendee = vCalAddress(p.address)
        attendee.params["PARTSTAT"] = p.partstat
        attendee.params["ROLE"] = p.role
        if p.rsvp:
            attendee.params["RSVP"] = "TRUE"
        if p.common_name:
            attendee.params["CN"] = p.common_name
        comp.add("ATTENDEE", attendee, encode=False)
        if p.comment is None:
            continue
        if p.address == viewer:
            comp.add(PRIVATE_COMMENT, p.comment)
        else:
            comment = vText(p.comment)
            comment.params[ATTENDEE_REF] = p.address
            comp.add(ATTENDEE_COMMENT, comment, encode=False)
    for name, value in fields.extra:
        comp.add(name, value, encode=not hasattr(value, "to_ical"))
    alarms = fields.alarms.get(viewer, []) if viewer is not None else []
    if default_alarm:
        alarms = with_default_alarm(alarms)
    for alarm in alarms:
        comp.add_component(_alarm_component(alarm))
    return comp


def _new_calendar() -> Calendar:
    cal = Calendar()
    cal.add("PRODID", PRODID)
    cal.add("VERSION", "2.0")
    return cal


def calendar_for_series(series, viewer=None, default_alarm=False, now=None) -> Calendar:
    """Render a (projected) series as a calendar resource.

    Args:
      series: Series, usually as returned by CalendarEngine.get()
      viewer: Calendar user address whose alarms and private comment are
        included
      default_alarm: Whether to add the default alarm
    """
    viewer = normalize_address(viewer) if viewer else None
    cal = _new_calendar()
    master = _event_component(series.uid, series.master, viewer, None, default_alarm, now)
    if series.rule is not None:
        master.add("RRULE", vRecur.from_ical(series.rule.to_ical()), encode=False)
    for rdate in series.rdates:
        master.add("RDATE", rdate)
    for key in sorted(series.overrides):
        override = series.overrides[key]
        if isinstance(override, DeleteException):
            master.add("EXDATE", override.recurrence_id)
    cal.add_component(master)
    instances = {
        key: (override.recurrence_id, override.fields)
        for (key, override) in series.overrides.items()
        if isinstance(override, ChangeException)
    }
    # Personal replies and alarms for single slots.
    for key, states in series.slot_states.items():
        if key not in instances and states:
            recurrence_id = next(iter(states.values())).recurrence_id
            instances[key] = (recurrence_id, series.slot_fields(recurrence_id))
    for key in sorted(instances):
        (recurrence_id, fields) = instances[key]
        cal.add_component(
            _event_component(
                series.uid, fields, viewer, recurrence_id, default_alarm, now
            )
        )
    return cal


def calendar_for_occurrence(occurrence, default_alarm=False, now=None) -> Calendar:
    """Render a single projected occurrence."""
    cal = _new_calendar()
    cal.add_component(
        _event_component(
            occurrence.uid,
            occurrence.fields,
            occurrence.viewer,
            occurrence.recurrence_id,
            default_alarm,
            now,
        )
    )
    return cal
