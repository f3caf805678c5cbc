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

"""Recurrence rule handling.

See https://tools.ietf.org/html/rfc5545, section 3.3.10.

All arithmetic happens on wall-clock times in the reference timezone of a
series. Wall-clock times are then attached to the timezone with
:func:`localize`, which resolves daylight saving transitions as follows:

* ambiguous times (clocks fall back) map to the earlier instant, i.e. the
  UTC offset in effect before the transition;
* non-existent times (clocks spring forward) move forward by the length of
  the gap, as described in RFC 5545, section 3.3.5.
"""

import re
from collections.abc import Iterable, Iterator
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import dateutil.rrule
from dateutil import tz as dateutil_tz
from icalendar.prop import vDDDTypes

from .guard import MutationRejected

DateOrDatetime = Union[date, datetime]

FREQUENCIES = {
    "YEARLY": dateutil.rrule.YEARLY,
    "MONTHLY": dateutil.rrule.MONTHLY,
    "WEEKLY": dateutil.rrule.WEEKLY,
    "DAILY": dateutil.rrule.DAILY,
    "HOURLY": dateutil.rrule.HOURLY,
}

WEEKDAYS = {
    "MO": dateutil.rrule.MO,
    "TU": dateutil.rrule.TU,
    "WE": dateutil.rrule.WE,
    "TH": dateutil.rrule.TH,
    "FR": dateutil.rrule.FR,
    "SA": dateutil.rrule.SA,
    "SU": dateutil.rrule.SU,
}

# Numeric list parts with their allowed ranges; zero is never allowed for
# signed parts.
_NUMERIC_PARTS = {
    "BYSECOND": (0, 60, False),
    "BYMINUTE": (0, 59, False),
    "BYHOUR": (0, 23, False),
    "BYMONTHDAY": (1, 31, True),
    "BYYEARDAY": (1, 366, True),
    "BYWEEKNO": (1, 53, True),
    "BYMONTH": (1, 12, False),
    "BYSETPOS": (1, 366, True),
}

_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")

# The order in which parts are rendered by RecurrenceRule.to_ical().
_PART_ORDER = [
    "FREQ",
    "UNTIL",
    "COUNT",
    "INTERVAL",
    "BYSECOND",
    "BYMINUTE",
    "BYHOUR",
    "BYDAY",
    "BYMONTHDAY",
    "BYYEARDAY",
    "BYWEEKNO",
    "BYMONTH",
    "BYSETPOS",
    "WKST",
]


class MalformedRuleError(MutationRejected):
    """A recurrence rule is malformed or unsupported."""

    reason = "MALFORMED_RULE"

    def __init__(self, rule, error: str) -> None:
        super().__init__(f"Malformed recurrence rule {rule!r}: {error}")
        self.rule = rule
        self.error = error


def get_timezone(name_or_tzinfo) -> tzinfo:
    """Look up a reference timezone.

    Args:
      name_or_tzinfo: IANA timezone name or tzinfo object
    Raises:
      ValueError: if the timezone name is unknown
    """
    if isinstance(name_or_tzinfo, str):
        try:
            return ZoneInfo(name_or_tzinfo)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {name_or_tzinfo!r}") from exc
    return name_or_tzinfo


def timezone_name(tz) -> Optional[str]:
    """Return the IANA name of a timezone, if it has one."""
    if tz is None:
        return None
    if tz is timezone.utc:
        return "UTC"
    return getattr(tz, "key", None) or getattr(tz, "zone", None)


def localize(naive: datetime, tz: tzinfo) -> datetime:
    """Attach a timezone to a wall-clock time, resolving DST transitions."""
    dt = naive.replace(tzinfo=tz, fold=0)
    if not dateutil_tz.datetime_exists(dt):
        dt = dateutil_tz.resolve_imaginary(dt)
    return dt


def as_tz_aware_ts(dt: DateOrDatetime, default_timezone) -> datetime:
    """Convert a date or date-time into an aware timestamp.

    Dates are taken to start at midnight; naive values are interpreted in
    ``default_timezone``.
    """
    if not isinstance(dt, datetime):
        _dt = datetime.combine(dt, time())
    else:
        _dt = dt
    if _dt.tzinfo is None:
        _dt = localize(_dt, get_timezone(default_timezone))
    return _dt


def asutc(dt: DateOrDatetime) -> DateOrDatetime:
    """Normalize a value for comparison; aware values become naive UTC."""
    if not isinstance(dt, datetime):
        return dt
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def recurrence_key(recurrence_id: DateOrDatetime) -> DateOrDatetime:
    """Key under which overrides for a slot are stored."""
    return asutc(recurrence_id)


def format_recurrence_id(recurrence_id: DateOrDatetime) -> str:
    """Format a recurrence id the way it appears in resource names."""
    value = asutc(recurrence_id)
    if isinstance(value, datetime):
        if recurrence_id.tzinfo is None:
            return value.strftime("%Y%m%dT%H%M%S")
        return value.strftime("%Y%m%dT%H%M%SZ")
    return value.strftime("%Y%m%d")


def parse_recurrence_id(text: str) -> DateOrDatetime:
    """Parse a recurrence id as formatted by :func:`format_recurrence_id`."""
    try:
        return vDDDTypes.from_ical(text)
    except ValueError as exc:
        raise ValueError(f"invalid recurrence id {text!r}") from exc


def _parse_int(rule, name, value, minimum=None):
    try:
        ret = int(value)
    except ValueError as exc:
        raise MalformedRuleError(rule, f"{name} must be an integer") from exc
    if minimum is not None and ret < minimum:
        raise MalformedRuleError(rule, f"{name} must be at least {minimum}")
    return ret


class RecurrenceRule:
    """A parsed and validated RRULE value."""

    def __init__(
        self,
        freq: str,
        interval: int = 1,
        count: Optional[int] = None,
        until: Optional[DateOrDatetime] = None,
        byday: Iterable[tuple[Optional[int], str]] = (),
        parts: Optional[dict[str, tuple[int, ...]]] = None,
        wkst: Optional[str] = None,
    ) -> None:
        self.freq = freq
        self.interval = interval
        self.count = count
        self.until = until
        self.byday = tuple(byday)
        self.parts = dict(parts or {})
        self.wkst = wkst

    def __repr__(self) -> str:
        return f"{type(self).__name__}.parse({self.to_ical()!r})"

    def __eq__(self, other):
        return isinstance(other, RecurrenceRule) and self.to_ical() == other.to_ical()

    def __hash__(self):
        return hash(self.to_ical())

    @classmethod
    def parse(cls, text: str) -> "RecurrenceRule":
        """Parse a rule from its iCalendar text form.

        Raises:
          MalformedRuleError: if the rule is malformed or unsupported
        """
        rule = text
        text = text.strip()
        if text.upper().startswith("RRULE:"):
            text = text[len("RRULE:") :]
        values: dict[str, str] = {}
        for part in text.split(";"):
            if not part:
                continue
            try:
                (name, value) = part.split("=", 1)
            except ValueError as exc:
                raise MalformedRuleError(rule, f"invalid rule part {part!r}") from exc
            name = name.strip().upper()
            if name in values:
                raise MalformedRuleError(rule, f"duplicate rule part {name}")
            values[name] = value.strip()

        try:
            freq = values.pop("FREQ").upper()
        except KeyError as exc:
            raise MalformedRuleError(rule, "FREQ is required") from exc
        if freq not in FREQUENCIES:
            raise MalformedRuleError(rule, f"unsupported frequency {freq}")

        interval = _parse_int(rule, "INTERVAL", values.pop("INTERVAL", "1"), 1)
        count = values.pop("COUNT", None)
        if count is not None:
            count = _parse_int(rule, "COUNT", count, 1)
        until = values.pop("UNTIL", None)
        if until is not None:
            if count is not None:
                raise MalformedRuleError(rule, "COUNT and UNTIL are mutually exclusive")
            try:
                until = vDDDTypes.from_ical(until)
            except ValueError as exc:
                raise MalformedRuleError(rule, f"invalid UNTIL {until!r}") from exc

        byday = []
        for item in filter(None, values.pop("BYDAY", "").upper().split(",")):
            m = _BYDAY_RE.match(item.strip())
            if not m:
                raise MalformedRuleError(rule, f"invalid BYDAY value {item!r}")
            ordinal = int(m.group(1)) if m.group(1) else None
            if ordinal is not None and not (1 <= abs(ordinal) <= 53):
                raise MalformedRuleError(rule, f"invalid BYDAY ordinal {item!r}")
            byday.append((ordinal, m.group(2)))

        parts = {}
        for name, (low, high, signed) in _NUMERIC_PARTS.items():
            if name not in values:
                continue
            numbers = []
            for item in values.pop(name).split(","):
                number = _parse_int(rule, name, item)
                magnitude = abs(number) if signed else number
                if (not signed and number < 0) or not (low <= magnitude <= high):
                    raise MalformedRuleError(rule, f"{name} value {number} out of range")
                numbers.append(number)
            parts[name] = tuple(numbers)

        wkst = values.pop("WKST", None)
        if wkst is not None:
            wkst = wkst.upper()
            if wkst not in WEEKDAYS:
                raise MalformedRuleError(rule, f"invalid WKST {wkst!r}")

        if values:
            raise MalformedRuleError(
                rule, "unsupported rule parts: " + ", ".join(sorted(values))
            )

        ret = cls(freq, interval, count, until, byday, parts, wkst)
        ret._validate(rule)
        return ret

    @classmethod
    def from_vrecur(cls, vrecur) -> "RecurrenceRule":
        """Create a rule from an icalendar vRecur value."""
        return cls.parse(vrecur.to_ical().decode("utf-8"))

    def _validate(self, rule):
        if any(ordinal is not None for (ordinal, day) in self.byday):
            if self.freq not in ("MONTHLY", "YEARLY"):
                raise MalformedRuleError(
                    rule, "BYDAY ordinals are only valid with FREQ=MONTHLY or YEARLY"
                )
            if self.freq == "YEARLY" and "BYWEEKNO" in self.parts:
                raise MalformedRuleError(
                    rule, "BYDAY ordinals can not be combined with BYWEEKNO"
                )
        if "BYWEEKNO" in self.parts and self.freq != "YEARLY":
            raise MalformedRuleError(rule, "BYWEEKNO is only valid with FREQ=YEARLY")
        if "BYYEARDAY" in self.parts and self.freq in ("DAILY", "WEEKLY", "MONTHLY"):
            raise MalformedRuleError(
                rule, f"BYYEARDAY is not valid with FREQ={self.freq}"
            )
        if "BYMONTHDAY" in self.parts and self.freq == "WEEKLY":
            raise MalformedRuleError(rule, "BYMONTHDAY is not valid with FREQ=WEEKLY")
        if "BYSETPOS" in self.parts and not (
            self.byday or any(k != "BYSETPOS" for k in self.parts)
        ):
            raise MalformedRuleError(rule, "BYSETPOS requires another BYxxx rule part")

    @property
    def is_bounded(self) -> bool:
        return self.count is not None or self.until is not None

    def to_ical(self) -> str:
        values = {"FREQ": self.freq}
        if self.until is not None:
            values["UNTIL"] = vDDDTypes(self.until).to_ical().decode("ascii")
        if self.count is not None:
            values["COUNT"] = str(self.count)
        if self.interval != 1:
            values["INTERVAL"] = str(self.interval)
        if self.byday:
            values["BYDAY"] = ",".join(
                (str(ordinal) if ordinal is not None else "") + day
                for (ordinal, day) in self.byday
            )
        for name, numbers in self.parts.items():
            values[name] = ",".join(str(n) for n in numbers)
        if self.wkst is not None:
            values["WKST"] = self.wkst
        return ";".join(f"{k}={values[k]}" for k in _PART_ORDER if k in values)

    def build(self, dtstart: datetime, tz: Optional[tzinfo]) -> dateutil.rrule.rrule:
        """Build a dateutil rule over naive wall-clock times.

        Args:
          dtstart: Naive wall-clock start
          tz: Reference timezone, used to convert a UTC UNTIL to wall-clock
            time; None for all-day series
        """
        kwargs = {
            "dtstart": dtstart,
            "interval": self.interval,
            "count": self.count,
        }
        if self.until is not None:
            until = self.until
            if isinstance(until, datetime):
                if until.tzinfo is not None and tz is not None:
                    until = until.astimezone(tz)
                until = until.replace(tzinfo=None)
                if tz is None:
                    until = datetime.combine(until.date(), time())
            else:
                # A date UNTIL includes the whole day.
                until = datetime.combine(until, time.max if tz is not None else time())
            kwargs["until"] = until
        if self.byday:
            kwargs["byweekday"] = [
                WEEKDAYS[day](ordinal) if ordinal is not None else WEEKDAYS[day]
                for (ordinal, day) in self.byday
            ]
        if self.wkst is not None:
            kwargs["wkst"] = WEEKDAYS[self.wkst]
        for name, numbers in self.parts.items():
            kwargs[name.lower()] = list(numbers)
        try:
            return dateutil.rrule.rrule(FREQUENCIES[self.freq], **kwargs)
        except ValueError as exc:
            raise MalformedRuleError(self.to_ical(), str(exc)) from exc


def parse_rule(rule) -> Optional[RecurrenceRule]:
    """Coerce a rule given as text, vRecur or RecurrenceRule."""
    if rule is None or isinstance(rule, RecurrenceRule):
        return rule
    if isinstance(rule, str):
        return RecurrenceRule.parse(rule)
    return RecurrenceRule.from_vrecur(rule)


class RecurrencePlanner:
    """Produces the nominal occurrences of a series.

    Args:
      rule: RecurrenceRule, or None for a non-recurring series
      anchor: Start of the first occurrence; a date for all-day series
      timezone: Reference timezone (name or tzinfo). For date-time series
        all arithmetic happens in this timezone; for all-day series it is
        only used to compare occurrences with time windows.
      rdates: Additional occurrence starts
    """

    def __init__(self, rule, anchor: DateOrDatetime, timezone=None, rdates=()) -> None:
        self.rule = parse_rule(rule)
        self.all_day = not isinstance(anchor, datetime)
        if timezone is not None:
            self.timezone = get_timezone(timezone)
        elif not self.all_day and anchor.tzinfo is not None:
            self.timezone = anchor.tzinfo
        elif self.all_day:
            self.timezone = get_timezone("UTC")
        else:
            raise ValueError("date-time anchors need a reference timezone")
        self.anchor = self.normalize(anchor)
        if self.anchor is None:
            raise ValueError(f"invalid anchor {anchor!r}")
        self.rdates = tuple(
            sorted(
                {r for r in (self.normalize(r) for r in rdates) if r is not None},
                key=asutc,
            )
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.rule!r}, {self.anchor!r})"

    @property
    def is_bounded(self) -> bool:
        return self.rule is None or self.rule.is_bounded

    def normalize(self, value: DateOrDatetime) -> Optional[DateOrDatetime]:
        """Express a value in the representation used for this series.

        Returns: a date for all-day series, an aware date-time in the reference
          timezone otherwise, or None if the value can not denote a slot
        """
        if self.all_day:
            if isinstance(value, datetime):
                if value.tzinfo is not None:
                    value = value.astimezone(self.timezone)
                return value.date()
            return value
        if not isinstance(value, datetime):
            return None
        if value.tzinfo is None:
            return localize(value, self.timezone)
        return value.astimezone(self.timezone)

    def _wallclock(self, value: DateOrDatetime) -> datetime:
        if self.all_day:
            return datetime.combine(value, time())
        return value.replace(tzinfo=None)

    def _ruleset(self) -> dateutil.rrule.rruleset:
        rs = dateutil.rrule.rruleset()
        start = self._wallclock(self.anchor)
        if self.rule is not None:
            rs.rrule(self.rule.build(start, None if self.all_day else self.timezone))
        # The anchor is always the first slot, even if the rule does not
        # produce it.
        rs.rdate(start)
        for rdate in self.rdates:
            rs.rdate(self._wallclock(rdate))
        return rs

    def occurrences(self, since: Optional[DateOrDatetime] = None) -> Iterator[DateOrDatetime]:
        """Iterate over nominal occurrence starts in increasing order.

        The iterator is infinite for unbounded rules; every call starts a
        new iteration.

        Args:
          since: Optional lower bound (inclusive)
        """
        rs = self._ruleset()
        if since is not None:
            if self.all_day:
                since = self.normalize(since)
                wallclock_since = datetime.combine(since, time())
            else:
                since = as_tz_aware_ts(since, self.timezone)
                # Step back a day so DST shifts can not hide an instant.
                wallclock_since = (
                    since.astimezone(self.timezone).replace(tzinfo=None)
                    - timedelta(days=1)
                )
            it = rs.xafter(wallclock_since, inc=True)
        else:
            it = iter(rs)
        last = None
        for wallclock in it:
            if self.all_day:
                value = wallclock.date()
            else:
                value = localize(wallclock, self.timezone)
            if last is not None and value <= last:
                # Collapsed onto an earlier instant by a DST transition.
                continue
            last = value
            if since is not None and value < since:
                continue
            yield value

    def between(self, start: Optional[DateOrDatetime], end: Optional[DateOrDatetime]) -> Iterator[DateOrDatetime]:
        """Iterate over nominal starts with start <= value < end.

        Raises:
          ValueError: if end is None and the rule is unbounded
        """
        if end is None and not self.is_bounded:
            raise ValueError("an end is required for unbounded recurrences")
        if self.all_day:
            start = self.normalize(start) if start is not None else None
            end_value = self.normalize(end) if end is not None else None
            if (
                end_value is not None
                and isinstance(end, datetime)
                and self._wallclock_of(end) != time()
            ):
                end_value += timedelta(days=1)
            end = end_value
        elif end is not None:
            end = as_tz_aware_ts(end, self.timezone)
        for value in self.occurrences(since=start):
            if end is not None and value >= end:
                return
            yield value

    def _wallclock_of(self, value: datetime) -> time:
        if value.tzinfo is not None:
            value = value.astimezone(self.timezone)
        return value.time()

    def resolve(self, recurrence_id: DateOrDatetime) -> bool:
        """Check whether a recurrence id denotes a nominal slot."""
        value = self.normalize(recurrence_id)
        if value is None:
            return False
        for candidate in self.occurrences(since=value):
            if candidate == value:
                return True
            if candidate > value:
                return False
        return False


def occurrences_from(rule, anchor: DateOrDatetime, timezone=None) -> Iterator[DateOrDatetime]:
    """Iterate over the nominal occurrences of a rule.

    Args:
      rule: Recurrence rule (text, vRecur or RecurrenceRule)
      anchor: Start of the first occurrence
      timezone: Reference timezone
    Raises:
      MalformedRuleError: if the rule is malformed
    """
    return RecurrencePlanner(rule, anchor, timezone).occurrences()
