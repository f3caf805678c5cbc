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

"""Free/busy calculation.

See https://tools.ietf.org/html/rfc5545, section 3.6.4 and
https://tools.ietf.org/html/rfc4791, section 7.10
"""

import collections
from datetime import datetime, timezone

from icalendar.cal import Calendar, FreeBusy
from icalendar.prop import vDDDTypes, vPeriod

from .model import (
    PARTSTAT_DECLINED,
    SHOWN_AS_ABSENT,
    SHOWN_AS_FREE,
    SHOWN_AS_TEMPORARY,
    STATUS_CANCELLED,
    STATUS_TENTATIVE,
    TRANSP_TRANSPARENT,
    normalize_address,
)
from .overlay import effective_span
from .recurrence import as_tz_aware_ts

PRODID = "-//Chronicle//Chronicle//EN"

FBTYPE_FREE = "FREE"
FBTYPE_BUSY = "BUSY"
FBTYPE_BUSY_TENTATIVE = "BUSY-TENTATIVE"
FBTYPE_BUSY_UNAVAILABLE = "BUSY-UNAVAILABLE"


FreeBusyPeriod = collections.namedtuple("FreeBusyPeriod", ["start", "end", "fbtype"])


def map_freebusy(fields) -> str:
    """Determine the free/busy type of an event."""
    if fields.shown_as == SHOWN_AS_ABSENT:
        return FBTYPE_BUSY_UNAVAILABLE
    if fields.shown_as == SHOWN_AS_FREE:
        return FBTYPE_FREE
    if fields.shown_as == SHOWN_AS_TEMPORARY:
        return FBTYPE_BUSY_TENTATIVE
    if fields.transp == TRANSP_TRANSPARENT:
        return FBTYPE_FREE
    if fields.status == STATUS_TENTATIVE:
        return FBTYPE_BUSY_TENTATIVE
    if fields.status == STATUS_CANCELLED:
        return FBTYPE_FREE
    return FBTYPE_BUSY


def _attends(occurrence, user) -> bool:
    fields = occurrence.fields
    me = fields.participant(user)
    if me is not None:
        return not (me.hidden or me.partstat == PARTSTAT_DECLINED)
    return normalize_address(occurrence.owner) == user or fields.is_organizer(user)


def _merge(periods):
    ret = []
    for period in sorted(periods, key=lambda p: (p.fbtype, p.start, p.end)):
        if ret and ret[-1].fbtype == period.fbtype and period.start <= ret[-1].end:
            if period.end > ret[-1].end:
                ret[-1] = ret[-1]._replace(end=period.end)
        else:
            ret.append(period)
    ret.sort(key=lambda p: (p.start, p.end, p.fbtype))
    return ret


def free_busy_periods(occurrences, user, start, end, tz="UTC"):
    """Calculate the busy periods of a user.

    Args:
      occurrences: Iterable over Occurrence objects
      user: Calendar user address
      start: Window start
      end: Window end
      tz: Timezone for floating and all-day values
    Returns: list of FreeBusyPeriod objects in UTC, without FREE periods
    """
    user = normalize_address(user)
    start = as_tz_aware_ts(start, tz).astimezone(timezone.utc)
    end = as_tz_aware_ts(end, tz).astimezone(timezone.utc)
    periods = []
    for occurrence in occurrences:
        if not _attends(occurrence, user):
            continue
        fbtype = map_freebusy(occurrence.fields)
        if fbtype == FBTYPE_FREE:
            continue
        (dtstart, dtend) = effective_span(occurrence.fields, tz)
        dtstart = max(dtstart.astimezone(timezone.utc), start)
        dtend = min(dtend.astimezone(timezone.utc), end)
        if dtend <= dtstart:
            continue
        periods.append(FreeBusyPeriod(dtstart, dtend, fbtype))
    return _merge(periods)


def freebusy_component(periods, start, end, organizer=None, now=None) -> Calendar:
    """Render free/busy periods as a VCALENDAR with a VFREEBUSY."""
    if now is None:
        now = datetime.now(timezone.utc)
    ret = Calendar()
    ret["VERSION"] = "2.0"
    ret["PRODID"] = PRODID
    fb = FreeBusy()
    fb["DTSTAMP"] = vDDDTypes(now.astimezone(timezone.utc))
    fb["DTSTART"] = vDDDTypes(as_tz_aware_ts(start, "UTC").astimezone(timezone.utc))
    fb["DTEND"] = vDDDTypes(as_tz_aware_ts(end, "UTC").astimezone(timezone.utc))
    if organizer is not None:
        fb["ORGANIZER"] = organizer
    items = []
    for period in periods:
        vp = vPeriod((period.start, period.end))
        if period.fbtype != FBTYPE_BUSY:
            vp.params["FBTYPE"] = period.fbtype
        items.append(vp)
    if items:
        fb["FREEBUSY"] = items
    ret.add_component(fb)
    return ret
