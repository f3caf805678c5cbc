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

"""Per-participant views of events.

Every calendar user sees a series through their own projection: their own
alarms, their own comment, and (for classified events they have no
special access to) a redacted field set.
"""

from typing import Optional

from .config import DEFAULT_PRIVATE_PLACEHOLDER
from .model import CLASSIFIED, normalize_address
from .overlay import ChangeException, DeleteException, Occurrence, Series, SlotState
from .recurrence import format_recurrence_id, parse_recurrence_id

CAP_READ = "read"
CAP_WRITE = "write"
CAP_READ_PRIVATE = "read-private"
ALL_CAPABILITIES = frozenset([CAP_READ, CAP_WRITE, CAP_READ_PRIVATE])

UNIT_SUFFIX = ".ics"


class NotFoundAfterVisibilityChange(Exception):
    """The series exists, but the occurrence is not visible to the viewer."""

    def __init__(self, uid, recurrence_id, viewer) -> None:
        super().__init__(
            f"{uid!r} ({recurrence_id!r}) is not visible to {viewer!r}"
        )
        self.uid = uid
        self.recurrence_id = recurrence_id
        self.viewer = viewer


class AccessPolicy:
    """Source of capabilities of one calendar user on another's calendar."""

    def capabilities(self, owner: str, viewer: str) -> frozenset:
        raise NotImplementedError(self.capabilities)


class GrantTable(AccessPolicy):
    """Access policy backed by explicit grants.

    Owners have all capabilities on their own calendar; any other viewer
    has the capabilities granted to them.
    """

    def __init__(self) -> None:
        self._grants: dict[tuple[str, str], frozenset] = {}

    def grant(self, owner: str, viewer: str, capabilities) -> None:
        key = (normalize_address(owner), normalize_address(viewer))
        self._grants[key] = self._grants.get(key, frozenset()) | frozenset(
            capabilities
        )

    def revoke(self, owner: str, viewer: str) -> None:
        self._grants.pop((normalize_address(owner), normalize_address(viewer)), None)

    def capabilities(self, owner: str, viewer: str) -> frozenset:
        owner = normalize_address(owner)
        viewer = normalize_address(viewer)
        if owner == viewer:
            return ALL_CAPABILITIES
        return self._grants.get((owner, viewer), frozenset())


class ProjectedOccurrence:
    """An occurrence as seen by one viewer."""

    def __init__(self, occurrence: Occurrence, viewer: str, fields, redacted: bool) -> None:
        self.uid = occurrence.uid
        self.owner = occurrence.owner
        self.recurrence_id = occurrence.recurrence_id
        self.overridden = occurrence.overridden
        self.viewer = viewer
        self.fields = fields
        self.redacted = redacted

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.uid!r}, {self.recurrence_id!r}, "
            f"viewer={self.viewer!r})"
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

    def alarms(self):
        return self.fields.alarms.get(self.viewer, [])

    def participant(self):
        return self.fields.participant(self.viewer)


def _project_fields(fields, owner, viewer, capabilities, placeholder, uid, recurrence_id):
    is_owner = normalize_address(owner) == viewer
    is_organizer = fields.is_organizer(viewer)
    me = fields.participant(viewer)
    if me is not None and me.hidden and not is_owner:
        raise NotFoundAfterVisibilityChange(uid, recurrence_id, viewer)
    redacted = False
    if not (is_owner or is_organizer or me is not None):
        if capabilities is None or CAP_READ not in capabilities:
            raise NotFoundAfterVisibilityChange(uid, recurrence_id, viewer)
        redacted = (
            fields.classification in CLASSIFIED
            and CAP_READ_PRIVATE not in capabilities
        )
    out = fields.copy()
    out.alarms = {viewer: out.alarms[viewer]} if viewer in out.alarms else {}
    if not (is_owner or is_organizer):
        for p in out.participants:
            if p.address != viewer:
                p.comment = None
    if redacted:
        out.summary = placeholder
        out.location = None
        out.description = None
        out.organizer = None
        out.participants = []
        out.alarms = {}
        out.extra = []
    return (out, redacted)


def project(
    occurrence: Occurrence,
    viewer: str,
    capabilities=None,
    placeholder: str = DEFAULT_PRIVATE_PLACEHOLDER,
) -> ProjectedOccurrence:
    """Project an occurrence for a viewer.

    Args:
      occurrence: Logical occurrence
      viewer: Calendar user address of the viewer
      capabilities: Capabilities of the viewer on the owner's calendar
      placeholder: Summary shown instead of the real one on redacted events
    Raises:
      NotFoundAfterVisibilityChange: if the viewer may not see the occurrence
    """
    viewer = normalize_address(viewer)
    (fields, redacted) = _project_fields(
        occurrence.fields,
        occurrence.owner,
        viewer,
        capabilities,
        placeholder,
        occurrence.uid,
        occurrence.recurrence_id,
    )
    return ProjectedOccurrence(occurrence, viewer, fields, redacted)


def _slot_states_for(series: Series, viewer: str):
    # The organizer copy shows everyone's replies; alarms stay personal.
    sees_replies = viewer == normalize_address(series.owner) or (
        series.master.is_organizer(viewer)
    )
    ret = {}
    for key, states in series.slot_states.items():
        visible = {}
        for user, state in states.items():
            if user == viewer:
                visible[user] = state.copy()
            elif sees_replies and state.reply is not None:
                visible[user] = SlotState(state.recurrence_id, dict(state.reply))
        if visible:
            ret[key] = visible
    return ret


def series_for_viewer(series: Series, viewer: str) -> Series:
    """Return a series with only the personal slot state a viewer may see."""
    viewer = normalize_address(viewer)
    return Series(
        series.uid,
        series.owner,
        series.master,
        series.rule,
        series.timezone,
        series.rdates,
        series.overrides,
        _slot_states_for(series, viewer),
    )


def project_series(
    series: Series,
    viewer: str,
    capabilities=None,
    placeholder: str = DEFAULT_PRIVATE_PLACEHOLDER,
) -> Series:
    """Project a whole series for a viewer.

    Change exceptions the viewer may not see are presented as suppressed
    slots. Personal slot state of other participants is only included for
    the organizer, and then without their alarms.

    Raises:
      NotFoundAfterVisibilityChange: if the viewer may not see the master
    """
    viewer = normalize_address(viewer)
    (master, unused_redacted) = _project_fields(
        series.master,
        series.owner,
        viewer,
        capabilities,
        placeholder,
        series.uid,
        None,
    )
    overrides = {}
    for key, override in series.overrides.items():
        if isinstance(override, ChangeException):
            try:
                (fields, unused_redacted) = _project_fields(
                    override.fields,
                    series.owner,
                    viewer,
                    capabilities,
                    placeholder,
                    series.uid,
                    override.recurrence_id,
                )
            except NotFoundAfterVisibilityChange:
                override = DeleteException(override.recurrence_id)
            else:
                override = ChangeException(override.recurrence_id, fields)
        overrides[key] = override
    return Series(
        series.uid,
        series.owner,
        master,
        series.rule,
        series.timezone,
        series.rdates,
        overrides,
        _slot_states_for(series, viewer),
    )


def _takes_part(fields, owner, user) -> bool:
    if normalize_address(owner) == user or fields.is_organizer(user):
        return True
    me = fields.participant(user)
    return me is not None and not me.hidden


def unit_name(uid: str, recurrence_id=None) -> str:
    """Name of the resource unit for a series or one of its exceptions."""
    if recurrence_id is None:
        return uid + UNIT_SUFFIX
    return f"{uid}{UNIT_SUFFIX}#{format_recurrence_id(recurrence_id)}"


def parse_unit_name(name: str):
    """Split a resource unit name.

    Returns: tuple with uid and recurrence id (or None for the series unit)
    Raises:
      ValueError: if the name is not a valid unit name
    """
    (base, sep, rid) = name.partition("#")
    if not base.endswith(UNIT_SUFFIX) or base == UNIT_SUFFIX:
        raise ValueError(f"invalid resource name {name!r}")
    uid = base[: -len(UNIT_SUFFIX)]
    if not sep:
        return (uid, None)
    return (uid, parse_recurrence_id(rid))


def visible_units(series: Series, user: str) -> dict[str, Optional[object]]:
    """Enumerate the resource units of a series in a user's collection.

    Returns: dict mapping unit names to recurrence ids (None for the series
      unit)
    """
    user = normalize_address(user)
    ret: dict[str, Optional[object]] = {}
    if _takes_part(series.master, series.owner, user):
        ret[unit_name(series.uid)] = None
    for override in series.overrides.values():
        if not isinstance(override, ChangeException):
            continue
        if _takes_part(override.fields, series.owner, user):
            ret[unit_name(series.uid, override.recurrence_id)] = override.recurrence_id
    return ret


def withdrawn_units(series: Series, user: str) -> set:
    """Names of exception units a user no longer takes part in.

    These are the slots of a series the user takes part in that have been
    overridden without the user.
    """
    user = normalize_address(user)
    if not _takes_part(series.master, series.owner, user):
        return set()
    return {
        unit_name(series.uid, override.recurrence_id)
        for override in series.change_exceptions()
        if not _takes_part(override.fields, series.owner, user)
    }


def involved_users(series: Series):
    """Return the set of calendar users whose collections show the series."""
    users = {normalize_address(series.owner)}
    for fields in [series.master] + [
        o.fields for o in series.overrides.values() if isinstance(o, ChangeException)
    ]:
        if fields.organizer:
            users.add(fields.organizer)
        users.update(p.address for p in fields.participants)
    return users
