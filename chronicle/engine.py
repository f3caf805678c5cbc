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

"""Calendar engine.

Ties the components together: mutations are checked and serialized per
series by the concurrency guard, applied to a private copy of the series,
and committed together with the resulting changes to every affected
collection. Committed series are never modified in place, so readers only
need to hold the registry lock while taking a snapshot.

Every calendar user has a single collection, identified by their calendar
user address.
"""

import collections
import logging
import threading

from .config import EngineConfig
from .freebusy import free_busy_periods
from .guard import TAG_ETAG, ConcurrencyGuard, PermissionDenied, compute_tag
from .icalendar import calendar_for_occurrence, calendar_for_series
from .model import normalize_address
from .operations import CreateSeries, InvalidEventError, PutResource
from .overlay import (
    DeleteException,
    DuplicateUidError,
    NoSuchSeries,
    TooManyInstances,
    get_occurrence,
    materialize,
)
from .participants import (
    CAP_READ,
    CAP_WRITE,
    GrantTable,
    NotFoundAfterVisibilityChange,
    ProjectedOccurrence,
    involved_users,
    parse_unit_name,
    project,
    project_series,
    series_for_viewer,
    unit_name,
    visible_units,
    withdrawn_units,
)
from .recurrence import as_tz_aware_ts, asutc
from .sync import CHANGE_CREATED, CHANGE_DELETED, CHANGE_UPDATED, SyncLedger

logger = logging.getLogger(__name__)


MutationResult = collections.namedtuple(
    "MutationResult", ["resource_id", "etag", "schedule_tag"]
)


def _overrides_canonical(series, content):
    ret = []
    for key in sorted(series.overrides):
        override = series.overrides[key]
        if isinstance(override, DeleteException):
            ret.append((key, None))
        else:
            ret.append((key, content(override.fields)))
    return tuple(ret)


def _slot_states_canonical(series):
    ret = []
    for key in sorted(series.slot_states):
        states = series.slot_states[key]
        if not states:
            continue
        recurrence_id = next(iter(states.values())).recurrence_id
        ret.append((key, series.slot_fields(recurrence_id).canonical()))
    return tuple(ret)


def _fields_schedule(fields):
    return (
        fields.start,
        fields.end,
        fields.organizer,
        tuple(sorted((p.address, p.role) for p in fields.participants)),
        fields.sequence,
    )


def entity_canonical(series):
    """Canonical content of a projected series."""
    return (
        "series",
        series.uid,
        series.master.canonical(),
        series.rule.to_ical() if series.rule is not None else None,
        tuple(series.rdates),
        str(series.timezone),
        _overrides_canonical(series, lambda fields: fields.canonical()),
        _slot_states_canonical(series),
    )


def schedule_canonical(series):
    """Scheduling view of a projected series.

    Personal slot state never affects the scheduling view.
    """
    return (
        "series",
        series.uid,
        _fields_schedule(series.master),
        series.rule.to_ical() if series.rule is not None else None,
        tuple(series.rdates),
        str(series.timezone),
        _overrides_canonical(series, _fields_schedule),
    )


def exception_canonical(occurrence):
    """Canonical content of a projected change exception."""
    return (
        "exception",
        occurrence.uid,
        asutc(occurrence.recurrence_id),
        occurrence.fields.canonical(),
    )


def exception_schedule_canonical(occurrence):
    """Scheduling view of a projected change exception."""
    return (
        "exception",
        occurrence.uid,
        asutc(occurrence.recurrence_id),
        _fields_schedule(occurrence.fields),
    )


class CalendarEngine:
    """Recurring event engine for a set of calendar users.

    Args:
      config: EngineConfig
      access_policy: AccessPolicy used for access to other users' calendars
      ledger: SyncLedger recording changes to collections
    """

    def __init__(self, config=None, access_policy=None, ledger=None) -> None:
        if config is None:
            config = EngineConfig()
        self.config = config
        if access_policy is None:
            access_policy = GrantTable()
        self.access_policy = access_policy
        if ledger is None:
            ledger = SyncLedger(config.get_max_history())
        self.ledger = ledger
        self._series = {}
        # collection -> uid -> unit name -> (etag, schedule tag)
        self._units = {}
        self._registry_lock = threading.Lock()
        self._guard = ConcurrencyGuard(self._lookup_tag, self._lock_key)

    def _lock_key(self, resource):
        (collection_id, resource_id) = resource
        return parse_unit_name(resource_id)[0]

    def _lookup_tag(self, resource, tag_kind):
        (collection_id, resource_id) = resource
        tags = self.tags(collection_id, resource_id)
        if tags is None:
            return None
        return tags[0] if tag_kind == TAG_ETAG else tags[1]

    def _snapshot(self, uid):
        with self._registry_lock:
            return self._series.get(uid)

    def _capabilities(self, owner, viewer):
        return self.access_policy.capabilities(owner, viewer)

    def _check_read(self, collection_id, viewer):
        if viewer != collection_id and CAP_READ not in self._capabilities(
            collection_id, viewer
        ):
            raise PermissionDenied(viewer, f"can not read calendar of {collection_id}")

    def _compute_units(self, series, user):
        placeholder = self.config.get_private_placeholder()
        capabilities = self._capabilities(series.owner, user)
        ret = {}
        for name, recurrence_id in visible_units(series, user).items():
            if recurrence_id is None:
                projected = project_series(series, user, capabilities, placeholder)
                ret[name] = (
                    compute_tag(entity_canonical(projected)),
                    compute_tag(schedule_canonical(projected)),
                )
            else:
                occurrence = project(
                    get_occurrence(series, recurrence_id), user, capabilities, placeholder
                )
                ret[name] = (
                    compute_tag(exception_canonical(occurrence)),
                    compute_tag(exception_schedule_canonical(occurrence)),
                )
        return ret

    def _collection_changes(self, uid, old, new, user):
        with self._registry_lock:
            old_units = dict(self._units.get(user, {}).get(uid, {}))
        new_units = self._compute_units(new, user) if new is not None else {}
        changes = []
        for name, tags in sorted(new_units.items()):
            if name not in old_units:
                changes.append((name, CHANGE_CREATED))
            elif old_units[name] != tags:
                changes.append((name, CHANGE_UPDATED))
        for name in sorted(set(old_units) - set(new_units)):
            changes.append((name, CHANGE_DELETED))
        # Removal from a slot the user only saw through the series unit.
        if new is not None:
            withdrawn = withdrawn_units(new, user)
            if old is not None:
                withdrawn -= withdrawn_units(old, user)
            for name in sorted(withdrawn - set(old_units) - set(new_units)):
                changes.append((name, CHANGE_DELETED))
        return (new_units, changes)

    def _commit(self, uid, old, new):
        users = set()
        for series in (old, new):
            if series is not None:
                users.update(involved_users(series))
        updates = [
            (user,) + self._collection_changes(uid, old, new, user)
            for user in sorted(users)
        ]
        with self._registry_lock:
            if new is None:
                self._series.pop(uid, None)
            else:
                self._series[uid] = new
            for (user, new_units, changes) in updates:
                collection = self._units.setdefault(user, {})
                if new_units:
                    collection[uid] = new_units
                else:
                    collection.pop(uid, None)
                if changes:
                    self.ledger.record_changes(user, changes)
                    logger.debug("Changes to %s in %s: %r", uid, user, changes)

    def mutate(
        self,
        collection_id,
        resource_id,
        operation,
        supplied_tag=None,
        tag_kind=TAG_ETAG,
        actor=None,
    ) -> MutationResult:
        """Apply a mutation to a series.

        Args:
          collection_id: Collection (calendar user address) the mutation
            is sent to
          resource_id: Resource unit name, e.g. "uid.ics"
          operation: Operation to apply
          supplied_tag: Entity tag or schedule tag condition, or None
          tag_kind: Kind of tag in supplied_tag
          actor: User performing the mutation on behalf of the collection
            owner; requires write access if different from the owner
        Raises:
          MutationRejected: if the mutation was rejected
        Returns: MutationResult with the tags of the resource after the
          mutation (None if it no longer exists)
        """
        collection_id = normalize_address(collection_id)
        if actor is not None and normalize_address(actor) != collection_id:
            if CAP_WRITE not in self._capabilities(collection_id, actor):
                raise PermissionDenied(actor, f"can not write to {collection_id}")
        try:
            (uid, unused_recurrence_id) = parse_unit_name(resource_id)
        except ValueError as exc:
            raise InvalidEventError(resource_id, str(exc)) from exc

        def run():
            current = self._snapshot(uid)
            if current is not None and not visible_units(current, collection_id):
                if isinstance(operation, (CreateSeries, PutResource)):
                    raise DuplicateUidError(uid, current.owner)
                raise NoSuchSeries(uid)
            new = operation.apply(
                current.copy() if current is not None else None,
                uid,
                collection_id,
                self.config,
            )
            self._commit(uid, current, new)
            logger.info(
                "%r applied to %s by %s", operation, resource_id, collection_id
            )
            return self.tags(collection_id, resource_id) or (None, None)

        (etag, schedule_tag) = self._guard.guard(
            (collection_id, resource_id), supplied_tag, run, tag_kind
        )
        return MutationResult(resource_id, etag, schedule_tag)

    def tags(self, collection_id, resource_id):
        """Return the (etag, schedule tag) of a resource, or None."""
        collection_id = normalize_address(collection_id)
        try:
            (uid, unused_recurrence_id) = parse_unit_name(resource_id)
        except ValueError:
            return None
        with self._registry_lock:
            return self._units.get(collection_id, {}).get(uid, {}).get(resource_id)

    def resources(self, collection_id):
        """Return a dict mapping resource names to (etag, schedule tag)."""
        collection_id = normalize_address(collection_id)
        ret = {}
        with self._registry_lock:
            for units in self._units.get(collection_id, {}).values():
                ret.update(units)
        return ret

    def series(self, uid):
        """Return the committed series with a uid.

        Raises:
          NoSuchSeries: if there is no such series
        """
        series = self._snapshot(uid)
        if series is None:
            raise NoSuchSeries(uid)
        return series

    def delta(self, collection_id, since_token=None):
        """Return the changes to a collection since a sync token."""
        return self.ledger.delta(normalize_address(collection_id), since_token)

    def _collection_series(self, collection_id):
        with self._registry_lock:
            uids = list(self._units.get(collection_id, {}))
            return [(self._series[uid], set(self._units[collection_id][uid])) for uid in uids]

    def materialize(self, collection_id, start, end, viewer=None):
        """Return the occurrences in a collection that overlap a window.

        Args:
          collection_id: Collection to read
          start: Window start (inclusive)
          end: Window end (exclusive)
          viewer: User reading the collection; defaults to its owner
        Raises:
          PermissionDenied: if the viewer may not read the collection
          TooManyInstances: if the window contains too many occurrences
        Returns: list of ProjectedOccurrence objects
        """
        collection_id = normalize_address(collection_id)
        viewer = normalize_address(viewer) if viewer is not None else collection_id
        self._check_read(collection_id, viewer)
        tz = self.config.get_timezone()
        limit = self.config.get_max_instances()
        placeholder = self.config.get_private_placeholder()
        ret = []
        for series, units in self._collection_series(collection_id):
            if viewer == collection_id:
                capabilities = self._capabilities(series.owner, viewer)
            else:
                capabilities = self._capabilities(collection_id, viewer)
            series_unit = unit_name(series.uid)
            view = series_for_viewer(series, viewer)
            for occurrence in materialize(view, start, end, limit):
                if occurrence.overridden:
                    name = unit_name(series.uid, occurrence.recurrence_id)
                else:
                    name = series_unit
                if name not in units:
                    continue
                try:
                    ret.append(project(occurrence, viewer, capabilities, placeholder))
                except NotFoundAfterVisibilityChange:
                    continue
        ret.sort(
            key=lambda o: (
                as_tz_aware_ts(o.start, tz),
                o.uid,
                asutc(as_tz_aware_ts(o.recurrence_id, tz))
                if o.recurrence_id is not None
                else None,
            )
        )
        if len(ret) > limit:
            raise TooManyInstances(collection_id, limit)
        return ret

    def get(self, collection_id, resource_id, viewer=None):
        """Retrieve a resource unit as seen by a viewer.

        Returns: a projected Series for a series unit, or a
          ProjectedOccurrence for an exception unit
        Raises:
          NoSuchSeries: if the series does not exist
          NotFoundAfterVisibilityChange: if the series exists but the
            resource is not visible in the collection
        """
        collection_id = normalize_address(collection_id)
        viewer = normalize_address(viewer) if viewer is not None else collection_id
        self._check_read(collection_id, viewer)
        try:
            (uid, recurrence_id) = parse_unit_name(resource_id)
        except ValueError as exc:
            raise NoSuchSeries(resource_id) from exc
        series = self._snapshot(uid)
        if series is None:
            raise NoSuchSeries(uid)
        if resource_id not in visible_units(series, collection_id):
            raise NotFoundAfterVisibilityChange(uid, recurrence_id, viewer)
        if viewer == collection_id:
            capabilities = self._capabilities(series.owner, viewer)
        else:
            capabilities = self._capabilities(collection_id, viewer)
        placeholder = self.config.get_private_placeholder()
        if recurrence_id is None:
            return project_series(series, viewer, capabilities, placeholder)
        occurrence = get_occurrence(series, recurrence_id)
        if occurrence is None:
            raise NotFoundAfterVisibilityChange(uid, recurrence_id, viewer)
        return project(occurrence, viewer, capabilities, placeholder)

    def free_busy(self, user, start, end):
        """Calculate the busy periods of a user.

        Returns: list of FreeBusyPeriod objects
        """
        user = normalize_address(user)
        tz = self.config.get_timezone()
        limit = self.config.get_max_instances()
        occurrences = []
        for series, units in self._collection_series(user):
            occurrences.extend(materialize(series, start, end, limit))
        return free_busy_periods(occurrences, user, start, end, tz)

    def calendar(self, collection_id, resource_id, viewer=None, default_alarm=None):
        """Render a resource unit as a calendar, as seen by a viewer.

        Args:
          default_alarm: Whether to add the default alarm; defaults to the
            configured setting
        Returns: icalendar Calendar
        """
        if default_alarm is None:
            default_alarm = self.config.get_default_alarm()
        resource = self.get(collection_id, resource_id, viewer)
        if isinstance(resource, ProjectedOccurrence):
            return calendar_for_occurrence(resource, default_alarm)
        viewer = viewer if viewer is not None else collection_id
        return calendar_for_series(resource, viewer, default_alarm)
