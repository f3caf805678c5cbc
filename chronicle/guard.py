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

"""Optimistic concurrency control.

Entity tags and schedule tags (https://tools.ietf.org/html/rfc6638,
section 3.2) used in this file are always strong, and are returned without
wrapping quotes.
"""

import hashlib
import logging
import threading

logger = logging.getLogger(__name__)

TAG_ETAG = "etag"
TAG_SCHEDULE = "schedule-tag"
TAG_KINDS = (TAG_ETAG, TAG_SCHEDULE)

PRECONDITION_FAILED = "PRECONDITION_FAILED"
FORBIDDEN = "FORBIDDEN"


class MutationRejected(Exception):
    """A mutation was rejected; no state was changed.

    Attributes:
      reason: Machine readable reason code
      retriable: Whether the caller may retry after refetching state
    """

    reason: str = "REJECTED"
    retriable: bool = False


class PreconditionFailed(MutationRejected):
    """The supplied entity tag or schedule tag does not match."""

    reason = PRECONDITION_FAILED
    retriable = True

    def __init__(self, resource_id, tag_kind: str, supplied_tag: str, current_tag) -> None:
        super().__init__(
            f"{tag_kind} precondition failed for {resource_id!r}: "
            f"got {supplied_tag!r}, current {current_tag!r}"
        )
        self.resource_id = resource_id
        self.tag_kind = tag_kind
        self.supplied_tag = supplied_tag
        self.current_tag = current_tag


class PermissionDenied(MutationRejected):
    """The acting user may not perform this mutation."""

    reason = FORBIDDEN

    def __init__(self, actor: str, description: str) -> None:
        super().__init__(f"{actor}: {description}")
        self.actor = actor
        self.description = description


def tag_matches(condition: str, actual_tag) -> bool:
    """Check if a tag matches an If-Match style condition.

    Args:
      condition: Condition (e.g. '*', '"foo"' or '"foo", "bar"')
      actual_tag: Tag to compare to. None if the resource does not exist
    Returns: bool indicating whether condition matches
    """
    if actual_tag is None and condition:
        return False
    for tag in condition.split(","):
        tag = tag.strip(" ")
        if tag == "*":
            return True
        if tag.strip('"') == actual_tag:
            return True
    return False


def compute_tag(canonical) -> str:
    """Compute a strong tag from a canonical representation."""
    return hashlib.sha1(repr(canonical).encode("utf-8")).hexdigest()


class ConcurrencyGuard:
    """Serializes mutations per lock key and checks their preconditions.

    Args:
      tag_lookup: Callable taking (resource_id, tag_kind) and returning the
        current tag, or None if the resource does not exist
      lock_key: Callable mapping a resource id to the key it is serialized on;
        resources sharing a key never run mutations concurrently
    """

    def __init__(self, tag_lookup, lock_key=None) -> None:
        self._tag_lookup = tag_lookup
        self._lock_key = lock_key if lock_key is not None else (lambda r: r)
        self._locks: dict = {}
        self._locks_lock = threading.Lock()

    def lock_for(self, resource_id) -> threading.Lock:
        key = self._lock_key(resource_id)
        with self._locks_lock:
            try:
                return self._locks[key]
            except KeyError:
                lock = self._locks[key] = threading.Lock()
                return lock

    def guard(self, resource_id, supplied_tag, mutation, tag_kind: str = TAG_ETAG):
        """Apply a mutation iff the supplied tag matches the current tag.

        Args:
          resource_id: Resource the precondition applies to
          supplied_tag: Tag condition sent by the client; None for an
            unconditional mutation
          mutation: Callable run while holding the lock
          tag_kind: TAG_ETAG or TAG_SCHEDULE
        Raises:
          PreconditionFailed: if the supplied tag does not match
        Returns: whatever the mutation returns
        """
        if tag_kind not in TAG_KINDS:
            raise ValueError(f"unknown tag kind {tag_kind!r}")
        with self.lock_for(resource_id):
            if supplied_tag is not None:
                current_tag = self._tag_lookup(resource_id, tag_kind)
                if not tag_matches(supplied_tag, current_tag):
                    logger.info(
                        "Rejecting mutation of %r: %s %s does not match %s",
                        resource_id,
                        tag_kind,
                        supplied_tag,
                        current_tag,
                    )
                    raise PreconditionFailed(
                        resource_id, tag_kind, supplied_tag, current_tag
                    )
            return mutation()
