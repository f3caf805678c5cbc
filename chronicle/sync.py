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

"""Calendar synchronisation.

Keeps a bounded log of changes per collection, from which incremental
deltas are computed for sync tokens.

See https://tools.ietf.org/html/rfc6578
"""

import collections
import logging
import threading
import uuid
from typing import Optional

from .config import DEFAULT_MAX_HISTORY

logger = logging.getLogger(__name__)

CHANGE_CREATED = "created"
CHANGE_UPDATED = "updated"
CHANGE_DELETED = "deleted"
CHANGE_KINDS = (CHANGE_CREATED, CHANGE_UPDATED, CHANGE_DELETED)

TOKEN_PREFIX = "urn:chronicle:sync:"


class InvalidToken(Exception):
    """The sync token is malformed or was never issued."""

    reason = "INVALID_TOKEN"
    retriable = False

    def __init__(self, token) -> None:
        super().__init__(f"Invalid sync token: {token!r}")
        self.token = token


class TokenExpiredError(Exception):
    """The sync token is too old; the client has to do a full resync."""

    reason = "TOKEN_EXPIRED"
    retriable = True

    def __init__(self, token) -> None:
        super().__init__(f"Sync token expired: {token!r}")
        self.token = token


class SyncToken:
    """A sync token wrapper."""

    def __init__(self, epoch: str, revision: int) -> None:
        self.epoch = epoch
        self.revision = revision

    def __str__(self) -> str:
        return f"{TOKEN_PREFIX}{self.epoch}-{self.revision}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.epoch!r}, {self.revision!r})"

    def __eq__(self, other):
        return (
            isinstance(other, SyncToken)
            and self.epoch == other.epoch
            and self.revision == other.revision
        )

    @classmethod
    def parse(cls, token: str) -> "SyncToken":
        """Parse a sync token.

        Raises:
          InvalidToken: if the token is malformed
        """
        if not isinstance(token, str) or not token.startswith(TOKEN_PREFIX):
            raise InvalidToken(token)
        (epoch, sep, revision) = token[len(TOKEN_PREFIX) :].rpartition("-")
        if not sep or not epoch or not revision.isdigit():
            raise InvalidToken(token)
        return cls(epoch, int(revision))


Delta = collections.namedtuple("Delta", ["created", "updated", "deleted", "token"])


class _CollectionLog:

    def __init__(self, max_history: int) -> None:
        self.revision = 0
        self.horizon = 0
        self.entries: collections.deque = collections.deque()
        self.live: dict[str, int] = {}
        self.max_history = max_history

    def append(self, changes) -> None:
        self.revision += 1
        for resource_id, kind in changes:
            self.entries.append((self.revision, resource_id, kind))
            if kind == CHANGE_DELETED:
                self.live.pop(resource_id, None)
            else:
                self.live[resource_id] = self.revision
        while len(self.entries) > self.max_history:
            (revision, unused_resource_id, unused_kind) = self.entries.popleft()
            self.horizon = revision


class SyncLedger:
    """Per-collection change log with opaque sync tokens.

    Args:
      max_history: Number of changes retained per collection; tokens older
        than the retained history expire
    """

    def __init__(self, max_history: int = DEFAULT_MAX_HISTORY) -> None:
        if max_history < 1:
            raise ValueError("max_history must be positive")
        self.epoch = uuid.uuid4().hex
        self.max_history = max_history
        self._logs: dict[str, _CollectionLog] = {}
        self._lock = threading.Lock()

    def _log(self, collection_id) -> _CollectionLog:
        try:
            return self._logs[collection_id]
        except KeyError:
            log = self._logs[collection_id] = _CollectionLog(self.max_history)
            return log

    def record_changes(self, collection_id, changes) -> str:
        """Record a batch of changes as a single revision.

        Args:
          collection_id: Collection the changes apply to
          changes: list of (resource_id, change_kind) tuples
        Returns: the new sync token
        """
        changes = list(changes)
        for resource_id, kind in changes:
            if kind not in CHANGE_KINDS:
                raise ValueError(f"unknown change kind {kind!r}")
        with self._lock:
            log = self._log(collection_id)
            if changes:
                log.append(changes)
            return str(SyncToken(self.epoch, log.revision))

    def record_change(self, collection_id, resource_id, change_kind) -> str:
        """Record a single change."""
        return self.record_changes(collection_id, [(resource_id, change_kind)])

    def current_token(self, collection_id) -> str:
        with self._lock:
            return str(SyncToken(self.epoch, self._log(collection_id).revision))

    def delta(self, collection_id, since_token: Optional[str]) -> Delta:
        """Compute the changes since a token.

        Args:
          collection_id: Collection to compute the delta for
          since_token: Token from an earlier delta, or None for a full
            enumeration
        Raises:
          InvalidToken: if the token is malformed or was never issued
          TokenExpiredError: if the token is from another ledger or older
            than the retained history
        Returns: Delta with sorted lists of resource ids and the new token
        """
        since = None if since_token is None else SyncToken.parse(since_token)
        with self._lock:
            log = self._log(collection_id)
            token = str(SyncToken(self.epoch, log.revision))
            if since is None:
                return Delta(sorted(log.live), [], [], token)
            if since.epoch != self.epoch:
                logger.info(
                    "Sync token %s for %s is from another epoch",
                    since_token,
                    collection_id,
                )
                raise TokenExpiredError(since_token)
            if since.revision > log.revision:
                raise InvalidToken(since_token)
            if since.revision < log.horizon:
                logger.info(
                    "Sync token %s for %s is older than the retained history",
                    since_token,
                    collection_id,
                )
                raise TokenExpiredError(since_token)
            first: dict[str, str] = {}
            last: dict[str, str] = {}
            for revision, resource_id, kind in log.entries:
                if revision <= since.revision:
                    continue
                first.setdefault(resource_id, kind)
                last[resource_id] = kind
        created = []
        updated = []
        deleted = []
        for resource_id, kind in last.items():
            if kind == CHANGE_DELETED:
                deleted.append(resource_id)
            elif first[resource_id] == CHANGE_CREATED:
                created.append(resource_id)
            else:
                updated.append(resource_id)
        return Delta(sorted(created), sorted(updated), sorted(deleted), token)
