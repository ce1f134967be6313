"""Coordination service client contract and in-memory ensemble.

The coordination service stores named records in a path hierarchy. Records
may be ephemeral (removed when the owning session expires) and sequential
(the service appends a monotonically increasing suffix, which gives a total
creation order over siblings). Clients register persistent watches on a
record's children or data, and connection-state listeners.

``InMemoryCoordinationService`` implements the contract in process. It backs
single-process deployments and tests, and lets tests drive connection loss
explicitly:

    ensemble = InMemoryCoordinationService()
    session = ensemble.connect()
    await session.create("/fleet/groups/git/member-", b"{}", ephemeral=True, sequential=True)

    ensemble.suspend(session)   # connection lost, ephemeral records kept
    ensemble.expire(session)    # session expired, ephemeral records removed
    ensemble.resume(session)    # reconnected (new session id if it expired)

Watch and connection callbacks are plain callables invoked on the thread
that caused the change, after the ensemble lock is released. Consumers that
live on an event loop must marshal them (see GroupMembership).
"""

from __future__ import annotations

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from fleetplane.errors import (
    CoordinationConnectionError,
    CoordinationError,
    NodeExistsError,
    NoNodeError,
)

__all__ = [
    "ConnectionState",
    "ConnectionListener",
    "ChildrenWatcher",
    "DataWatcher",
    "CoordinationClient",
    "InMemoryCoordinationService",
    "InMemorySession",
]

logger = logging.getLogger(__name__)

SEQUENCE_WIDTH = 10


class ConnectionState(str, Enum):
    """Connection states reported to connection listeners."""

    CONNECTED = "connected"
    SUSPENDED = "suspended"
    RECONNECTED = "reconnected"
    LOST = "lost"

    @property
    def is_connected(self) -> bool:
        return self in (ConnectionState.CONNECTED, ConnectionState.RECONNECTED)


ConnectionListener = Callable[[ConnectionState], None]
ChildrenWatcher = Callable[[str, list[str]], None]
DataWatcher = Callable[[str, "bytes | None"], None]


class CoordinationClient(ABC):
    """Session-scoped client of a coordination service."""

    @property
    @abstractmethod
    def state(self) -> ConnectionState:
        """Current connection state."""

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Identifier of the current session (changes after expiry)."""

    @property
    def is_connected(self) -> bool:
        return self.state.is_connected

    @abstractmethod
    async def create(
        self,
        path: str,
        data: bytes = b"",
        *,
        ephemeral: bool = False,
        sequential: bool = False,
        make_parents: bool = True,
    ) -> str:
        """Create a record and return its actual path."""

    @abstractmethod
    async def set_data(self, path: str, data: bytes) -> None:
        """Replace the data of an existing record."""

    @abstractmethod
    async def get_data(self, path: str) -> bytes:
        """Read the data of a record."""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check whether a record exists."""

    @abstractmethod
    async def delete(self, path: str, *, recursive: bool = False) -> None:
        """Delete a record."""

    @abstractmethod
    async def get_children(self, path: str) -> list[str]:
        """List child names of a record, sorted."""

    @abstractmethod
    def watch_children(self, path: str, callback: ChildrenWatcher) -> Callable[[], None]:
        """Watch the child set of ``path``. Returns an unwatch callable."""

    @abstractmethod
    def watch_data(self, path: str, callback: DataWatcher) -> Callable[[], None]:
        """Watch the data of ``path`` (None is delivered on deletion)."""

    @abstractmethod
    def add_connection_listener(self, listener: ConnectionListener) -> None:
        """Register a connection-state listener."""

    @abstractmethod
    def remove_connection_listener(self, listener: ConnectionListener) -> None:
        """Unregister a connection-state listener."""

    @abstractmethod
    async def close(self) -> None:
        """Close the session, dropping its ephemeral records."""


# =============================================================================
# In-memory implementation
# =============================================================================

def _parent_of(path: str) -> str:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"


def _name_of(path: str) -> str:
    return path.rsplit("/", 1)[1]


def _normalize(path: str) -> str:
    if not path.startswith("/"):
        raise CoordinationError(f"Path must be absolute: {path!r}")
    if len(path) > 1:
        path = path.rstrip("/")
    return path


@dataclass
class _Record:
    data: bytes
    owner: str | None = None
    sequence: int = 0


class InMemoryCoordinationService:
    """Process-local coordination ensemble shared by many sessions."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, _Record] = {"/": _Record(b"")}
        self._child_watches: dict[str, list[tuple[InMemorySession, ChildrenWatcher]]] = {}
        self._data_watches: dict[str, list[tuple[InMemorySession, DataWatcher]]] = {}
        self._session_ids = itertools.count(1)

    def connect(self) -> InMemorySession:
        """Open a new session in the CONNECTED state."""
        session = InMemorySession(self, self._next_session_id())
        logger.debug(f"Session {session.session_id} connected")
        return session

    def _next_session_id(self) -> str:
        return f"session-{next(self._session_ids):04d}"

    # -------------------------------------------------------------------------
    # Connection control
    # -------------------------------------------------------------------------

    def suspend(self, session: InMemorySession) -> None:
        """Drop the session's connection without expiring it."""
        if session._state.is_connected:
            session._set_state(ConnectionState.SUSPENDED)

    def expire(self, session: InMemorySession) -> None:
        """Expire the session: ephemeral records go away, state becomes LOST."""
        notifications = self._remove_ephemerals(session.session_id)
        session._expired = True
        session._set_state(ConnectionState.LOST)
        self._dispatch(notifications)

    def resume(self, session: InMemorySession) -> None:
        """Reconnect a suspended or expired session."""
        if session._closed:
            raise CoordinationConnectionError("Session is closed")
        if session._state.is_connected:
            return
        if session._expired:
            session._session_id = self._next_session_id()
            session._expired = False
        session._set_state(ConnectionState.RECONNECTED)

    # -------------------------------------------------------------------------
    # Record operations (called by sessions)
    # -------------------------------------------------------------------------

    def _create(
        self,
        session: InMemorySession,
        path: str,
        data: bytes,
        ephemeral: bool,
        sequential: bool,
        make_parents: bool,
    ) -> str:
        path = _normalize(path)
        with self._lock:
            parent = _parent_of(path)
            notifications = []
            if parent not in self._records:
                if not make_parents:
                    raise NoNodeError(parent)
                notifications.extend(self._create_parents(parent))

            parent_record = self._records[parent]
            if sequential:
                path = f"{path}{parent_record.sequence:0{SEQUENCE_WIDTH}d}"
                parent_record.sequence += 1
            if path in self._records:
                raise NodeExistsError(path)

            owner = session.session_id if ephemeral else None
            self._records[path] = _Record(bytes(data), owner=owner)
            notifications.extend(self._children_notifications(parent))
            notifications.extend(self._data_notifications(path, bytes(data)))
        self._dispatch(notifications)
        return path

    def _create_parents(self, path: str) -> list:
        notifications = []
        missing = []
        while path not in self._records:
            missing.append(path)
            path = _parent_of(path)
        for p in reversed(missing):
            self._records[p] = _Record(b"")
            notifications.extend(self._children_notifications(_parent_of(p)))
        return notifications

    def _set_data(self, path: str, data: bytes) -> None:
        path = _normalize(path)
        with self._lock:
            record = self._records.get(path)
            if record is None:
                raise NoNodeError(path)
            record.data = bytes(data)
            notifications = self._data_notifications(path, record.data)
        self._dispatch(notifications)

    def _get_data(self, path: str) -> bytes:
        path = _normalize(path)
        with self._lock:
            record = self._records.get(path)
            if record is None:
                raise NoNodeError(path)
            return record.data

    def _exists(self, path: str) -> bool:
        with self._lock:
            return _normalize(path) in self._records

    def _children(self, path: str) -> list[str]:
        prefix = "/" if path == "/" else path + "/"
        return sorted(
            p[len(prefix):]
            for p in self._records
            if p != "/" and p.startswith(prefix) and "/" not in p[len(prefix):]
        )

    def _get_children(self, path: str) -> list[str]:
        path = _normalize(path)
        with self._lock:
            if path not in self._records:
                raise NoNodeError(path)
            return self._children(path)

    def _delete(self, path: str, recursive: bool) -> None:
        path = _normalize(path)
        if path == "/":
            raise CoordinationError("Cannot delete the root record")
        with self._lock:
            if path not in self._records:
                raise NoNodeError(path)
            if self._children(path) and not recursive:
                raise CoordinationError(f"Record has children: {path}")
            notifications = self._delete_locked(path)
        self._dispatch(notifications)

    def _delete_locked(self, path: str) -> list:
        notifications = []
        prefix = path + "/"
        for p in sorted((p for p in self._records if p.startswith(prefix)), reverse=True):
            del self._records[p]
            notifications.extend(self._data_notifications(p, None))
        del self._records[path]
        notifications.extend(self._data_notifications(path, None))
        notifications.extend(self._children_notifications(_parent_of(path)))
        return notifications

    def _remove_ephemerals(self, session_id: str) -> list:
        with self._lock:
            owned = [p for p, r in self._records.items() if r.owner == session_id]
            notifications = []
            for p in owned:
                if p in self._records:
                    notifications.extend(self._delete_locked(p))
            return notifications

    # -------------------------------------------------------------------------
    # Watches
    # -------------------------------------------------------------------------

    def _add_watch(self, table: dict, path: str, session: InMemorySession, callback) -> Callable[[], None]:
        path = _normalize(path)
        entry = (session, callback)
        with self._lock:
            table.setdefault(path, []).append(entry)

        def unwatch() -> None:
            with self._lock:
                watchers = table.get(path, [])
                if entry in watchers:
                    watchers.remove(entry)

        return unwatch

    def _drop_watches(self, session: InMemorySession) -> None:
        with self._lock:
            for table in (self._child_watches, self._data_watches):
                for path, watchers in table.items():
                    table[path] = [w for w in watchers if w[0] is not session]

    def _children_notifications(self, path: str) -> list:
        watchers = self._child_watches.get(path)
        if not watchers:
            return []
        children = self._children(path)
        return [(session, cb, (path, list(children))) for session, cb in watchers]

    def _data_notifications(self, path: str, data: bytes | None) -> list:
        return [(session, cb, (path, data)) for session, cb in self._data_watches.get(path, [])]

    def _dispatch(self, notifications: list) -> None:
        for session, callback, args in notifications:
            if not session._state.is_connected:
                continue
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Watch callback failed for {args[0]}: {e}")


class InMemorySession(CoordinationClient):
    """A client session on an InMemoryCoordinationService."""

    def __init__(self, ensemble: InMemoryCoordinationService, session_id: str):
        self._ensemble = ensemble
        self._session_id = session_id
        self._state = ConnectionState.CONNECTED
        self._expired = False
        self._closed = False
        self._listeners: list[ConnectionListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._session_id

    def _check_connected(self) -> None:
        if self._closed:
            raise CoordinationConnectionError("Session is closed")
        if not self._state.is_connected:
            raise CoordinationConnectionError(
                f"Session {self._session_id} is not connected ({self._state.value})"
            )

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        logger.debug(f"Session {self._session_id} state -> {state.value}")
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Connection listener failed on {state.value}: {e}")

    async def create(
        self,
        path: str,
        data: bytes = b"",
        *,
        ephemeral: bool = False,
        sequential: bool = False,
        make_parents: bool = True,
    ) -> str:
        self._check_connected()
        return self._ensemble._create(self, path, data, ephemeral, sequential, make_parents)

    async def set_data(self, path: str, data: bytes) -> None:
        self._check_connected()
        self._ensemble._set_data(path, data)

    async def get_data(self, path: str) -> bytes:
        self._check_connected()
        return self._ensemble._get_data(path)

    async def exists(self, path: str) -> bool:
        self._check_connected()
        return self._ensemble._exists(path)

    async def delete(self, path: str, *, recursive: bool = False) -> None:
        self._check_connected()
        self._ensemble._delete(path, recursive)

    async def get_children(self, path: str) -> list[str]:
        self._check_connected()
        return self._ensemble._get_children(path)

    def watch_children(self, path: str, callback: ChildrenWatcher) -> Callable[[], None]:
        return self._ensemble._add_watch(self._ensemble._child_watches, path, self, callback)

    def watch_data(self, path: str, callback: DataWatcher) -> Callable[[], None]:
        return self._ensemble._add_watch(self._ensemble._data_watches, path, self, callback)

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    def remove_connection_listener(self, listener: ConnectionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def close(self) -> None:
        if self._closed:
            return
        notifications = self._ensemble._remove_ephemerals(self._session_id)
        self._ensemble._drop_watches(self)
        self._closed = True
        self._state = ConnectionState.LOST
        self._ensemble._dispatch(notifications)
        logger.debug(f"Session {self._session_id} closed")
