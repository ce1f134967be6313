"""Shared configuration registry.

Key-value store of configurations, each identified by a PID and holding a
property map. Factory configurations additionally carry the PID of the
factory they belong to (``service.factoryPid``), which is how compute and
blob-store provider registrations are found again.

The store is SQLite with thread-local connections in WAL mode, so several
threads and several processes pointed at the same file share one registry.
``":memory:"`` gives a private in-process registry (a named shared-cache
database, so every thread sees the same data).

Usage:
    registry = ConfigurationRegistry("/var/lib/fleetplane/registry.db")
    registry.update("fleetplane.git", {"fleetplane.git.url": "http://10.0.0.5:8181/git/fleet/"})
    for props in registry.list_configurations(factory_pid=COMPUTE_FACTORY_PID):
        print(props["name"])
"""

from __future__ import annotations

import itertools
import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from fleetplane.errors import ConfigurationError

__all__ = [
    "BLOBSTORE_FACTORY_PID",
    "COMPUTE_FACTORY_PID",
    "FACTORY_PID_KEY",
    "SERVICE_PID_KEY",
    "ConfigurationEvent",
    "ConfigurationEventType",
    "ConfigurationRegistry",
]

logger = logging.getLogger(__name__)

SERVICE_PID_KEY = "service.pid"
FACTORY_PID_KEY = "service.factoryPid"

COMPUTE_FACTORY_PID = "fleetplane.compute"
BLOBSTORE_FACTORY_PID = "fleetplane.blobstore"

_memory_ids = itertools.count(1)


class ConfigurationEventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class ConfigurationEvent:
    """Change notification for one configuration."""

    type: ConfigurationEventType
    pid: str
    factory_pid: str | None
    properties: dict[str, Any] = field(default_factory=dict)


ConfigurationListener = Callable[[ConfigurationEvent], None]


class ConfigurationRegistry:
    """PID-scoped property store with change listeners."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS configurations (
            pid TEXT PRIMARY KEY,
            factory_pid TEXT,
            properties TEXT NOT NULL,
            updated_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_configurations_factory
            ON configurations(factory_pid);
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        if str(db_path) == ":memory:":
            self._database = f"file:fleetplane-registry-{next(_memory_ids)}?mode=memory&cache=shared"
            self._uri = True
        else:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._database = str(path)
            self._uri = False

        self._local = threading.local()
        self._write_lock = threading.RLock()
        self._listeners: list[ConfigurationListener] = []

        # Keeps a shared-cache memory database alive for the registry's lifetime
        self._keepalive = self._get_connection()
        self._keepalive.executescript(self.SCHEMA)
        self._keepalive.commit()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._database, timeout=30.0, uri=self._uri)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=10000")
            self._local.conn = conn
        return conn

    def close(self) -> None:
        """Close this thread's connection and the keepalive connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
        if self._keepalive is not conn:
            self._keepalive.close()

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, pid: str) -> dict[str, Any] | None:
        """Get a configuration's properties, or None if absent."""
        row = self._get_connection().execute(
            "SELECT properties FROM configurations WHERE pid = ?", (pid,)
        ).fetchone()
        return json.loads(row["properties"]) if row else None

    def list_configurations(
        self,
        factory_pid: str | None = None,
        **match: Any,
    ) -> list[dict[str, Any]]:
        """List configurations, optionally filtered.

        Args:
            factory_pid: Only configurations created for this factory
            **match: Property values that must all be equal

        Returns:
            Property maps ordered by PID
        """
        conn = self._get_connection()
        if factory_pid is None:
            rows = conn.execute("SELECT properties FROM configurations ORDER BY pid").fetchall()
        else:
            rows = conn.execute(
                "SELECT properties FROM configurations WHERE factory_pid = ? ORDER BY pid",
                (factory_pid,),
            ).fetchall()

        result = []
        for row in rows:
            properties = json.loads(row["properties"])
            if all(properties.get(k) == v for k, v in match.items()):
                result.append(properties)
        return result

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        pid: str,
        properties: dict[str, Any],
        factory_pid: str | None = None,
    ) -> dict[str, Any]:
        """Create a configuration.

        Raises:
            ConfigurationError: If ``pid`` already exists
        """
        with self._write_lock:
            if self.get(pid) is not None:
                raise ConfigurationError(f"Configuration already exists: {pid}")
            stored = self._write(pid, dict(properties), factory_pid)
        self._notify(ConfigurationEvent(ConfigurationEventType.CREATED, pid, factory_pid, stored))
        return stored

    def update(
        self,
        pid: str,
        properties: dict[str, Any],
        factory_pid: str | None = None,
        merge: bool = True,
    ) -> dict[str, Any]:
        """Update a configuration, creating it when absent.

        Args:
            pid: Configuration PID
            properties: Properties to write
            factory_pid: Factory PID (kept from the stored value when None)
            merge: Merge into existing properties instead of replacing them

        Returns:
            The stored property map
        """
        with self._write_lock:
            existing = self.get(pid)
            if existing is not None and factory_pid is None:
                factory_pid = existing.get(FACTORY_PID_KEY)
            new_properties = {**existing, **properties} if (existing and merge) else dict(properties)
            stored = self._write(pid, new_properties, factory_pid)
        event_type = ConfigurationEventType.CREATED if existing is None else ConfigurationEventType.UPDATED
        self._notify(ConfigurationEvent(event_type, pid, factory_pid, stored))
        logger.debug(f"Configuration {pid} {event_type.value}")
        return stored

    def delete(self, pid: str) -> bool:
        """Delete a configuration. Returns False if it did not exist."""
        with self._write_lock:
            existing = self.get(pid)
            if existing is None:
                return False
            conn = self._get_connection()
            conn.execute("DELETE FROM configurations WHERE pid = ?", (pid,))
            conn.commit()
        self._notify(
            ConfigurationEvent(
                ConfigurationEventType.DELETED, pid, existing.get(FACTORY_PID_KEY), existing
            )
        )
        return True

    def _write(self, pid: str, properties: dict[str, Any], factory_pid: str | None) -> dict[str, Any]:
        properties[SERVICE_PID_KEY] = pid
        if factory_pid is not None:
            properties[FACTORY_PID_KEY] = factory_pid
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO configurations (pid, factory_pid, properties, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(pid) DO UPDATE SET
                factory_pid = excluded.factory_pid,
                properties = excluded.properties,
                updated_at = excluded.updated_at
            """,
            (pid, factory_pid, json.dumps(properties, sort_keys=True), time.time()),
        )
        conn.commit()
        return properties

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: ConfigurationListener) -> None:
        with self._write_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConfigurationListener) -> None:
        with self._write_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, event: ConfigurationEvent) -> None:
        with self._write_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Configuration listener failed for {event.pid}: {e}")
