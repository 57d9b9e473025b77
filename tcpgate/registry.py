"""
Connection Registry

Maps connection ids to live connections. Safe to use from handler tasks,
the dispatch path and other threads at the same time. The lock only ever
guards dict operations; callers do their socket I/O after it is released.
"""

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tcpgate.connection import Connection

from tcpgate.errors import DuplicateIdentifier

LOG = logging.getLogger(__name__)


class ConnectionRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, "Connection"] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._connections

    def insert(self, connection_id: str, connection: "Connection") -> None:
        """
        Register a connection.

        Raises:
            DuplicateIdentifier: If the id is already registered
        """
        with self._lock:
            if connection_id in self._connections:
                raise DuplicateIdentifier(connection_id)
            self._connections[connection_id] = connection
        LOG.debug("Registered connection %s", connection_id)

    def lookup(self, connection_id: str) -> "Connection | None":
        with self._lock:
            return self._connections.get(connection_id)

    def remove(self, connection_id: str) -> None:
        """Remove a connection. Removing an unknown id is a no-op."""
        with self._lock:
            removed = self._connections.pop(connection_id, None)
        if removed is not None:
            LOG.debug("Unregistered connection %s", connection_id)

    def drain(self) -> list["Connection"]:
        """Remove every connection and return them."""
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        return connections
