"""
Connection handles for accepted TCP clients.

A Connection is owned by the server through the registry. Its handler task
is the only reader; the dispatch path is the only writer.
"""

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from tcpgate.errors import ConnectionClosed

LOG = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def format_peer(peername: Any) -> str:
    """Render a socket peername as host:port."""
    if isinstance(peername, tuple) and len(peername) >= 2:
        host, port = peername[0], peername[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    if peername:
        return str(peername)
    return "unknown"


def make_connection_id(peer: str, sequence: int) -> str:
    """
    Build a connection id from the remote endpoint and a sequence number.

    The sequence number comes from a per-server counter, so two connections
    from the same peer address never share an id.
    """
    return f"{peer}#{sequence}"


@dataclass
class Connection:
    connection_id: str
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    peer: str = "unknown"
    state: ConnectionState = field(default=ConnectionState.OPEN, init=False)

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    async def read(self, size: int) -> bytes:
        return await self.reader.read(size)

    async def write(self, payload: bytes, *, timeout: float | None = None) -> None:
        """
        Write a payload and wait for the transport to accept it.

        Raises:
            ConnectionClosed: If the connection has left the open state
            OSError: If the socket write fails
            TimeoutError: If draining takes longer than timeout
        """
        if not self.is_open:
            raise ConnectionClosed(self.connection_id)

        self.writer.write(payload)
        await asyncio.wait_for(self.writer.drain(), timeout=timeout)

    def begin_close(self) -> bool:
        """Move an open connection to closing. Returns False if already leaving."""
        if not self.is_open:
            return False
        self.state = ConnectionState.CLOSING
        return True

    async def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED

        self.writer.close()
        # The peer may already have reset the socket.
        with contextlib.suppress(OSError):
            await self.writer.wait_closed()
        LOG.debug("Closed transport for %s", self.connection_id)
