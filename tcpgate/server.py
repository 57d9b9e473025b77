"""
Tcpgate Server

Accepts TCP clients on an already-bound listener, emits every chunk read
from any client as an OutboundEvent, and writes addressed payloads back to
the client registered under the given connection id.
The server is completely content-agnostic - it just moves bytes.
"""

import asyncio
import errno
import itertools
import logging
import socket
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from tcpgate.config import TcpGateConfig
from tcpgate.connection import Connection, format_peer, make_connection_id
from tcpgate.errors import ConnectionClosed, DuplicateIdentifier
from tcpgate.models import OutboundEvent
from tcpgate.registry import ConnectionRegistry

LOG = logging.getLogger(__name__)

# Accept failures that clear up once resources are released.
RESOURCE_ERRORS = frozenset({errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM})


@dataclass
class TcpGateServer:
    """
    Multiplexes many TCP clients onto one event stream.

    Every accepted client gets its own handler task and a connection id of
    the form ``host:port#sequence``. Handlers push events into ``output``, a
    bounded queue: when it is full the handler waits before reading more
    from its client, so a stalled consumer slows ingestion instead of
    growing memory without limit.

    Usage:
        server = TcpGateServer()
        serve_task = asyncio.create_task(server.serve(listener))
        async for event in server.events():
            ...
        await server.dispatch(event.connection_id, b"reply")
    """

    config: TcpGateConfig = field(default_factory=TcpGateConfig)
    registry: ConnectionRegistry = field(default_factory=ConnectionRegistry)
    on_connect: Callable[[str], Awaitable[None]] | None = field(default=None, kw_only=True)
    on_disconnect: Callable[[str], Awaitable[None]] | None = field(default=None, kw_only=True)
    output: "asyncio.Queue[OutboundEvent]" = field(init=False)
    handler_tasks: set[asyncio.Task] = field(default_factory=set, init=False)

    def __post_init__(self) -> None:
        self.output = asyncio.Queue(maxsize=self.config.output_queue_size)
        self._sequence = itertools.count(1)
        self._listener: socket.socket | None = None
        self._accept_task: asyncio.Task | None = None
        self._closing = False

    @property
    def active_connections(self) -> int:
        """Number of currently registered connections."""
        return len(self.registry)

    async def serve(self, listener: socket.socket) -> None:
        """
        Accept clients on a bound, listening socket.

        Blocks until shutdown() is called. Cancelling the task running this
        method shuts the server down as well. Transient accept failures such
        as running out of file descriptors are logged and accepting resumes.
        Any other accept failure means the listener is broken: the server is
        shut down and the OSError is raised.
        """
        listener.setblocking(False)
        self._listener = listener
        LOG.info("Listening on %s", format_peer(listener.getsockname()))

        self._accept_task = asyncio.create_task(self.accept_loop(listener))
        try:
            await self._accept_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not self._closing or (current is not None and current.cancelling()):
                raise
        finally:
            if not self._closing:
                await self.shutdown()
        LOG.info("Stopped accepting connections")

    async def accept_loop(self, listener: socket.socket) -> None:
        loop = asyncio.get_running_loop()

        while True:
            try:
                sock, _ = await loop.sock_accept(listener)
            except OSError as exc:
                if exc.errno == errno.ECONNABORTED:
                    LOG.debug("Client aborted before accept: %s", exc)
                    continue
                if exc.errno in RESOURCE_ERRORS:
                    LOG.warning("Accept failed, retrying: %s", exc)
                    await asyncio.sleep(self.config.accept_retry_seconds)
                    continue
                LOG.error("Listener failed: %s", exc)
                raise

            task = asyncio.create_task(self.start_connection(sock))
            self.handler_tasks.add(task)
            task.add_done_callback(self.handler_tasks.discard)

    async def start_connection(self, sock: socket.socket) -> None:
        try:
            reader, writer = await asyncio.open_connection(sock=sock)
        except OSError as exc:
            LOG.warning("Could not set up accepted connection: %s", exc)
            sock.close()
            return

        await self.handle_connection(reader, writer)

    async def handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """
        Handle one client connection lifecycle.

        This method blocks until the connection closes.
        """
        peer = format_peer(writer.get_extra_info("peername"))
        connection_id = make_connection_id(peer, next(self._sequence))
        connection = Connection(connection_id, reader, writer, peer)

        try:
            self.registry.insert(connection_id, connection)
        except DuplicateIdentifier:
            LOG.error("Refusing connection from %s: id %s is taken", peer, connection_id)
            await connection.close()
            return

        LOG.info("New connection: %s", connection_id)
        try:
            if self.on_connect:
                await self.on_connect(connection_id)

            await self.run_connection(connection)
        except Exception:
            LOG.exception("Error in connection handler: %s", connection_id)
        finally:
            await self.close_connection(connection)

            if self.on_disconnect:
                try:
                    await self.on_disconnect(connection_id)
                except Exception:
                    LOG.exception("Error in disconnect hook: %s", connection_id)

    async def run_connection(self, connection: Connection) -> None:
        """Read chunks until EOF or a read error, emitting each one in order."""
        connection_id = connection.connection_id

        while connection.is_open:
            try:
                chunk = await connection.read(self.config.read_chunk_size)
            except OSError as exc:
                LOG.info("Read error on connection %s: %s", connection_id, exc)
                return

            if not chunk:
                LOG.info("Connection closed by peer: %s", connection_id)
                return

            LOG.debug("Received %d bytes from %s", len(chunk), connection_id)
            await self.output.put(OutboundEvent(connection_id=connection_id, payload=chunk))

    async def close_connection(self, connection: Connection) -> None:
        """Deregister, then close. Safe to call more than once."""
        if not connection.begin_close():
            return

        # Deregister before closing so no dispatch can reach a closing socket.
        self.registry.remove(connection.connection_id)
        await connection.close()
        LOG.info("Unregistered connection %s", connection.connection_id)

    async def dispatch(self, connection_id: str, payload: bytes) -> bool:
        """
        Write a payload to the connection registered under connection_id.

        An unknown or closed id is silently ignored. A failed write closes
        the connection the same way a failed read does. Errors are never
        raised to the caller.

        Returns:
            True if the payload was handed to the socket, False otherwise
        """
        connection = self.registry.lookup(connection_id)
        if connection is None or not connection.is_open:
            LOG.debug("Dropping %d bytes for unknown connection %s", len(payload), connection_id)
            return False

        try:
            await connection.write(payload, timeout=self.config.write_timeout_seconds)
        except ConnectionClosed:
            LOG.debug("Connection %s closed before write", connection_id)
            return False
        except (OSError, TimeoutError) as exc:
            LOG.warning("Write to connection %s failed: %r", connection_id, exc)
            await self.close_connection(connection)
            return False

        LOG.debug("Sent %d bytes to %s", len(payload), connection_id)
        return True

    async def events(self) -> AsyncIterator[OutboundEvent]:
        """Consume the output queue forever."""
        while True:
            event = await self.output.get()
            try:
                yield event
            finally:
                self.output.task_done()

    async def shutdown(self) -> None:
        """Stop accepting, close the listener and every open connection."""
        LOG.info("Shutting down tcpgate server (%d connections)", self.active_connections)
        self._closing = True

        accept_task = self._accept_task
        if accept_task is not None and accept_task is not asyncio.current_task():
            accept_task.cancel()
            await asyncio.gather(accept_task, return_exceptions=True)

        if self._listener is not None:
            self._listener.close()

        for connection in self.registry.drain():
            if connection.begin_close():
                await connection.close()

        tasks = [task for task in self.handler_tasks if task is not asyncio.current_task()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.config.shutdown_timeout_seconds)
            for task in pending:
                task.cancel()
            if pending:
                LOG.warning("Cancelled %d stuck connection handlers", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
