"""
Tcpgate Bridge

Wires a TcpGateServer to three ZeroMQ ports:

    options  PULL, bound   - receives the bind address, once
    in       PULL, bound   - [connection id, data] groups to write to clients
    out      PUSH, connect - [connection id, data] groups read from clients

No network listener is created until a valid bind address has arrived on
the options port.
"""

import asyncio
import contextlib
import logging
import socket
from dataclasses import dataclass, field

import zmq
import zmq.asyncio

from tcpgate.bind import BindCoordinator, create_listener
from tcpgate.config import TcpGateConfig
from tcpgate.framing import GroupDecoder, encode_event, is_packet
from tcpgate.models import BindAddress
from tcpgate.server import TcpGateServer

LOG = logging.getLogger(__name__)


@dataclass
class Bridge:
    """
    Usage:
        bridge = Bridge("tcp://127.0.0.1:5000", "tcp://127.0.0.1:5001", "tcp://127.0.0.1:5002")
        await bridge.run()
    """

    options_endpoint: str
    in_endpoint: str
    out_endpoint: str
    config: TcpGateConfig = field(default_factory=TcpGateConfig)
    context: zmq.asyncio.Context = field(default_factory=zmq.asyncio.Context.instance)
    server: TcpGateServer = field(init=False)
    bind: BindCoordinator = field(default_factory=BindCoordinator, init=False)
    options_port: zmq.asyncio.Socket | None = field(default=None, init=False)
    in_port: zmq.asyncio.Socket | None = field(default=None, init=False)
    out_port: zmq.asyncio.Socket | None = field(default=None, init=False)
    listener: socket.socket | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        self.server = TcpGateServer(self.config)

    def open_ports(self) -> None:
        """
        Open the three ports.

        Raises:
            zmq.ZMQError: If an endpoint cannot be bound or connected. Ports
                opened before the failing one are closed again.
        """
        try:
            self.options_port = self.context.socket(zmq.PULL)
            self.options_port.bind(self.options_endpoint)

            self.in_port = self.context.socket(zmq.PULL)
            self.in_port.bind(self.in_endpoint)

            self.out_port = self.context.socket(zmq.PUSH)
            self.out_port.connect(self.out_endpoint)
        except zmq.ZMQError:
            self.close_ports()
            raise

    def close_ports(self) -> None:
        for port in (self.options_port, self.in_port, self.out_port):
            if port is not None and not port.closed:
                port.close(linger=self.config.zmq_linger_ms)

    @staticmethod
    def require_port(port: zmq.asyncio.Socket | None, name: str) -> zmq.asyncio.Socket:
        if port is None:
            raise RuntimeError(f"The {name} port is not open; call open_ports() first")
        return port

    async def run(self) -> None:
        """
        Wait for the bind address, then serve until shutdown.

        The server and both pumps run in one task group: if any of them
        fails, the others are cancelled and the error is raised in an
        ExceptionGroup. Cancelling the task running this method shuts the
        bridge down.
        """
        try:
            if self.options_port is None:
                self.open_ports()

            address = await self.wait_for_bind_address()
            self.listener = create_listener(address, self.config.accept_backlog)

            async with asyncio.TaskGroup() as tg:
                pumps = [
                    tg.create_task(self.pump_output()),
                    tg.create_task(self.pump_input()),
                ]
                serving = tg.create_task(self.server.serve(self.listener))
                # The pumps never finish on their own; stop them once serving ends.
                serving.add_done_callback(lambda _: [pump.cancel() for pump in pumps])
                LOG.info("Started...")
        finally:
            await self.close()

    async def wait_for_bind_address(self) -> BindAddress:
        """Read the options port until a valid bind address arrives."""
        options_port = self.require_port(self.options_port, "options")

        LOG.info("Waiting for configuration...")
        while not self.bind.resolved:
            try:
                ip = await options_port.recv_multipart()
            except zmq.ZMQError as exc:
                LOG.warning("Error receiving options: %s", exc)
                continue

            if not is_packet(ip):
                LOG.debug("Ignoring non-packet IP on options port")
                continue
            self.bind.offer(ip[1])

        options_port.close(linger=self.config.zmq_linger_ms)
        return await self.bind.wait()

    async def pump_output(self) -> None:
        """Send every event as one complete group."""
        out_port = self.require_port(self.out_port, "out")

        async for event in self.server.events():
            # Only this task writes to the out port, so groups never interleave.
            for ip in encode_event(event):
                await out_port.send_multipart(ip)

    async def pump_input(self) -> None:
        """Decode groups from the in port and dispatch them."""
        in_port = self.require_port(self.in_port, "in")

        decoder = GroupDecoder()
        while True:
            try:
                ip = await in_port.recv_multipart()
            except zmq.ZMQError as exc:
                if in_port.closed:
                    return
                LOG.warning("Error receiving message: %s", exc)
                continue

            command = decoder.feed(ip)
            if command is not None:
                await self.server.dispatch(command.connection_id, command.payload)

    async def close(self) -> None:
        """Shut the server down and release every socket."""
        await self.server.shutdown()

        if self.listener is not None:
            with contextlib.suppress(OSError):
                self.listener.close()

        self.close_ports()
        LOG.info("Bridge closed")
