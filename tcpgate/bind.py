"""
Bind address intake.

The listener address arrives asynchronously, before any network activity.
BindCoordinator holds a one-shot future that the first valid address
resolves; everything offered before or after it is ignored.
"""

import asyncio
import logging
import socket

from pydantic import ValidationError

from tcpgate.errors import InvalidBindAddress
from tcpgate.models import BindAddress

LOG = logging.getLogger(__name__)


def parse_bind_address(value: str | bytes) -> BindAddress:
    """
    Parse ``host:port``, ``:port`` or ``[v6host]:port``.

    Raises:
        InvalidBindAddress: If the value is not a usable TCP address
    """
    if isinstance(value, bytes):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidBindAddress(repr(value), "not valid UTF-8") from None

    text = value.strip()
    if not text:
        raise InvalidBindAddress(value, "empty")

    if text.startswith("["):
        host, sep, port_text = text[1:].partition("]:")
        if not sep:
            raise InvalidBindAddress(value, "expected [host]:port")
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep:
            raise InvalidBindAddress(value, "missing port")
        if ":" in host:
            raise InvalidBindAddress(value, "IPv6 hosts must be bracketed")

    if not (port_text.isascii() and port_text.isdigit()):
        raise InvalidBindAddress(value, f"port {port_text!r} is not a number")

    try:
        return BindAddress(host=host, port=int(port_text))
    except ValidationError:
        raise InvalidBindAddress(value, "port out of range") from None


def create_listener(address: BindAddress, backlog: int = 100) -> socket.socket:
    """Resolve the address and return a bound, listening, non-blocking socket."""
    host = address.host or None
    infos = socket.getaddrinfo(
        host,
        address.port,
        family=socket.AF_UNSPEC,
        type=socket.SOCK_STREAM,
        flags=socket.AI_PASSIVE,
    )
    family, type_, proto, _, sockaddr = infos[0]

    listener = socket.socket(family, type_, proto)
    try:
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind(sockaddr)
        listener.listen(backlog)
        listener.setblocking(False)
    except OSError:
        listener.close()
        raise
    return listener


class BindCoordinator:
    """One-shot holder for the bind address."""

    def __init__(self) -> None:
        self._future: asyncio.Future[BindAddress] | None = None

    def _get_future(self) -> "asyncio.Future[BindAddress]":
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
        return self._future

    @property
    def resolved(self) -> bool:
        return self._future is not None and self._future.done()

    def offer(self, value: str | bytes) -> bool:
        """
        Try to resolve the bind address.

        Returns True if this value resolved it. Invalid values and any value
        offered after resolution are logged and ignored.
        """
        future = self._get_future()
        if future.done():
            LOG.debug("Ignoring bind address %r: already resolved", value)
            return False

        try:
            address = parse_bind_address(value)
        except InvalidBindAddress as exc:
            LOG.warning("Ignoring bind address: %s", exc)
            return False

        future.set_result(address)
        LOG.info("Bind address resolved: %s", address)
        return True

    async def wait(self) -> BindAddress:
        return await asyncio.shield(self._get_future())
