"""
Framed message groups.

Every message on a port is an information packet (IP): a two-frame ZeroMQ
multipart message ``[kind, body]``. A group is an open bracket, one or more
data packets and a close bracket. tcpgate groups always hold exactly two
data packets: the connection id and the payload.
"""

import logging
from collections.abc import Sequence

from tcpgate.errors import MalformedGroup
from tcpgate.models import DispatchCommand, OutboundEvent

LOG = logging.getLogger(__name__)

OPEN_BRACKET = b"{"
CLOSE_BRACKET = b"}"
PACKET = b"="

IP_KINDS = (OPEN_BRACKET, CLOSE_BRACKET, PACKET)

IP = Sequence[bytes]


def open_bracket() -> list[bytes]:
    return [OPEN_BRACKET, b""]


def close_bracket() -> list[bytes]:
    return [CLOSE_BRACKET, b""]


def packet(body: bytes) -> list[bytes]:
    return [PACKET, body]


def is_valid_ip(ip: IP) -> bool:
    return len(ip) == 2 and bytes(ip[0]) in IP_KINDS


def is_packet(ip: IP) -> bool:
    return is_valid_ip(ip) and ip[0] == PACKET


def is_open_bracket(ip: IP) -> bool:
    return is_valid_ip(ip) and ip[0] == OPEN_BRACKET


def is_close_bracket(ip: IP) -> bool:
    return is_valid_ip(ip) and ip[0] == CLOSE_BRACKET


def encode_event(event: OutboundEvent) -> list[list[bytes]]:
    """The four IPs carrying one event as a group."""
    return [
        open_bracket(),
        packet(event.connection_id.encode("utf-8")),
        packet(event.payload),
        close_bracket(),
    ]


def decode_group(packets: Sequence[bytes]) -> DispatchCommand:
    """
    Build a dispatch command from the data packets of one group.

    Raises:
        MalformedGroup: If the group is not exactly [connection id, payload]
    """
    if len(packets) != 2:
        raise MalformedGroup(f"expected 2 packets, got {len(packets)}")

    raw_id, payload = packets
    try:
        connection_id = bytes(raw_id).decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedGroup("connection id is not valid UTF-8") from None
    if not connection_id:
        raise MalformedGroup("empty connection id")

    return DispatchCommand(connection_id=connection_id, payload=bytes(payload))


class GroupDecoder:
    """
    Reassembles dispatch commands from a stream of IPs.

    Malformed input is logged and dropped; the decoder keeps going.
    """

    def __init__(self) -> None:
        self._packets: list[bytes] | None = None
        self.dropped = 0

    @property
    def in_group(self) -> bool:
        return self._packets is not None

    def feed(self, ip: IP) -> DispatchCommand | None:
        """Consume one IP. Returns a command when it completes a valid group."""
        if not is_valid_ip(ip):
            self._drop(f"invalid IP with {len(ip)} frames")
            return None

        if is_open_bracket(ip):
            if self._packets is not None:
                self._drop("open bracket inside an unterminated group")
            self._packets = []
            return None

        if is_packet(ip):
            if self._packets is None:
                self._drop("data packet outside a group")
                return None
            self._packets.append(bytes(ip[1]))
            return None

        packets, self._packets = self._packets, None
        if packets is None:
            self._drop("close bracket without open bracket")
            return None

        try:
            return decode_group(packets)
        except MalformedGroup as exc:
            self._drop(exc.reason)
            return None

    def _drop(self, reason: str) -> None:
        self.dropped += 1
        LOG.warning("Dropping malformed group: %s", reason)
