"""
tcpgate - TCP to message-port bridge

Accepts any number of TCP clients and exposes them as a stream of
(connection id, bytes) events, while routing addressed writes back to the
client currently registered under a connection id.

The gateway does NOT inspect payloads - it simply moves bytes.
"""

from tcpgate.bridge import Bridge
from tcpgate.config import TcpGateConfig
from tcpgate.errors import (
    ConnectionClosed,
    DuplicateIdentifier,
    InvalidBindAddress,
    MalformedGroup,
    TcpGateError,
)
from tcpgate.models import (
    BindAddress,
    DispatchCommand,
    OutboundEvent,
)
from tcpgate.registry import ConnectionRegistry
from tcpgate.server import TcpGateServer

__all__ = [
    # Server
    "TcpGateServer",
    "ConnectionRegistry",
    # Bridge
    "Bridge",
    "TcpGateConfig",
    # Models
    "BindAddress",
    "DispatchCommand",
    "OutboundEvent",
    # Errors
    "TcpGateError",
    "ConnectionClosed",
    "DuplicateIdentifier",
    "InvalidBindAddress",
    "MalformedGroup",
]

__version__ = "0.1.0"
