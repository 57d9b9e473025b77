"""Exceptions raised by tcpgate components."""


class TcpGateError(Exception):
    """Base exception for all tcpgate errors."""


class DuplicateIdentifier(TcpGateError):
    """Raised when a connection id is already registered."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Connection already registered: {connection_id}")


class ConnectionClosed(TcpGateError):
    """Raised when writing to a connection that is no longer open."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Connection is not open: {connection_id}")


class InvalidBindAddress(TcpGateError):
    """Raised when a bind address is not a valid host:port pair."""

    def __init__(self, value: str, reason: str) -> None:
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid bind address {value!r}: {reason}")


class MalformedGroup(TcpGateError):
    """Raised when a framed message group does not carry an id and a payload."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed message group: {reason}")
