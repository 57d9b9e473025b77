"""
Data models for tcpgate.

Events and commands carry payloads as raw bytes; tcpgate never inspects them.
"""

from pydantic import BaseModel, ConfigDict, Field


class OutboundEvent(BaseModel):
    """One chunk of bytes read from a client connection."""

    model_config = ConfigDict(frozen=True)

    connection_id: str
    payload: bytes


class DispatchCommand(BaseModel):
    """Request to deliver a payload to the connection registered under an id."""

    model_config = ConfigDict(frozen=True)

    connection_id: str = Field(min_length=1)
    payload: bytes


class BindAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(ge=0, le=65535)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class PortDoc(BaseModel):
    name: str
    type: str
    description: str
    required: bool = True


class ComponentDoc(BaseModel):
    """Self-description printed by ``tcpgate --json``."""

    description: str
    elementary: bool = True
    inports: list[PortDoc] = Field(default_factory=list)
    outports: list[PortDoc] = Field(default_factory=list)


COMPONENT_DOC = ComponentDoc(
    description=(
        "TCP server: emits every chunk received from a client as a "
        "[connection id, data] group and writes [connection id, data] "
        "groups back to the matching client"
    ),
    inports=[
        PortDoc(
            name="options",
            type="string",
            description="Bind address, e.g. 127.0.0.1:8000 or :8000",
        ),
        PortDoc(
            name="in",
            type="substream",
            description="Groups of [connection id, data] to write to clients",
        ),
    ],
    outports=[
        PortDoc(
            name="out",
            type="substream",
            description="Groups of [connection id, data] read from clients",
        ),
    ],
)
