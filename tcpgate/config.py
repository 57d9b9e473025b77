"""Configuration for tcpgate components."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TcpGateConfig(BaseSettings):
    read_chunk_size: int = Field(default=4096, gt=0)
    output_queue_size: int = Field(default=1024, gt=0)
    write_timeout_seconds: float = 30.0
    accept_backlog: int = 100
    accept_retry_seconds: float = 1.0
    shutdown_timeout_seconds: float = 5.0

    zmq_linger_ms: int = 0

    model_config = SettingsConfigDict(env_prefix="tcpgate_")
