"""Server and client configuration.

Defaults can be overridden through environment variables; CLI flags override both.

Environment:
    SYNAPSE_RPC_HOST          Bind host (server)
    SYNAPSE_RPC_PORT          Bind port (server)
    SYNAPSE_RPC_API_PREFIX    Path prefix for procedure endpoints
    SYNAPSE_RPC_KEEPALIVE     Seconds between SSE keep-alive comments
    SYNAPSE_RPC_CORS_ORIGINS  Comma-separated allowed CORS origins, on top of
                              any localhost or 127.0.0.1 origin
    SYNAPSE_RPC_LOG_LEVEL     Root log level for the CLI
    SYNAPSE_RPC_API_URL       Server base URL (client)
    SYNAPSE_RPC_TIMEOUT       Request timeout in seconds (client)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_API_PREFIX = "/_api"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4096

# Any port on the loopback host names
LOCAL_ORIGIN_REGEX = r"http://(localhost|127\.0\.0\.1)(:\d+)?"


def _normalize_prefix(prefix: str) -> str:
    prefix = "/" + prefix.strip("/")
    return "" if prefix == "/" else prefix


@dataclass
class ServerConfig:
    """Server-side configuration."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    api_prefix: str = DEFAULT_API_PREFIX
    keepalive_interval: float = 15.0
    cors_origins: list[str] = field(default_factory=list)
    cors_origin_regex: str | None = LOCAL_ORIGIN_REGEX
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.api_prefix = _normalize_prefix(self.api_prefix)
        if self.keepalive_interval <= 0:
            raise ValueError("keepalive_interval must be positive")

    @classmethod
    def from_env(cls) -> ServerConfig:
        config = cls()
        if host := os.environ.get("SYNAPSE_RPC_HOST"):
            config.host = host
        if port := os.environ.get("SYNAPSE_RPC_PORT"):
            config.port = int(port)
        if prefix := os.environ.get("SYNAPSE_RPC_API_PREFIX"):
            config.api_prefix = _normalize_prefix(prefix)
        if keepalive := os.environ.get("SYNAPSE_RPC_KEEPALIVE"):
            config.keepalive_interval = float(keepalive)
        if origins := os.environ.get("SYNAPSE_RPC_CORS_ORIGINS"):
            config.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]
        if level := os.environ.get("SYNAPSE_RPC_LOG_LEVEL"):
            config.log_level = level.upper()
        return config


@dataclass
class ClientConfig:
    """Client-side configuration."""

    base_url: str = f"http://{DEFAULT_HOST}:{DEFAULT_PORT}"
    api_prefix: str = DEFAULT_API_PREFIX
    timeout: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        self.api_prefix = _normalize_prefix(self.api_prefix)

    @property
    def ws_base_url(self) -> str:
        """Base URL with the scheme switched to ws:// or wss://."""
        return self.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)

    def procedure_path(self, service: str, procedure: str) -> str:
        return f"{self.api_prefix}/{service}/{procedure}"

    @classmethod
    def from_env(cls) -> ClientConfig:
        config = cls()
        if url := os.environ.get("SYNAPSE_RPC_API_URL"):
            config.base_url = url.rstrip("/")
        if prefix := os.environ.get("SYNAPSE_RPC_API_PREFIX"):
            config.api_prefix = _normalize_prefix(prefix)
        if timeout := os.environ.get("SYNAPSE_RPC_TIMEOUT"):
            config.timeout = float(timeout)
        return config
