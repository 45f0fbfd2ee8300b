"""Synapse RPC - typed multi-mode RPC transport.

One schema declares services and procedures of four kinds:
- QUERY / MUTATION: request/response over HTTP
- SUBSCRIPTION: server push over Server-Sent Events
- BIDIRECTIONAL: duplex messages over WebSocket

Server side: APISchema + ServiceImplementationBuilder + Server.
Client side: RPCClient (see synapse_rpc.sdk).
"""

from .app import Server, create_app
from .bus import EventFanOut, Subscription, Topic
from .config import ClientConfig, ServerConfig
from .connection import WILDCARD, Connection, ConnectionState, Direction, DuplexConnection
from .dispatcher import Dispatcher
from .errors import (
    ConnectionClosed,
    DuplicateProcedure,
    DuplicateService,
    InvalidInput,
    InvalidOutput,
    MalformedResponse,
    MissingImplementation,
    RemoteError,
    RPCError,
    SchemaError,
    TopicOwnershipError,
    TransportError,
    UnknownProcedure,
)
from .implementation import CallContext, ServiceImplementation, ServiceImplementationBuilder
from .schema import APISchema, MethodKind, Procedure, Service
from .sdk import DuplexChannel, PushStream, RPCClient
from .shapes import Shape, ShapeModel, ValidationResult, Violation, validate
from .transport import ServerDuplex, ServerStream

__version__ = "0.1.0"

__all__ = [
    # Schema
    "APISchema",
    "MethodKind",
    "Procedure",
    "Service",
    "Shape",
    "ShapeModel",
    "ValidationResult",
    "Violation",
    "validate",
    # Server
    "CallContext",
    "Dispatcher",
    "Server",
    "ServerConfig",
    "ServerDuplex",
    "ServerStream",
    "ServiceImplementation",
    "ServiceImplementationBuilder",
    "create_app",
    # Events
    "EventFanOut",
    "Subscription",
    "Topic",
    # Connections
    "WILDCARD",
    "Connection",
    "ConnectionState",
    "Direction",
    "DuplexConnection",
    # Client
    "ClientConfig",
    "DuplexChannel",
    "PushStream",
    "RPCClient",
    # Errors
    "ConnectionClosed",
    "DuplicateProcedure",
    "DuplicateService",
    "InvalidInput",
    "InvalidOutput",
    "MalformedResponse",
    "MissingImplementation",
    "RPCError",
    "RemoteError",
    "SchemaError",
    "TopicOwnershipError",
    "TransportError",
    "UnknownProcedure",
]
