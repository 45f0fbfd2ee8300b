"""Synapse RPC client SDK.

- RPCClient: schema-bound client with attribute/item accessors
- RequestChannel: one-shot QUERY/MUTATION calls over HTTP
- PushStream: SUBSCRIPTION events over Server-Sent Events
- DuplexChannel: BIDIRECTIONAL messages over WebSocket
"""

from .client import ProcedureAccessor, RPCClient, ServiceProxy
from .duplex import DuplexChannel
from .request import RequestChannel
from .stream import PushStream

__all__ = [
    "DuplexChannel",
    "ProcedureAccessor",
    "PushStream",
    "RPCClient",
    "RequestChannel",
    "ServiceProxy",
]
