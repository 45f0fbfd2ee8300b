"""Server-side transports.

- SSE (Server-Sent Events) - server push for SUBSCRIPTION procedures
- WebSocket - full duplex for BIDIRECTIONAL procedures

QUERY and MUTATION need no transport object: they are plain HTTP exchanges
handled directly by the procedure routes.
"""

from .sse import (
    CLOSE_EVENT,
    ERROR_EVENT,
    MESSAGE_EVENT,
    EventStreamResponse,
    ServerStream,
    SSEFrame,
    encode_frame,
    iter_frames,
)
from .websocket import ServerDuplex, failure_payload, is_failure_payload

__all__ = [
    # SSE
    "CLOSE_EVENT",
    "ERROR_EVENT",
    "MESSAGE_EVENT",
    "EventStreamResponse",
    "ServerStream",
    "SSEFrame",
    "encode_frame",
    "iter_frames",
    # WebSocket
    "ServerDuplex",
    "failure_payload",
    "is_failure_payload",
]
