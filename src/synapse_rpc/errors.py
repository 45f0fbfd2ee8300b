"""Exception taxonomy.

Every error raised by the transport derives from RPCError:
- SchemaError: registry/implementation misconfiguration, fatal at startup
- InvalidInput: local validation failure, never reaches the network
- InvalidOutput: server-side output drift, reported instead of sent
- RemoteError: the server reported a non-success outcome
- MalformedResponse: the wire response didn't match the expected envelope
- ConnectionClosed: operation attempted on a closed channel
- TransportError: the underlying transport dropped or could not connect
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .shapes import Violation


class RPCError(Exception):
    """Base class for all transport errors."""


class SchemaError(RPCError):
    """Schema or implementation misconfiguration."""


class UnknownProcedure(SchemaError):
    """No procedure is declared under the given service/procedure name."""

    def __init__(self, service: str, procedure: str | None = None):
        self.service = service
        self.procedure = procedure
        if procedure is None:
            super().__init__(f"Unknown service: {service}")
        else:
            super().__init__(f"Unknown procedure: {service}.{procedure}")


class DuplicateProcedure(SchemaError):
    """A procedure name was declared (or implemented) twice in one service."""

    def __init__(self, service: str, procedure: str):
        self.service = service
        self.procedure = procedure
        super().__init__(f"Duplicate procedure '{procedure}' in service '{service}'")


class DuplicateService(SchemaError):
    """A service name was declared twice in one schema."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Duplicate service '{service}'")


class MissingImplementation(SchemaError):
    """A declared procedure has no registered implementation."""

    def __init__(self, service: str, procedures: list[str]):
        self.service = service
        self.procedures = procedures
        super().__init__(
            f"Service '{service}' is missing implementations for: {', '.join(procedures)}"
        )


class TopicOwnershipError(SchemaError):
    """A topic was published or defined by a service that does not own it."""


class InvalidInput(RPCError):
    """Payload failed validation against its declared shape."""

    def __init__(self, violations: list[Violation], context: str = "input"):
        self.violations = violations
        self.context = context
        details = "; ".join(str(v) for v in violations) or "invalid value"
        super().__init__(f"Invalid {context}: {details}")


class InvalidOutput(RPCError):
    """An implementation produced a value that violates the declared output shape."""

    def __init__(self, procedure: str, violations: list[Violation]):
        self.procedure = procedure
        self.violations = violations
        details = "; ".join(str(v) for v in violations) or "invalid value"
        super().__init__(f"Invalid output from {procedure}: {details}")


class RemoteError(RPCError):
    """The server returned a non-success outcome.

    The message is the server-supplied error text, verbatim.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class MalformedResponse(RPCError):
    """The response envelope or payload did not match expectations."""

    def __init__(self, message: str, violations: list[Violation] | None = None):
        self.violations = violations or []
        super().__init__(message)


class ConnectionClosed(RPCError):
    """Send attempted on a connection that is closing or closed."""


class TransportError(RPCError, ConnectionError):
    """Transport-level failure (connect error, dropped stream or socket)."""
