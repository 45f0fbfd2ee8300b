"""Schema registry - services, procedures and method kinds.

Pure data. A schema is declared once at startup and shared by the server
dispatcher, the client accessors and the code generator.

Usage:
    greeting = Service(
        "Greeting",
        [
            Procedure(
                name="SayHello",
                method=MethodKind.QUERY,
                input=SayHelloInput,
                output=SayHelloOutput,
                description="Says hello and the name.",
            ),
        ],
    )
    api_schema = APISchema([greeting])
    procedure = api_schema.lookup("Greeting", "SayHello")
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from .errors import DuplicateProcedure, DuplicateService, UnknownProcedure
from .shapes import Shape


class MethodKind(str, Enum):
    """Interaction mode of a procedure. Fixed at declaration time."""

    QUERY = "QUERY"  # Idempotent read, GET
    MUTATION = "MUTATION"  # State-changing write, POST
    SUBSCRIPTION = "SUBSCRIPTION"  # Server-push stream, SSE
    BIDIRECTIONAL = "BIDIRECTIONAL"  # Full-duplex stream, WebSocket

    @property
    def is_one_shot(self) -> bool:
        return self in (MethodKind.QUERY, MethodKind.MUTATION)

    @property
    def is_streaming(self) -> bool:
        return self in (MethodKind.SUBSCRIPTION, MethodKind.BIDIRECTIONAL)


@dataclass(frozen=True)
class Procedure:
    """A named, typed remote operation with a fixed method kind."""

    name: str
    method: MethodKind
    input: Shape
    output: Shape
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Procedure name cannot be empty")
        # Raises ValueError for anything outside the four kinds
        object.__setattr__(self, "method", MethodKind(self.method))
        object.__setattr__(self, "input", Shape.of(self.input))
        object.__setattr__(self, "output", Shape.of(self.output))


class Service:
    """An immutable, ordered collection of procedures."""

    def __init__(self, name: str, procedures: Iterable[Procedure] = ()):
        if not name:
            raise ValueError("Service name cannot be empty")
        self._name = name
        table: dict[str, Procedure] = {}
        for procedure in procedures:
            if procedure.name in table:
                raise DuplicateProcedure(name, procedure.name)
            table[procedure.name] = procedure
        self._procedures: Mapping[str, Procedure] = MappingProxyType(table)

    @property
    def name(self) -> str:
        return self._name

    @property
    def procedures(self) -> Mapping[str, Procedure]:
        return self._procedures

    def add_procedure(
        self,
        *,
        name: str,
        method: MethodKind | str,
        input: Any,
        output: Any,
        description: str = "",
    ) -> Service:
        """Return a new Service with one more procedure.

        The receiver is left unchanged, so declarations can be chained.
        """
        procedure = Procedure(
            name=name,
            method=MethodKind(method),
            input=input,
            output=output,
            description=description,
        )
        return Service(self._name, [*self._procedures.values(), procedure])

    def get(self, procedure: str) -> Procedure:
        try:
            return self._procedures[procedure]
        except KeyError:
            raise UnknownProcedure(self._name, procedure) from None

    def __iter__(self) -> Iterator[Procedure]:
        return iter(self._procedures.values())

    def __len__(self) -> int:
        return len(self._procedures)

    def __contains__(self, procedure: object) -> bool:
        return procedure in self._procedures

    def __repr__(self) -> str:
        return f"Service({self._name!r}, procedures={list(self._procedures)})"


@dataclass
class APISchema:
    """The full API: every service known to server and client."""

    services: Iterable[Service] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        table: dict[str, Service] = {}
        for service in self.services:
            if service.name in table:
                raise DuplicateService(service.name)
            table[service.name] = service
        self._services: Mapping[str, Service] = MappingProxyType(table)
        self.services = tuple(table.values())

    def service(self, name: str) -> Service:
        try:
            return self._services[name]
        except KeyError:
            raise UnknownProcedure(name) from None

    def lookup(self, service: str, procedure: str) -> Procedure:
        """Return the declared procedure or raise UnknownProcedure."""
        return self.service(service).get(procedure)

    def __iter__(self) -> Iterator[Service]:
        return iter(self._services.values())

    def __contains__(self, name: object) -> bool:
        return name in self._services
