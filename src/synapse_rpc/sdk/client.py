"""Typed client for a declared API schema.

Procedures are reached by service and procedure name, by attribute or item:

    async with RPCClient(api_schema, base_url="http://localhost:4096") as client:
        out = await client.Greeting.SayHello({"name": {"en": "Ada"}})
        created = await client["Todo"]["CreateTodo"]({"title": "Write docs"})

        async with client.Todo.WatchTodos({"filter": "all"}) as stream:
            async for event in stream:
                ...

        async with client.Greeting.echo() as channel:
            await channel.send({"msg": "hi"})
            reply = await channel.receive()

What a procedure call returns depends on its kind:
- QUERY / MUTATION: an awaitable resolving to the validated output
- SUBSCRIPTION: a PushStream (opened by `async with` or `await stream.open()`)
- BIDIRECTIONAL: a DuplexChannel (opened by `async with` or `await channel.open()`)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import replace
from typing import Any

import httpx

from ..config import ClientConfig
from ..errors import UnknownProcedure
from ..schema import APISchema, MethodKind, Procedure, Service
from .duplex import DuplexChannel
from .request import RequestChannel
from .stream import PushStream

logger = logging.getLogger(__name__)


class ProcedureAccessor:
    """Callable handle for one procedure."""

    def __init__(self, client: RPCClient, service: str, procedure: Procedure):
        self._client = client
        self.service = service
        self.procedure = procedure
        self.__doc__ = procedure.description or None

    @property
    def kind(self) -> MethodKind:
        return self.procedure.method

    def __call__(self, args: Any = None, /, **kwargs: Any) -> Any:
        if args is None and kwargs:
            args = kwargs
        kind = self.procedure.method
        if kind.is_one_shot:
            return self._client.call(self.service, self.procedure.name, args)
        if kind == MethodKind.SUBSCRIPTION:
            return self._client.subscribe(self.service, self.procedure.name, args)
        return self._client.connect(self.service, self.procedure.name)

    def __repr__(self) -> str:
        return f"<{self.procedure.method.value} {self.service}.{self.procedure.name}>"


class ServiceProxy:
    """Accessor namespace for one service's procedures."""

    def __init__(self, client: RPCClient, service: Service):
        self._client = client
        self._service = service

    def __getitem__(self, name: str) -> ProcedureAccessor:
        procedure = self._service.get(name)
        return ProcedureAccessor(self._client, self._service.name, procedure)

    def __getattr__(self, name: str) -> ProcedureAccessor:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except UnknownProcedure as e:
            raise AttributeError(str(e)) from e

    def __dir__(self) -> list[str]:
        return [procedure.name for procedure in self._service]

    def __repr__(self) -> str:
        return f"<service {self._service.name}>"


class RPCClient:
    """Client bound to one API schema and one server."""

    def __init__(
        self,
        schema: APISchema,
        config: ClientConfig | None = None,
        *,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.schema = schema
        # Own copy; the caller's config is left untouched
        config = config or ClientConfig.from_env()
        self.config = replace(config, headers=dict(config.headers))
        if base_url:
            self.config.base_url = base_url.rstrip("/")
        if headers:
            self.config.headers = {**self.config.headers, **headers}

        self._http = http_client
        self._owns_http = http_client is None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout),
            )
        return self._http

    def _procedure(self, service: str, procedure: str) -> Procedure:
        return self.schema.lookup(service, procedure)

    def call(
        self,
        service: str,
        procedure: str,
        args: Any = None,
        *,
        headers: dict[str, str] | None = None,
    ) -> Awaitable[Any]:
        """Call a QUERY or MUTATION procedure."""
        channel = RequestChannel(self.http, self.config)
        return channel.call(service, self._procedure(service, procedure), args, headers)

    def subscribe(
        self,
        service: str,
        procedure: str,
        args: Any = None,
        **kwargs: Any,
    ) -> PushStream:
        """Create a push stream for a SUBSCRIPTION procedure.

        Keyword arguments are passed to PushStream (headers and observers).
        """
        return PushStream(
            self.http,
            self.config,
            service,
            self._procedure(service, procedure),
            args,
            **kwargs,
        )

    def connect(
        self,
        service: str,
        procedure: str,
        *,
        headers: dict[str, str] | None = None,
    ) -> DuplexChannel:
        """Create a duplex channel for a BIDIRECTIONAL procedure."""
        return DuplexChannel(
            self.config,
            service,
            self._procedure(service, procedure),
            headers=headers,
        )

    async def health(self) -> dict[str, Any]:
        response = await self.http.get("/health")
        response.raise_for_status()
        return response.json()

    def __getitem__(self, name: str) -> ServiceProxy:
        return ServiceProxy(self, self.schema.service(name))

    def __getattr__(self, name: str) -> ServiceProxy:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except UnknownProcedure as e:
            raise AttributeError(str(e)) from e

    def __dir__(self) -> list[str]:
        return [*super().__dir__(), *(service.name for service in self.schema)]

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    async def __aenter__(self) -> RPCClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
