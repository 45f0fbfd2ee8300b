"""Unit tests for the client SDK against mocked HTTP transports."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from synapse_rpc.config import ClientConfig
from synapse_rpc.connection import ConnectionState
from synapse_rpc.demo import api_schema
from synapse_rpc.demo.schema import SayHelloOutput, Todo, TodoEvent
from synapse_rpc.errors import (
    InvalidInput,
    MalformedResponse,
    RemoteError,
    RPCError,
    TransportError,
    UnknownProcedure,
)
from synapse_rpc.schema import MethodKind
from synapse_rpc.sdk import DuplexChannel, ProcedureAccessor, PushStream, RPCClient

BASE_URL = "http://rpc.test"

TODO = {
    "id": "t1",
    "title": "Write docs",
    "completed": False,
    "createdAt": "2026-01-01T00:00:00+00:00",
}


class Recorder:
    """Mock transport handler that records every request."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def _client(recorder: Recorder, **kwargs) -> RPCClient:
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(recorder))
    return RPCClient(api_schema, ClientConfig(base_url=BASE_URL), http_client=http, **kwargs)


def _sse(body: str, status_code: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code,
            headers={"content-type": "text/event-stream"},
            content=body.encode(),
        )

    return respond


# =============================================================================
# Accessor Tests
# =============================================================================


class TestAccessors:
    """Tests for RPCClient procedure accessors."""

    def test_overrides_leave_caller_config_untouched(self) -> None:
        config = ClientConfig(base_url=BASE_URL, headers={"X-Team": "core"})

        client = RPCClient(
            api_schema, config, base_url="http://other.test/", headers={"Authorization": "t"}
        )

        assert client.config.base_url == "http://other.test"
        assert client.config.headers == {"X-Team": "core", "Authorization": "t"}
        assert config.base_url == BASE_URL
        assert config.headers == {"X-Team": "core"}

    def test_attribute_and_item_access(self) -> None:
        client = RPCClient(api_schema, ClientConfig(base_url=BASE_URL))
        by_attr = client.Todo.GetTodos
        by_item = client["Todo"]["GetTodos"]

        assert isinstance(by_attr, ProcedureAccessor)
        assert by_attr.procedure is by_item.procedure
        assert by_attr.kind is MethodKind.QUERY

    def test_accessor_documents_procedure(self) -> None:
        client = RPCClient(api_schema, ClientConfig(base_url=BASE_URL))
        assert client.Greeting.SayHello.__doc__ == "Says hello and the name."

    def test_unknown_service(self) -> None:
        client = RPCClient(api_schema, ClientConfig(base_url=BASE_URL))
        with pytest.raises(AttributeError):
            client.Nope
        with pytest.raises(UnknownProcedure):
            client["Nope"]

    def test_unknown_procedure(self) -> None:
        client = RPCClient(api_schema, ClientConfig(base_url=BASE_URL))
        with pytest.raises(AttributeError):
            client.Todo.Nope

    def test_dir_lists_services_and_procedures(self) -> None:
        client = RPCClient(api_schema, ClientConfig(base_url=BASE_URL))
        assert {"Greeting", "Todo"} <= set(dir(client))
        assert "WatchTodos" in dir(client.Todo)

    def test_streaming_accessors_return_connections(self) -> None:
        client = RPCClient(api_schema, ClientConfig(base_url=BASE_URL))

        stream = client.Todo.WatchTodos({"filter": "all"})
        channel = client.Greeting.echo()

        assert isinstance(stream, PushStream)
        assert stream.state == ConnectionState.CONNECTING
        assert isinstance(channel, DuplexChannel)
        assert channel.url == "ws://rpc.test/_api/Greeting/echo"

    def test_keyword_arguments_become_input(self) -> None:
        client = RPCClient(api_schema, ClientConfig(base_url=BASE_URL))
        stream = client.Greeting.StreamedName(name="Ada")
        assert stream._payload == {"name": "Ada"}


# =============================================================================
# Request Channel Tests
# =============================================================================


class TestOneShotCalls:
    """Tests for QUERY and MUTATION calls."""

    @pytest.mark.asyncio
    async def test_query_sends_get_with_payload(self) -> None:
        recorder = Recorder(
            lambda request: httpx.Response(200, json={"data": {"greeting": {"en": "Hello Ada"}}})
        )
        async with _client(recorder) as client:
            result = await client.Greeting.SayHello({"name": {"en": "Ada"}})

        assert result == SayHelloOutput(greeting={"en": "Hello Ada"})
        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/_api/Greeting/SayHello"
        query = parse_qs(urlparse(str(request.url)).query)
        assert json.loads(query["payload"][0]) == {"name": {"en": "Ada"}}

    @pytest.mark.asyncio
    async def test_mutation_sends_post_with_body(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, json={"data": TODO}))
        async with _client(recorder) as client:
            result = await client.Todo.CreateTodo({"title": "Write docs"})

        assert result == Todo(**TODO)
        request = recorder.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"title": "Write docs"}

    @pytest.mark.asyncio
    async def test_invalid_input_makes_no_request(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, json={"data": TODO}))
        async with _client(recorder) as client:
            with pytest.raises(InvalidInput):
                await client.Todo.CreateTodo({"title": ""})

        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_remote_error_carries_message_verbatim(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(500, text="Todo with ID x not found"))
        async with _client(recorder) as client:
            with pytest.raises(RemoteError) as exc_info:
                await client.Todo.GetTodoById({"id": "x"})

        assert exc_info.value.message == "Todo with ID x not found"
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_missing_data_envelope(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, json=TODO))
        async with _client(recorder) as client:
            with pytest.raises(MalformedResponse):
                await client.Todo.GetTodoById({"id": "t1"})

    @pytest.mark.asyncio
    async def test_output_validated(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, json={"data": {"id": "t1"}}))
        async with _client(recorder) as client:
            with pytest.raises(MalformedResponse) as exc_info:
                await client.Todo.GetTodoById({"id": "t1"})

        assert {v.location for v in exc_info.value.violations} >= {"title", "completed"}

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, text="<html>"))
        async with _client(recorder) as client:
            with pytest.raises(MalformedResponse):
                await client.Todo.GetTodos()

    @pytest.mark.asyncio
    async def test_transport_failure(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(Recorder(refuse)) as client:
            with pytest.raises(TransportError):
                await client.Todo.GetTodos()

    @pytest.mark.asyncio
    async def test_client_headers_are_sent(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, json={"data": TODO}))
        async with _client(recorder, headers={"Authorization": "Bearer t"}) as client:
            await client.call("Todo", "GetTodoById", {"id": "t1"}, headers={"X-Trace": "1"})

        request = recorder.requests[0]
        assert request.headers["authorization"] == "Bearer t"
        assert request.headers["x-trace"] == "1"

    @pytest.mark.asyncio
    async def test_streaming_procedure_cannot_be_called(self) -> None:
        async with _client(Recorder(lambda request: httpx.Response(200))) as client:
            with pytest.raises(ValueError):
                await client.call("Todo", "WatchTodos", {})


# =============================================================================
# Push Stream Tests
# =============================================================================


def _event(event: str) -> str:
    return "data: " + json.dumps({"event": event}) + "\n\n"


CLOSE_FRAME = "event: close\ndata: null\n\n"


class TestPushStream:
    """Tests for the client push stream."""

    @pytest.mark.asyncio
    async def test_events_in_order_then_closed(self) -> None:
        recorder = Recorder(_sse(_event("created") + ": keep-alive\n\n" + _event("deleted") + CLOSE_FRAME))
        opened: list[bool] = []
        closed: list[bool] = []

        async with _client(recorder) as client:
            stream = client.subscribe(
                "Todo",
                "WatchTodos",
                {"filter": "all"},
                on_open=lambda: opened.append(True),
                on_close=lambda: closed.append(True),
            )
            events = [event async for event in stream]

        assert events == [TodoEvent(event="created"), TodoEvent(event="deleted")]
        assert stream.state == ConnectionState.CLOSED
        assert opened == [True]
        assert closed == [True]
        assert recorder.requests[0].headers["accept"] == "text/event-stream"

    @pytest.mark.asyncio
    async def test_on_message_observer(self) -> None:
        recorder = Recorder(_sse(_event("created") + CLOSE_FRAME))
        received: list[TodoEvent] = []

        async with _client(recorder) as client:
            stream = client.Todo.WatchTodos({})
            stream.on_message(received.append)
            async with stream:
                assert await stream.receive(timeout=1) == TodoEvent(event="created")

        assert received == [TodoEvent(event="created")]

    @pytest.mark.asyncio
    async def test_bad_frames_reported_and_skipped(self) -> None:
        body = "data: {broken\n\n" + _event("exploded") + _event("updated") + CLOSE_FRAME
        errors: list[RPCError] = []

        async with _client(Recorder(_sse(body))) as client:
            stream = client.subscribe("Todo", "WatchTodos", {}, on_error=errors.append)
            events = [event async for event in stream]

        assert events == [TodoEvent(event="updated")]
        assert len(errors) == 2
        assert all(isinstance(error, MalformedResponse) for error in errors)

    @pytest.mark.asyncio
    async def test_error_frame_reported(self) -> None:
        body = 'event: error\ndata: "handler exploded"\n\n' + CLOSE_FRAME
        errors: list[RPCError] = []

        async with _client(Recorder(_sse(body))) as client:
            stream = client.subscribe("Todo", "WatchTodos", {}, on_error=errors.append)
            assert [event async for event in stream] == []

        assert isinstance(errors[0], RemoteError)
        assert errors[0].message == "handler exploded"
        assert stream.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_stream_ending_without_close_frame_is_errored(self) -> None:
        errors: list[RPCError] = []
        closed: list[bool] = []

        async with _client(Recorder(_sse(_event("created")))) as client:
            stream = client.subscribe(
                "Todo",
                "WatchTodos",
                {},
                on_error=errors.append,
                on_close=lambda: closed.append(True),
            )
            events = [event async for event in stream]

        assert events == [TodoEvent(event="created")]
        assert stream.state == ConnectionState.ERRORED
        assert isinstance(errors[0], TransportError)
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_refused_stream_raises(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(400, text="Invalid input: filter"))

        async with _client(recorder) as client:
            stream = client.Todo.WatchTodos({})
            with pytest.raises(RemoteError) as exc_info:
                await stream.open()

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Invalid input: filter"
        assert stream.state == ConnectionState.ERRORED

    @pytest.mark.asyncio
    async def test_invalid_input_raised_before_any_request(self) -> None:
        recorder = Recorder(_sse(CLOSE_FRAME))
        async with _client(recorder) as client:
            with pytest.raises(InvalidInput):
                client.Todo.WatchTodos({"filter": "sometimes"})
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        closed: list[bool] = []
        async with _client(Recorder(_sse(CLOSE_FRAME))) as client:
            stream = client.subscribe("Todo", "WatchTodos", {}, on_close=lambda: closed.append(True))
            await stream.close()
            await stream.close()

        assert stream.state == ConnectionState.CLOSED
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_observer_only_stream_buffers_nothing(self) -> None:
        body = _event("created") * 500 + CLOSE_FRAME
        seen: list[TodoEvent] = []
        done = asyncio.Event()

        async with _client(Recorder(_sse(body))) as client:
            stream = client.subscribe(
                "Todo", "WatchTodos", {}, on_message=seen.append, on_close=done.set
            )
            await stream.open()
            await asyncio.wait_for(done.wait(), timeout=5)

        assert len(seen) == 500
        # Only the end marker remains
        assert stream._queue.qsize() <= 1

    @pytest.mark.asyncio
    async def test_consumer_buffers_alongside_observer(self) -> None:
        body = _event("created") + _event("deleted") + CLOSE_FRAME
        seen: list[TodoEvent] = []

        async with _client(Recorder(_sse(body))) as client:
            stream = client.subscribe("Todo", "WatchTodos", {}, on_message=seen.append)
            events = [event async for event in stream]

        assert events == seen == [TodoEvent(event="created"), TodoEvent(event="deleted")]
