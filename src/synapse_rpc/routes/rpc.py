"""Procedure endpoints.

Every procedure lives at /<service>/<procedure> under the API prefix:
- QUERY:         GET, input in ?payload=<json>, response {"data": ...}
- MUTATION:      POST, JSON body, response {"data": ...}
- SUBSCRIPTION:  GET, input in ?payload=<json>, text/event-stream response
- BIDIRECTIONAL: WebSocket upgrade on the same path

Errors are plain text with a non-2xx status:
    400 invalid payload, 404 unknown procedure, 405 wrong method for the
    procedure's kind, 500 implementation failure.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import unquote

from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from ..dispatcher import Dispatcher, MethodMismatch
from ..errors import InvalidInput, RemoteError, UnknownProcedure
from ..schema import MethodKind
from ..transport.sse import EventStreamResponse

logger = logging.getLogger(__name__)

PAYLOAD_PARAM = "payload"

# WebSocket close codes used before the handshake is accepted
WS_UNKNOWN_PROCEDURE = 4404
WS_WRONG_KIND = 4405


def decode_query_payload(raw: str | None) -> Any:
    """Decode the ?payload= query parameter.

    Browser clients often URL-encode the JSON before setting the parameter,
    so a second decoding pass is attempted when the first doesn't parse.
    """
    if raw is None or raw == "":
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(unquote(raw))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON payload: {e}") from e


async def decode_body_payload(request: Request) -> Any:
    body = await request.body()
    if not body:
        return {}
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON body: {e}") from e


def _http_method_for(kind: MethodKind) -> str | None:
    if kind == MethodKind.MUTATION:
        return "POST"
    if kind in (MethodKind.QUERY, MethodKind.SUBSCRIPTION):
        return "GET"
    return None


async def procedure_endpoint(request: Request) -> Response:
    """HTTP entry point for QUERY, MUTATION and SUBSCRIPTION procedures."""
    dispatcher: Dispatcher = request.app.state.dispatcher
    service = request.path_params["service"]
    name = request.path_params["procedure"]

    try:
        procedure = dispatcher.lookup(service, name)
    except UnknownProcedure as e:
        return PlainTextResponse(str(e), status_code=404)

    expected = _http_method_for(procedure.method)
    if expected is None or request.method != expected:
        return PlainTextResponse(str(MethodMismatch(procedure, procedure.method)), status_code=405)

    try:
        if request.method == "POST":
            payload = await decode_body_payload(request)
        else:
            payload = decode_query_payload(request.query_params.get(PAYLOAD_PARAM))
    except ValueError as e:
        return PlainTextResponse(str(e), status_code=400)

    try:
        if procedure.method == MethodKind.SUBSCRIPTION:
            stream = await dispatcher.open_stream(service, name, payload, request)
            return EventStreamResponse(stream, request)

        data = await dispatcher.call(service, name, payload, request)
    except InvalidInput as e:
        logger.info(f"Rejected {service}.{name}: {e}")
        return PlainTextResponse(str(e), status_code=400)
    except RemoteError as e:
        return PlainTextResponse(e.message, status_code=e.status_code or 500)

    return JSONResponse({"data": data})


async def procedure_socket(websocket: WebSocket) -> None:
    """WebSocket entry point for BIDIRECTIONAL procedures."""
    dispatcher: Dispatcher = websocket.app.state.dispatcher
    service = websocket.path_params["service"]
    name = websocket.path_params["procedure"]

    try:
        procedure = dispatcher.lookup(service, name)
    except UnknownProcedure as e:
        logger.warning(f"WebSocket for unknown procedure: {e}")
        await websocket.close(code=WS_UNKNOWN_PROCEDURE)
        return

    if procedure.method != MethodKind.BIDIRECTIONAL:
        await websocket.close(code=WS_WRONG_KIND)
        return

    await dispatcher.run_duplex(service, name, websocket)


rpc_routes = [
    Route("/{service}/{procedure}", procedure_endpoint, methods=["GET", "POST"]),
    WebSocketRoute("/{service}/{procedure}", procedure_socket),
]
