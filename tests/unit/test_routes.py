"""Unit tests for the HTTP, SSE and WebSocket routes.

Runs the demo application in-process with Starlette's TestClient.
"""

from __future__ import annotations

import json
from urllib.parse import quote

import pytest
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from synapse_rpc import (
    APISchema,
    CallContext,
    DuplexConnection,
    MethodKind,
    Procedure,
    Server,
    ServerConfig,
    Service,
    ServiceImplementationBuilder,
    create_app,
)
from synapse_rpc.demo.schema import EchoMessage
from synapse_rpc.routes.rpc import WS_UNKNOWN_PROCEDURE, WS_WRONG_KIND, decode_query_payload
from synapse_rpc.transport.websocket import BINARY_FRAME_ERROR


def _query(payload: object) -> dict[str, str]:
    return {"payload": json.dumps(payload)}


# =============================================================================
# Payload Decoding Tests
# =============================================================================


class TestDecodeQueryPayload:
    """Tests for decode_query_payload."""

    def test_plain_json(self) -> None:
        assert decode_query_payload('{"id": "1"}') == {"id": "1"}

    def test_url_encoded_json(self) -> None:
        assert decode_query_payload(quote('{"id": "1"}')) == {"id": "1"}

    def test_missing_payload_is_empty_object(self) -> None:
        assert decode_query_payload(None) == {}
        assert decode_query_payload("") == {}

    def test_invalid_json(self) -> None:
        with pytest.raises(ValueError):
            decode_query_payload("{not json")


# =============================================================================
# QUERY / MUTATION Route Tests
# =============================================================================


class TestOneShotRoutes:
    """Tests for request/response procedure endpoints."""

    def test_query(self, test_client: TestClient) -> None:
        response = test_client.get(
            "/_api/Greeting/SayHello", params=_query({"name": {"en": "Ada"}})
        )
        assert response.status_code == 200
        assert response.json() == {"data": {"greeting": {"en": "Hello Ada"}}}

    def test_query_with_double_encoded_payload(self, test_client: TestClient) -> None:
        raw = quote(json.dumps({"name": {"en": "Ada"}}))
        response = test_client.get("/_api/Greeting/SayHello", params={"payload": raw})
        assert response.status_code == 200
        assert response.json()["data"]["greeting"] == {"en": "Hello Ada"}

    def test_mutation(self, test_client: TestClient) -> None:
        response = test_client.post("/_api/Todo/CreateTodo", json={"title": "Write docs"})
        assert response.status_code == 200
        todo = response.json()["data"]
        assert todo["title"] == "Write docs"
        assert todo["completed"] is False

        fetched = test_client.get("/_api/Todo/GetTodoById", params=_query({"id": todo["id"]}))
        assert fetched.json() == {"data": todo}

    def test_get_todos_paginates(self, test_client: TestClient) -> None:
        for title in ("a", "b", "c"):
            test_client.post("/_api/Todo/CreateTodo", json={"title": title})

        response = test_client.get(
            "/_api/Todo/GetTodos", params=_query({"limit": 1, "offset": 1})
        )

        data = response.json()["data"]
        assert data["total"] == 3
        assert [t["title"] for t in data["todos"]] == ["b"]

    def test_invalid_input_is_400(self, test_client: TestClient) -> None:
        response = test_client.post("/_api/Todo/CreateTodo", json={"title": ""})
        assert response.status_code == 400
        assert response.text.startswith("Invalid input: title:")

    def test_invalid_json_body_is_400(self, test_client: TestClient) -> None:
        response = test_client.post(
            "/_api/Todo/CreateTodo",
            content=b"{broken",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400

    def test_invalid_json_query_is_400(self, test_client: TestClient) -> None:
        response = test_client.get("/_api/Todo/GetTodos", params={"payload": "{broken"})
        assert response.status_code == 400

    def test_unknown_procedure_is_404(self, test_client: TestClient) -> None:
        response = test_client.get("/_api/Todo/Nope")
        assert response.status_code == 404
        assert response.text == "Unknown procedure: Todo.Nope"

    def test_unknown_service_is_404(self, test_client: TestClient) -> None:
        assert test_client.get("/_api/Nope/GetTodos").status_code == 404

    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("POST", "/_api/Greeting/SayHello"),
            ("GET", "/_api/Greeting/SendMessage"),
            ("GET", "/_api/Greeting/echo"),
            ("POST", "/_api/Todo/WatchTodos"),
        ],
    )
    def test_wrong_method_is_405(self, test_client: TestClient, method: str, path: str) -> None:
        response = test_client.request(method, path)
        assert response.status_code == 405

    def test_implementation_error_is_500(self, test_client: TestClient) -> None:
        response = test_client.get("/_api/Todo/GetTodoById", params=_query({"id": "missing"}))
        assert response.status_code == 500
        assert response.text == "Todo with ID missing not found"

    def test_error_bodies_are_plain_text(self, test_client: TestClient) -> None:
        response = test_client.get("/_api/Todo/Nope")
        assert response.headers["content-type"].startswith("text/plain")


# =============================================================================
# SUBSCRIPTION Route Tests
# =============================================================================


class TestSubscriptionRoute:
    """Tests for the SSE endpoint."""

    def test_streamed_name(self, test_client: TestClient) -> None:
        response = test_client.get(
            "/_api/Greeting/StreamedName", params=_query({"name": "Ada"})
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.text == (
            'data: "A"\n\ndata: "d"\n\ndata: "a"\n\nevent: close\ndata: null\n\n'
        )

    def test_invalid_input_is_400(self, test_client: TestClient) -> None:
        response = test_client.get("/_api/Greeting/StreamedName", params=_query({}))
        assert response.status_code == 400


# =============================================================================
# BIDIRECTIONAL Route Tests
# =============================================================================


class TestDuplexRoute:
    """Tests for the WebSocket endpoint."""

    def test_echo_replies_then_closes(self, test_client: TestClient) -> None:
        with test_client.websocket_connect("/_api/Greeting/echo") as ws:
            ws.send_json({"msg": "hi"})
            assert ws.receive_json() == {"msg": "Echo: hi"}
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 1000

    def test_invalid_frame_gets_failure_payload(self, test_client: TestClient) -> None:
        with test_client.websocket_connect("/_api/Todo/CollaborateTodo") as ws:
            ws.send_json({"action": "fly", "todoId": "1"})
            failure = ws.receive_json()
            assert set(failure) == {"error"}
            assert failure["error"].startswith("Invalid input: action:")

            ws.send_text("{broken")
            assert ws.receive_json()["error"].startswith("Invalid JSON")

            # The connection stays usable
            ws.send_json({"action": "complete", "todoId": "missing"})
            assert ws.receive_json() == {
                "success": False,
                "message": "Todo with ID missing not found",
            }

    def test_binary_frame_gets_failure_payload(self, test_client: TestClient) -> None:
        with test_client.websocket_connect("/_api/Todo/CollaborateTodo") as ws:
            ws.send_bytes(b'{"action": "complete", "todoId": "missing"}')
            assert ws.receive_json() == {"error": BINARY_FRAME_ERROR}

            ws.send_json({"action": "complete", "todoId": "missing"})
            assert ws.receive_json()["success"] is False

    def test_listener_error_gets_failure_payload(self) -> None:
        async def talk(ctx: CallContext, conn: DuplexConnection) -> None:
            async def reply(conn: DuplexConnection, message: EchoMessage) -> None:
                if message.msg == "boom":
                    raise RuntimeError("kaboom")
                await conn.send(EchoMessage(msg=f"ok {message.msg}"))

            conn.on_message("*", reply)

        service = Service(
            "Chat",
            [
                Procedure(
                    name="talk",
                    method=MethodKind.BIDIRECTIONAL,
                    input=EchoMessage,
                    output=EchoMessage,
                )
            ],
        )
        implementation = ServiceImplementationBuilder(service).register("talk", talk).build()
        app = create_app(APISchema([service]), [implementation], ServerConfig())

        with TestClient(app) as client, client.websocket_connect("/_api/Chat/talk") as ws:
            ws.send_json({"msg": "boom"})
            assert ws.receive_json() == {"error": "kaboom"}

            ws.send_json({"msg": "a"})
            assert ws.receive_json() == {"msg": "ok a"}

    def test_collaborate_completes_todo(self, test_client: TestClient) -> None:
        todo = test_client.post("/_api/Todo/CreateTodo", json={"title": "Ship"}).json()["data"]

        with test_client.websocket_connect("/_api/Todo/CollaborateTodo") as ws:
            ws.send_json({"action": "complete", "todoId": todo["id"]})
            result = ws.receive_json()

        assert result["success"] is True
        assert result["message"] == "Todo complete successful"
        assert result["updatedTodo"]["completed"] is True

    def test_unknown_procedure_is_refused(self, test_client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/_api/Greeting/nope"):
                pass
        assert exc_info.value.code == WS_UNKNOWN_PROCEDURE

    def test_non_duplex_procedure_is_refused(self, test_client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/_api/Greeting/SayHello"):
                pass
        assert exc_info.value.code == WS_WRONG_KIND


# =============================================================================
# CORS Tests
# =============================================================================


class TestCors:
    """Tests for the CORS middleware."""

    @pytest.mark.parametrize(
        "origin", ["http://localhost:5173", "http://127.0.0.1:3000", "http://localhost"]
    )
    def test_local_origin_allowed(self, test_client: TestClient, origin: str) -> None:
        response = test_client.get("/_api/Todo/GetTodos", headers={"Origin": origin})
        assert response.headers["access-control-allow-origin"] == origin

    def test_local_preflight_allowed(self, test_client: TestClient) -> None:
        response = test_client.options(
            "/_api/Todo/CreateTodo",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"

    def test_remote_origin_not_allowed(self, test_client: TestClient) -> None:
        response = test_client.get(
            "/_api/Todo/GetTodos", headers={"Origin": "http://localhost.evil.example"}
        )
        assert "access-control-allow-origin" not in response.headers


# =============================================================================
# Health and Webhook Tests
# =============================================================================


class TestHealthRoute:
    """Tests for /health."""

    def test_health(self, test_client: TestClient) -> None:
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "services": ["Greeting", "Todo"],
            "connections": 0,
        }


class TestWebhookRoute:
    """Tests for the webhook pass-through."""

    def test_no_handler_is_404(self, test_client: TestClient) -> None:
        assert test_client.post("/hooks/github", json={}).status_code == 404

    def test_handler_receives_raw_request(self, demo_server: Server) -> None:
        seen: list[str] = []

        @demo_server.register_webhook_handler
        async def on_webhook(request: Request) -> JSONResponse:
            seen.append(f"{request.method} {request.url.path}")
            body = await request.json()
            return JSONResponse({"received": body["event"]}, status_code=202)

        with TestClient(demo_server.app) as client:
            response = client.post("/hooks/github", json={"event": "push"})

        assert response.status_code == 202
        assert response.json() == {"received": "push"}
        assert seen == ["POST /hooks/github"]

    def test_handler_returning_none_is_200(self, demo_server: Server) -> None:
        demo_server.register_webhook_handler(lambda request: None)
        with TestClient(demo_server.app) as client:
            assert client.get("/anything").status_code == 200

    def test_handler_error_is_500(self, demo_server: Server) -> None:
        def broken(request: Request) -> None:
            raise RuntimeError("signature mismatch")

        demo_server.register_webhook_handler(broken)
        with TestClient(demo_server.app) as client:
            response = client.post("/hooks/github")

        assert response.status_code == 500
        assert response.text == "signature mismatch"
