"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Iterator

import pytest
import uvicorn
from starlette.testclient import TestClient

from synapse_rpc import ClientConfig, Server, ServerConfig
from synapse_rpc.demo import TodoStore, create_demo_server


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class _ThreadedServer(uvicorn.Server):
    def install_signal_handlers(self) -> None:
        # Signal handlers can only be installed on the main thread
        pass


class LiveServer:
    """A demo server running under uvicorn in a background thread."""

    def __init__(self, server: Server, port: int):
        self.server = server
        self.port = port
        self.base_url = f"http://127.0.0.1:{port}"
        config = uvicorn.Config(
            server.app, host="127.0.0.1", port=port, log_level="warning", lifespan="on"
        )
        self._uvicorn = _ThreadedServer(config)
        self._thread = threading.Thread(target=self._uvicorn.run, daemon=True)

    @property
    def client_config(self) -> ClientConfig:
        return ClientConfig(base_url=self.base_url, timeout=5.0)

    def start(self) -> None:
        self._thread.start()
        deadline = time.monotonic() + 10
        while not self._uvicorn.started:
            if time.monotonic() > deadline:
                raise RuntimeError("Live server did not start")
            time.sleep(0.01)

    def stop(self) -> None:
        self._uvicorn.should_exit = True
        self._thread.join(timeout=10)


@pytest.fixture
def server_config() -> ServerConfig:
    return ServerConfig(keepalive_interval=0.2)


@pytest.fixture
def todo_store() -> TodoStore:
    return TodoStore()


@pytest.fixture
def demo_server(server_config: ServerConfig, todo_store: TodoStore) -> Server:
    """Demo server with fast letter streaming and a short keep-alive."""
    return create_demo_server(config=server_config, store=todo_store, letter_delay=0.0)


@pytest.fixture
def test_client(demo_server: Server) -> Iterator[TestClient]:
    with TestClient(demo_server.app) as client:
        yield client


@pytest.fixture
def live_server(demo_server: Server) -> Iterator[LiveServer]:
    live = LiveServer(demo_server, _free_port())
    live.start()
    try:
        yield live
    finally:
        live.stop()
