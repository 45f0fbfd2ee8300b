"""Server application.

Creates the Starlette ASGI application for a schema and its implementations.

Route organization:
- /health                          Health check
- <prefix>/<service>/<procedure>   Procedure endpoints (HTTP, SSE, WebSocket)
- everything else                  Webhook pass-through (404 when no handler)

Usage:
    server = Server(api_schema, [greeting_implementation, todo_implementation])
    server.register_webhook_handler(on_webhook)
    server.start()
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import BaseRoute, Mount

from .config import ServerConfig
from .dispatcher import Dispatcher
from .implementation import ServiceImplementation
from .routes import health_routes, rpc_routes, webhook_routes
from .schema import APISchema

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[Request], Awaitable[Response | None] | Response | None]


def create_app(
    schema: APISchema,
    implementations: Mapping[str, ServiceImplementation] | Iterable[ServiceImplementation],
    config: ServerConfig | None = None,
    webhook_handler: WebhookHandler | None = None,
) -> Starlette:
    """Create the server application.

    Args:
        schema: The API schema
        implementations: One ServiceImplementation per service in the schema
        config: Server configuration (defaults from environment)
        webhook_handler: Optional handler for non-RPC requests

    Returns:
        Configured Starlette application; the dispatcher is on app.state
    """
    config = config or ServerConfig.from_env()
    dispatcher = Dispatcher(
        schema, implementations, keepalive_interval=config.keepalive_interval
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info(f"Serving {len(list(schema))} service(s) under {config.api_prefix or '/'}")
        yield
        await dispatcher.shutdown()

    routes: list[BaseRoute] = []
    routes.extend(health_routes)
    if config.api_prefix:
        routes.append(Mount(config.api_prefix, routes=rpc_routes))
    else:
        routes.extend(rpc_routes)
    routes.extend(webhook_routes)

    # CORS middleware for local development
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_origin_regex=config.cors_origin_regex,
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.dispatcher = dispatcher
    app.state.config = config
    app.state.webhook_handler = webhook_handler
    return app


class Server:
    """Facade bundling the schema, implementations, config and application."""

    def __init__(
        self,
        schema: APISchema,
        implementations: Mapping[str, ServiceImplementation] | Iterable[ServiceImplementation],
        config: ServerConfig | None = None,
    ):
        self.schema = schema
        self.config = config or ServerConfig.from_env()
        self._app = create_app(schema, implementations, self.config)

    @property
    def app(self) -> Starlette:
        return self._app

    @property
    def dispatcher(self) -> Dispatcher:
        return self._app.state.dispatcher

    def register_webhook_handler(self, handler: WebhookHandler) -> WebhookHandler:
        """Route every non-RPC request to `handler`. Usable as a decorator."""
        self._app.state.webhook_handler = handler
        return handler

    def start(self, host: str | None = None, port: int | None = None) -> None:
        """Serve with uvicorn until interrupted."""
        import uvicorn

        uvicorn.run(
            self._app,
            host=host or self.config.host,
            port=port or self.config.port,
            log_level=self.config.log_level.lower(),
        )
