"""Health check endpoint."""

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route


async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    body = {"status": "ok"}
    if dispatcher is not None:
        body["services"] = [service.name for service in dispatcher.schema]
        body["connections"] = dispatcher.active_connections
    return JSONResponse(body)


health_routes = [
    Route("/health", health_check, methods=["GET"]),
]
