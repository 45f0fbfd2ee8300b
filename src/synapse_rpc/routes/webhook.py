"""Webhook pass-through.

Any HTTP request outside the API prefix and /health is handed, untouched, to
the handler registered with Server.register_webhook_handler(). The RPC core
never inspects these requests.
"""

import inspect
import logging

from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


async def webhook_endpoint(request: Request) -> Response:
    handler = getattr(request.app.state, "webhook_handler", None)
    if handler is None:
        return PlainTextResponse("Not Found", status_code=404)

    try:
        response = handler(request)
        if inspect.isawaitable(response):
            response = await response
    except Exception as e:
        logger.exception(f"Webhook handler failed: {e}")
        return PlainTextResponse(str(e) or "Webhook handler failed", status_code=500)

    if response is None:
        return Response(status_code=200)
    return response


webhook_routes = [
    Route("/{path:path}", webhook_endpoint, methods=ALL_METHODS),
]
