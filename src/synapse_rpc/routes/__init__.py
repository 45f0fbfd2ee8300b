"""Route definitions."""

from .health import health_routes
from .rpc import rpc_routes
from .webhook import webhook_routes

__all__ = [
    "health_routes",
    "rpc_routes",
    "webhook_routes",
]
