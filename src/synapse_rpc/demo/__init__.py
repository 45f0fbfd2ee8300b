"""Demo services exercising all four method kinds.

Run with:
    synapse-rpc serve            # uses create_demo_app
"""

from starlette.applications import Starlette

from ..app import Server, create_app
from ..config import ServerConfig
from .greeting import create_greeting_implementation
from .schema import api_schema, greeting_service, todo_service
from .todo import TodoChanged, TodoStore, create_todo_implementation


def create_demo_server(
    config: ServerConfig | None = None,
    store: TodoStore | None = None,
    letter_delay: float = 1.0,
) -> Server:
    return Server(
        api_schema,
        [
            create_greeting_implementation(letter_delay=letter_delay),
            create_todo_implementation(store),
        ],
        config=config,
    )


def create_demo_app() -> Starlette:
    """App factory for uvicorn (factory=True)."""
    return create_app(
        api_schema,
        [create_greeting_implementation(), create_todo_implementation()],
    )


__all__ = [
    "TodoChanged",
    "TodoStore",
    "api_schema",
    "create_demo_app",
    "create_demo_server",
    "create_greeting_implementation",
    "create_todo_implementation",
    "greeting_service",
    "todo_service",
]
