"""Todo service implementation.

In-memory storage, one store per implementation instance. Every change is
published on the `todo.changed` topic so WatchTodos subscribers see it.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from ..bus import Topic
from ..connection import DuplexConnection
from ..implementation import CallContext, ServiceImplementation, ServiceImplementationBuilder
from ..transport.sse import ServerStream
from .schema import (
    CollaborateInput,
    CollaborateOutput,
    CreateTodoInput,
    DeleteTodoOutput,
    GetTodosInput,
    GetTodosOutput,
    Todo,
    TodoEvent,
    TodoIdInput,
    UpdateTodoInput,
    WatchTodosInput,
    todo_service,
)

logger = logging.getLogger(__name__)

TodoChanged = Topic("todo.changed", TodoEvent)

DEFAULT_LIMIT = 100


class TodoNotFound(LookupError):
    def __init__(self, todo_id: str):
        self.todo_id = todo_id
        super().__init__(f"Todo with ID {todo_id} not found")


class TodoStore:
    """In-memory todo storage, in insertion order."""

    def __init__(self) -> None:
        self._todos: dict[str, Todo] = {}

    def list(self) -> list[Todo]:
        return list(self._todos.values())

    def get(self, todo_id: str) -> Todo:
        try:
            return self._todos[todo_id]
        except KeyError:
            raise TodoNotFound(todo_id) from None

    def create(self, title: str) -> Todo:
        todo = Todo(
            id=str(uuid.uuid4()),
            title=title,
            completed=False,
            createdAt=datetime.now(timezone.utc).isoformat(),
        )
        self._todos[todo.id] = todo
        return todo

    def update(self, todo_id: str, *, title: str | None = None, completed: bool | None = None) -> Todo:
        todo = self.get(todo_id)
        changes = {}
        if title is not None:
            changes["title"] = title
        if completed is not None:
            changes["completed"] = completed
        updated = todo.model_copy(update=changes)
        self._todos[todo_id] = updated
        return updated

    def delete(self, todo_id: str) -> Todo:
        todo = self.get(todo_id)
        del self._todos[todo_id]
        return todo

    def __len__(self) -> int:
        return len(self._todos)


def matches_filter(filter: str | None, event: TodoEvent) -> bool:
    """Whether a WatchTodos subscriber with `filter` should see `event`."""
    if filter in (None, "all") or event.todo is None:
        return True
    if filter == "completed":
        return event.todo.completed
    return not event.todo.completed


def create_todo_implementation(store: TodoStore | None = None) -> ServiceImplementation:
    """Build the Todo implementation around a store (a fresh one by default)."""
    store = store if store is not None else TodoStore()
    builder = ServiceImplementationBuilder(todo_service).publishes(TodoChanged)

    @builder.implements("GetTodos")
    def get_todos(input: GetTodosInput, ctx: CallContext) -> GetTodosOutput:
        todos = store.list()
        offset = input.offset or 0
        limit = input.limit if input.limit is not None else DEFAULT_LIMIT
        return GetTodosOutput(todos=todos[offset : offset + limit], total=len(todos))

    @builder.implements("GetTodoById")
    def get_todo_by_id(input: TodoIdInput, ctx: CallContext) -> Todo:
        return store.get(input.id)

    @builder.implements("CreateTodo")
    async def create_todo(input: CreateTodoInput, ctx: CallContext) -> Todo:
        todo = store.create(input.title)
        await ctx.publish(TodoChanged, TodoEvent(event="created", todo=todo))
        return todo

    @builder.implements("UpdateTodo")
    async def update_todo(input: UpdateTodoInput, ctx: CallContext) -> Todo:
        todo = store.update(input.id, title=input.title, completed=input.completed)
        await ctx.publish(TodoChanged, TodoEvent(event="updated", todo=todo))
        return todo

    @builder.implements("DeleteTodo")
    async def delete_todo(input: TodoIdInput, ctx: CallContext) -> DeleteTodoOutput:
        todo = store.delete(input.id)
        await ctx.publish(TodoChanged, TodoEvent(event="deleted", todo=todo))
        return DeleteTodoOutput(success=True)

    @builder.implements("WatchTodos")
    def watch_todos(input: WatchTodosInput, ctx: CallContext, conn: ServerStream) -> None:
        subscription = ctx.subscribe(
            TodoChanged,
            conn.write,
            predicate=lambda event: matches_filter(input.filter, event),
        )
        conn.on_close(subscription.unsubscribe)

    @builder.implements("CollaborateTodo")
    def collaborate_todo(ctx: CallContext, conn: DuplexConnection) -> None:
        logger.info("Client connected for collaboration")
        conn.on_close(lambda: logger.info("Collaboration session ended"))

        async def on_action(conn: DuplexConnection, input: CollaborateInput) -> None:
            try:
                todo = store.get(input.todoId)
            except TodoNotFound as e:
                await conn.send(CollaborateOutput(success=False, message=str(e)))
                return

            updated = todo
            if input.action == "edit":
                title = input.data.get("title") if isinstance(input.data, dict) else None
                if title:
                    updated = store.update(todo.id, title=title)
                    await ctx.publish(TodoChanged, TodoEvent(event="updated", todo=updated))
            elif input.action == "complete":
                updated = store.update(todo.id, completed=True)
                await ctx.publish(TodoChanged, TodoEvent(event="updated", todo=updated))
            elif input.action == "delete":
                store.delete(todo.id)
                await ctx.publish(TodoChanged, TodoEvent(event="deleted", todo=todo))

            await conn.send(
                CollaborateOutput(
                    success=True,
                    message=f"Todo {input.action} successful",
                    updatedTodo=updated,
                )
            )

        conn.on_message("TodoCollaboration", on_action)

    return builder.build()
