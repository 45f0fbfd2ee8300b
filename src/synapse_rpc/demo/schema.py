"""Demo API schema: a Greeting service and a Todo service.

Together they exercise all four method kinds.
"""

from typing import Any, Literal

from pydantic import Field

from ..schema import APISchema, MethodKind, Procedure, Service
from ..shapes import ShapeModel

# =============================================================================
# Greeting
# =============================================================================


class SayHelloInput(ShapeModel):
    name: dict[str, str]


class SayHelloOutput(ShapeModel):
    greeting: dict[str, str]


class SendMessageInput(ShapeModel):
    message: str


class SendMessageOutput(ShapeModel):
    status: bool


class StreamedNameInput(ShapeModel):
    name: str


class EchoMessage(ShapeModel):
    msg: str


greeting_service = Service(
    "Greeting",
    [
        Procedure(
            name="SayHello",
            method=MethodKind.QUERY,
            input=SayHelloInput,
            output=SayHelloOutput,
            description="Says hello and the name.",
        ),
        Procedure(
            name="SendMessage",
            method=MethodKind.MUTATION,
            input=SendMessageInput,
            output=SendMessageOutput,
            description="Delivers a message to the server.",
        ),
        Procedure(
            name="StreamedName",
            method=MethodKind.SUBSCRIPTION,
            input=StreamedNameInput,
            output=str,
            description="Streams the given name, letter by letter.",
        ),
        Procedure(
            name="echo",
            method=MethodKind.BIDIRECTIONAL,
            input=EchoMessage,
            output=EchoMessage,
            description="Echoes back the given message.",
        ),
    ],
)

# =============================================================================
# Todo
# =============================================================================


class Todo(ShapeModel):
    id: str
    title: str
    completed: bool
    createdAt: str


class GetTodosInput(ShapeModel):
    limit: int | None = Field(default=None, ge=0)
    offset: int | None = Field(default=None, ge=0)


class GetTodosOutput(ShapeModel):
    todos: list[Todo]
    total: int


class TodoIdInput(ShapeModel):
    id: str


class CreateTodoInput(ShapeModel):
    title: str = Field(min_length=1, max_length=200)


class UpdateTodoInput(ShapeModel):
    id: str
    title: str | None = Field(default=None, min_length=1, max_length=200)
    completed: bool | None = None


class DeleteTodoOutput(ShapeModel):
    success: bool


class WatchTodosInput(ShapeModel):
    filter: Literal["all", "completed", "pending"] | None = None


class TodoEvent(ShapeModel):
    event: Literal["created", "updated", "deleted"]
    todo: Todo | None = None


class CollaborateInput(ShapeModel):
    action: Literal["edit", "complete", "delete"]
    todoId: str
    data: Any = None


class CollaborateOutput(ShapeModel):
    success: bool
    message: str
    updatedTodo: Todo | None = None


todo_service = Service(
    "Todo",
    [
        Procedure(
            name="GetTodos",
            method=MethodKind.QUERY,
            input=GetTodosInput,
            output=GetTodosOutput,
            description="Retrieves all todos",
        ),
        Procedure(
            name="GetTodoById",
            method=MethodKind.QUERY,
            input=TodoIdInput,
            output=Todo,
            description="Retrieves a single todo by its ID",
        ),
        Procedure(
            name="CreateTodo",
            method=MethodKind.MUTATION,
            input=CreateTodoInput,
            output=Todo,
            description="Creates a new todo item",
        ),
        Procedure(
            name="UpdateTodo",
            method=MethodKind.MUTATION,
            input=UpdateTodoInput,
            output=Todo,
            description="Updates an existing todo item",
        ),
        Procedure(
            name="DeleteTodo",
            method=MethodKind.MUTATION,
            input=TodoIdInput,
            output=DeleteTodoOutput,
            description="Deletes a todo item by ID",
        ),
        Procedure(
            name="WatchTodos",
            method=MethodKind.SUBSCRIPTION,
            input=WatchTodosInput,
            output=TodoEvent,
            description="Streams real-time updates when todos are created, updated, or deleted",
        ),
        Procedure(
            name="CollaborateTodo",
            method=MethodKind.BIDIRECTIONAL,
            input=CollaborateInput,
            output=CollaborateOutput,
            description="Real-time todo collaboration - send actions, receive results",
        ),
    ],
)

api_schema = APISchema([greeting_service, todo_service])
