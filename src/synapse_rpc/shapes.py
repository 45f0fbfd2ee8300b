"""Payload shapes and the validator.

A Shape wraps any pydantic-compatible type. Structured payloads are declared
as ShapeModel subclasses, which are closed: unknown fields are rejected so
unexpected data never reaches server logic.

Usage:
    class CreateTodoInput(ShapeModel):
        title: str = Field(min_length=1, max_length=200)

    result = validate(Shape.of(CreateTodoInput), {"title": "Buy milk"})
    if result.ok:
        todo_input = result.value
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError


class ShapeModel(BaseModel):
    """Base class for closed (strict) payload models."""

    model_config = ConfigDict(extra="forbid")


@dataclass(frozen=True)
class Violation:
    """A single field-level validation failure."""

    location: str
    message: str
    kind: str = "value_error"

    def __str__(self) -> str:
        if self.location:
            return f"{self.location}: {self.message}"
        return self.message

    def to_dict(self) -> dict[str, str]:
        return {"location": self.location, "message": self.message, "kind": self.kind}


@dataclass
class ValidationResult:
    """Outcome of validating a value against a Shape.

    Either ok with the normalized value, or not ok with every violation found.
    """

    ok: bool
    value: Any = None
    violations: list[Violation] = field(default_factory=list)

    @classmethod
    def success(cls, value: Any) -> ValidationResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, violations: list[Violation]) -> ValidationResult:
        return cls(ok=False, violations=violations)


class Shape:
    """Declarative description of a payload, backed by a pydantic TypeAdapter."""

    def __init__(self, type_: Any):
        self.type = type_
        self._adapter: TypeAdapter[Any] = TypeAdapter(type_)

    @classmethod
    def of(cls, type_or_shape: Any) -> Shape:
        """Coerce a type (or an existing Shape) into a Shape."""
        if isinstance(type_or_shape, Shape):
            return type_or_shape
        return cls(type_or_shape)

    @property
    def is_model(self) -> bool:
        return isinstance(self.type, type) and issubclass(self.type, BaseModel)

    @property
    def closed(self) -> bool:
        """Whether unknown fields are rejected."""
        if not self.is_model:
            return False
        return self.type.model_config.get("extra") == "forbid"

    @property
    def name(self) -> str:
        return getattr(self.type, "__name__", repr(self.type))

    def validate(self, value: Any) -> ValidationResult:
        if isinstance(value, BaseModel):
            # Re-validate model instances so model_construct() can't bypass constraints
            value = value.model_dump(exclude_unset=True)
        try:
            normalized = self._adapter.validate_python(value)
        except ValidationError as e:
            return ValidationResult.failure(_violations_from(e))
        return ValidationResult.success(normalized)

    def dump(self, value: Any) -> Any:
        """Encode a validated value as JSON-compatible data.

        Optional fields that are unset (None) are omitted, giving a stable encoding.
        """
        return self._adapter.dump_python(value, mode="json", exclude_none=True)

    def json_schema(self) -> dict[str, Any]:
        return self._adapter.json_schema()

    def __repr__(self) -> str:
        return f"Shape({self.name})"


def validate(shape: Shape | Any, value: Any) -> ValidationResult:
    """Validate a value against a shape (or anything Shape.of accepts)."""
    return Shape.of(shape).validate(value)


def _violations_from(error: ValidationError) -> list[Violation]:
    violations = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        violations.append(
            Violation(location=location, message=item.get("msg", ""), kind=item.get("type", ""))
        )
    return violations
