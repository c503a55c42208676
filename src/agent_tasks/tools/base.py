"""Tool contract shared by the registry, the executor and the built-in tools."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from agent_tasks.engine.errors import (
    AgentTaskError,
    TaskCancelledError,
    TaskTimeoutError,
    ValidationError,
)
from agent_tasks.engine.supervisor import CancellationSignal
from agent_tasks.sanitization import describe_storage_error, sanitize_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome of one tool invocation as reported back to the model."""

    success: bool
    content: str = ""
    error: str | None = None

    @classmethod
    def ok(cls, payload: Any) -> ToolResult:
        if isinstance(payload, str):
            return cls(success=True, content=payload)
        return cls(success=True, content=json.dumps(payload, ensure_ascii=False, default=str))

    @classmethod
    def failure(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)

    def to_model_content(self) -> str:
        if self.success:
            return self.content
        return json.dumps({"error": self.error}, ensure_ascii=False)


class ToolDefinition(ABC):
    """A named capability with a pydantic input model.

    ``execute`` validates raw input, runs the handler and converts every
    handler failure into a failure ``ToolResult``. Cancellation raised inside a
    handler is the only exception that escapes.
    """

    name: str
    description: str
    input_model: type[BaseModel]

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    def validate_input(self, raw: Mapping[str, Any]) -> BaseModel:
        try:
            return self.input_model.model_validate(dict(raw))
        except PydanticValidationError as error:
            raise ValidationError(
                f"Invalid input for tool '{self.name}': {format_validation_error(error)}",
            ) from error

    def execute(
        self,
        input: Mapping[str, Any] | BaseModel,  # noqa: A002
        user_id: str,
        signal: CancellationSignal,
    ) -> ToolResult:
        if isinstance(input, self.input_model):
            params = input
        else:
            try:
                params = self.validate_input(input)  # type: ignore[arg-type]
            except ValidationError as error:
                return ToolResult.failure(str(error))

        try:
            payload = self.run(params, user_id, signal)
        except (TaskTimeoutError, TaskCancelledError):
            raise
        except AgentTaskError as error:
            return ToolResult.failure(sanitize_message(str(error)) or error.kind.value)
        except SQLAlchemyError as error:
            reason = describe_storage_error(error)
            logger.warning("Tool %s data access failed: %s", self.name, reason)
            return ToolResult.failure(f"Tool '{self.name}' could not access stored data: {reason}")
        except Exception:  # noqa: BLE001
            logger.exception("Tool %s raised unexpectedly", self.name)
            return ToolResult.failure(f"Tool '{self.name}' failed unexpectedly.")

        if isinstance(payload, ToolResult):
            return payload
        return ToolResult.ok(payload)

    @abstractmethod
    def run(self, params: Any, user_id: str, signal: CancellationSignal) -> Any:
        """Do the work; return a JSON-serializable payload or a ``ToolResult``."""


ToolHandler = Callable[[Any, str, CancellationSignal], Any]


@dataclass(frozen=True)
class FunctionTool(ToolDefinition):
    """Tool backed by a plain handler callable."""

    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler

    def run(self, params: Any, user_id: str, signal: CancellationSignal) -> Any:
        return self.handler(params, user_id, signal)


def format_validation_error(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "input"
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(parts)
