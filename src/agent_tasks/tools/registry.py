"""Name-indexed catalogue of the tools exposed to the model."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from agent_tasks.questions.repository import QuestionBankRepository
from agent_tasks.tools.base import ToolDefinition
from agent_tasks.tools.question_bank import build_question_bank_tools

_TOOL_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


class DuplicateToolError(ValueError):
    pass


class ToolNotFoundError(LookupError):
    pass


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Tool metadata as advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


class ToolRegistry:
    """Registration-ordered mapping from tool name to definition."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        if not _TOOL_NAME_RE.match(tool.name):
            raise ValueError(f"Invalid tool name: {tool.name!r}")
        if tool.name in self._tools:
            raise DuplicateToolError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def lookup(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Unknown tool: {name}")
        return tool

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list_all(self) -> list[ToolSpec]:
        return [
            ToolSpec(name=tool.name, description=tool.description, input_schema=tool.input_schema)
            for tool in self._tools.values()
        ]

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())


def build_default_registry(question_repository: QuestionBankRepository) -> ToolRegistry:
    """Registry with every built-in question-bank tool."""

    return ToolRegistry(build_question_bank_tools(question_repository))
