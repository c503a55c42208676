from __future__ import annotations

import json

import allure
import pytest
from pydantic import BaseModel

from agent_tasks.engine.errors import TaskCancelledError
from agent_tasks.engine.supervisor import CancellationSignal, CancelReason
from agent_tasks.tools import (
    DuplicateToolError,
    FunctionTool,
    ToolNotFoundError,
    ToolRegistry,
    ToolResult,
)

pytestmark = [
    allure.epic("Agent Tasks"),
    allure.feature("Tool Registry"),
]

EXPECTED_TOOLS = [
    "get_categories",
    "get_qualifications",
    "get_questions",
    "get_question_by_id",
    "get_uncategorized_questions",
    "search_questions",
    "create_category",
    "create_qualification",
    "create_question",
    "update_question",
    "update_question_category",
    "delete_question",
    "batch_update_questions",
    "find_duplicate_questions",
    "analyze_question_difficulty",
]


class _NameInput(BaseModel):
    name: str


def _tool(name: str = "greet", handler=None) -> FunctionTool:
    return FunctionTool(
        name=name,
        description="Greets someone.",
        input_model=_NameInput,
        handler=handler or (lambda params, user_id, _: {"greeting": f"hi {params.name}"}),
    )


def test_register_and_lookup() -> None:
    registry = ToolRegistry()
    tool = _tool()

    registry.register(tool)

    assert registry.lookup("greet") is tool
    assert registry.get("missing") is None
    assert "greet" in registry
    assert len(registry) == 1
    with pytest.raises(ToolNotFoundError, match="missing"):
        registry.lookup("missing")


def test_duplicate_and_invalid_names_are_rejected() -> None:
    registry = ToolRegistry([_tool()])

    with pytest.raises(DuplicateToolError):
        registry.register(_tool())
    with pytest.raises(ValueError, match="Invalid tool name"):
        registry.register(_tool(name="has space"))
    assert registry.names() == ["greet"]


def test_default_registry_advertises_all_tools_in_order(registry: ToolRegistry) -> None:
    specs = registry.list_all()

    assert [spec.name for spec in specs] == EXPECTED_TOOLS
    assert all(spec.description for spec in specs)


def test_tool_schemas_use_camel_case_arguments(registry: ToolRegistry) -> None:
    schemas = {spec.name: spec.input_schema for spec in registry.list_all()}

    create = schemas["create_question"]
    assert set(create["required"]) == {"questionText", "answer", "answerPl"}
    assert "categoryId" in create["properties"]
    assert "searchText" in schemas["search_questions"]["properties"]
    assert schemas["get_categories"].get("required", []) == []


def test_execute_validates_input_before_handler() -> None:
    calls: list[str] = []

    def handler(params: _NameInput, user_id: str, _: CancellationSignal) -> dict[str, str]:
        calls.append(user_id)
        return {"greeting": f"hi {params.name}"}

    tool = _tool(handler=handler)

    bad = tool.execute({"nickname": "x"}, "alice", CancellationSignal())
    good = tool.execute({"name": "Ada"}, "alice", CancellationSignal())

    assert bad.success is False
    assert bad.error is not None
    assert bad.error.startswith("Invalid input for tool 'greet'")
    assert json.loads(good.content) == {"greeting": "hi Ada"}
    assert calls == ["alice"]


def test_execute_lets_cancellation_escape() -> None:
    def handler(_: _NameInput, __: str, signal: CancellationSignal) -> None:
        signal.raise_if_cancelled()

    signal = CancellationSignal()
    signal.cancel(CancelReason.CANCELLED)

    with pytest.raises(TaskCancelledError):
        _tool(handler=handler).execute({"name": "Ada"}, "alice", signal)


def test_tool_result_model_content() -> None:
    assert ToolResult.ok("plain").to_model_content() == "plain"
    assert ToolResult.ok({"a": 1}).to_model_content() == '{"a": 1}'
    assert json.loads(ToolResult.failure("nope").to_model_content()) == {"error": "nope"}
