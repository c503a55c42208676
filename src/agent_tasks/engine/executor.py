"""Bounded tool-calling conversation between the model and the tool registry."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from agent_tasks.engine.backend.base import (
    InferenceRequest,
    LlmBackend,
    ModelTurn,
    ToolCallRequest,
)
from agent_tasks.engine.errors import (
    AgentTaskError,
    MaxIterationsError,
    TaskCancelledError,
    TaskTimeoutError,
    TransportError,
    ValidationError,
)
from agent_tasks.engine.models import ConversationMessage, ExecutionStats, ToolCallLogEntry
from agent_tasks.engine.supervisor import CancellationSignal
from agent_tasks.sanitization import sanitize_message
from agent_tasks.storage.common import utc_now
from agent_tasks.tools.base import ToolResult
from agent_tasks.tools.registry import ToolRegistry, ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 20

DEFAULT_SYSTEM_PROMPT = """\
You are an assistant that manages a user's interview question database.

You can read, search, create, update, categorize, de-duplicate and analyze questions,
categories and qualifications by calling the tools listed below.

Guidelines:
- Look data up with the retrieval tools before changing it.
- Prefer batch operations when the same change applies to many questions.
- Confirm what you changed in the final answer, with counts and IDs.
- If a tool reports an error, read it and adjust the next call instead of repeating it.
- When the request is done, answer in plain text without calling more tools."""

ToolCallSink = Callable[[ToolCallLogEntry], None]
IterationHook = Callable[[int], None]


@dataclass(slots=True)
class AgentRunResult:
    """Final answer plus the counters of the attempt that produced it."""

    answer: str
    stats: ExecutionStats


def build_system_prompt(base_prompt: str, tools: Sequence[ToolSpec]) -> str:
    """Append the tool catalogue (name, description, input schema) to the base prompt."""

    if not tools:
        return base_prompt
    lines = [base_prompt, "", "Available tools:"]
    for tool in tools:
        schema = json.dumps(tool.input_schema, ensure_ascii=False, sort_keys=True)
        lines.append(f"- {tool.name}: {tool.description}")
        lines.append(f"  input schema: {schema}")
    return "\n".join(lines)


class AgentExecutor:
    """Drive the model/tool loop for one task attempt.

    The loop is sequential: one inference call per iteration, then the tool
    calls of that turn in request order. The cancellation signal is checked
    before and after every inference call and every tool call; a tripped
    signal ends the attempt with ``TaskTimeoutError`` or ``TaskCancelledError``
    even if the model was about to answer.
    """

    def __init__(
        self,
        *,
        backend: LlmBackend,
        registry: ToolRegistry,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1.")
        self.backend = backend
        self.registry = registry
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt

    def run(  # noqa: PLR0913
        self,
        *,
        description: str,
        user_id: str,
        signal: CancellationSignal,
        history: Sequence[ConversationMessage] = (),
        stats: ExecutionStats | None = None,
        on_tool_call: ToolCallSink | None = None,
        on_iteration: IterationHook | None = None,
    ) -> AgentRunResult:
        stats = stats if stats is not None else ExecutionStats()
        started = time.monotonic()
        tools = self.registry.list_all()
        system_prompt = build_system_prompt(self.system_prompt, tools)
        messages: list[dict[str, Any]] = [
            {"role": message.role, "content": message.content} for message in history
        ]
        messages.append({"role": "user", "content": description})

        try:
            for iteration in range(1, self.max_iterations + 1):
                signal.raise_if_cancelled()
                stats.iterations = iteration
                if on_iteration is not None:
                    on_iteration(iteration)
                logger.debug("Agent iteration %d/%d", iteration, self.max_iterations)

                turn = self._infer(
                    InferenceRequest(
                        system_prompt=system_prompt,
                        messages=list(messages),
                        tools=tools,
                        signal=signal,
                    ),
                )
                stats.input_tokens += turn.input_tokens
                stats.output_tokens += turn.output_tokens
                signal.raise_if_cancelled()

                if turn.is_final:
                    logger.info(
                        "Agent finished after %d iterations, %d tool calls",
                        iteration,
                        stats.tools_used,
                    )
                    return AgentRunResult(answer=turn.text, stats=stats)

                messages.append({"role": "assistant", "content": _assistant_blocks(turn)})
                result_blocks: list[dict[str, Any]] = []
                for request in turn.tool_calls:
                    signal.raise_if_cancelled()
                    try:
                        result = self._dispatch(request, user_id=user_id, signal=signal)
                    except (TaskTimeoutError, TaskCancelledError) as error:
                        stats.tools_used += 1
                        _record_tool_call(
                            on_tool_call,
                            iteration,
                            request,
                            ToolResult.failure(error.kind.value),
                        )
                        raise
                    stats.tools_used += 1
                    _record_tool_call(on_tool_call, iteration, request, result)
                    result_blocks.append(
                        {
                            "type": "tool_result",
                            "tool_use_id": request.call_id,
                            "content": result.to_model_content(),
                            "is_error": not result.success,
                        },
                    )
                    signal.raise_if_cancelled()
                messages.append({"role": "user", "content": result_blocks})

            raise MaxIterationsError(
                f"Agent did not produce a final answer within {self.max_iterations} iterations.",
            )
        finally:
            stats.duration_ms = int((time.monotonic() - started) * 1000)

    def _infer(self, request: InferenceRequest) -> ModelTurn:
        try:
            return self.backend.complete(request)
        except Exception as error:  # noqa: BLE001
            if request.signal.is_set:
                raise request.signal.error() from error
            if isinstance(error, AgentTaskError):
                raise
            raise TransportError(f"Inference call failed: {type(error).__name__}") from error

    def _dispatch(
        self,
        request: ToolCallRequest,
        *,
        user_id: str,
        signal: CancellationSignal,
    ) -> ToolResult:
        tool = self.registry.get(request.name)
        if tool is None:
            logger.info("Model requested unknown tool %s", request.name)
            return ToolResult.failure(
                f"Unknown tool '{request.name}'. "
                f"Available tools: {', '.join(self.registry.names())}.",
            )

        try:
            params = tool.validate_input(request.arguments)
        except ValidationError as error:
            return ToolResult.failure(str(error))

        try:
            return tool.execute(params, user_id, signal)
        except (TaskTimeoutError, TaskCancelledError):
            raise
        except AgentTaskError as error:
            return ToolResult.failure(sanitize_message(str(error)) or error.kind.value)
        except Exception:  # noqa: BLE001
            logger.exception("Tool %s raised unexpectedly", request.name)
            return ToolResult.failure(f"Tool '{request.name}' failed unexpectedly.")


def _assistant_blocks(turn: ModelTurn) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    if turn.text:
        blocks.append({"type": "text", "text": turn.text})
    blocks.extend(
        {"type": "tool_use", "id": call.call_id, "name": call.name, "input": call.arguments}
        for call in turn.tool_calls
    )
    return blocks


def _record_tool_call(
    sink: ToolCallSink | None,
    iteration: int,
    request: ToolCallRequest,
    result: ToolResult,
) -> None:
    if sink is None:
        return
    sink(
        ToolCallLogEntry(
            iteration=iteration,
            tool_name=request.name,
            input=request.arguments,
            success=result.success,
            output=result.content if result.success else None,
            error=result.error,
            timestamp=utc_now(),
        ),
    )
