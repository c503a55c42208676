"""Backend interface for one inference turn of the agent loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_tasks.engine.supervisor import CancellationSignal
from agent_tasks.tools.registry import ToolSpec


@dataclass(slots=True)
class ToolCallRequest:
    """A tool invocation requested by the model."""

    call_id: str
    name: str
    arguments: dict[str, Any]


@dataclass(slots=True)
class ModelTurn:
    """Parsed model reply: tool requests, or a final answer when there are none."""

    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    stop_reason: str = "end_turn"
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


@dataclass(slots=True)
class InferenceRequest:
    """Conversation so far, in Messages API content-block form."""

    system_prompt: str
    messages: list[dict[str, Any]]
    tools: list[ToolSpec]
    signal: CancellationSignal


class LlmBackend(Protocol):
    """Protocol implemented by inference backends."""

    def complete(self, request: InferenceRequest) -> ModelTurn:
        """Run one inference call; raise ``TransportError`` on communication failure."""
