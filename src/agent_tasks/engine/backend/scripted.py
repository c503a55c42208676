"""Deterministic backends for tests and local demos."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any
from uuid import uuid4

from agent_tasks.engine.backend.base import InferenceRequest, ModelTurn, ToolCallRequest

ScriptStep = ModelTurn | BaseException | Callable[[InferenceRequest], ModelTurn]


def final_answer(text: str) -> ModelTurn:
    return ModelTurn(text=text, stop_reason="end_turn")


def tool_call(name: str, arguments: dict[str, Any] | None = None) -> ModelTurn:
    return tool_calls((name, arguments or {}))


def tool_calls(*requests: tuple[str, dict[str, Any]]) -> ModelTurn:
    """Model turn requesting the given tools in order."""

    return ModelTurn(
        tool_calls=[
            ToolCallRequest(call_id=f"toolu_{uuid4().hex[:12]}", name=name, arguments=arguments)
            for name, arguments in requests
        ],
        stop_reason="tool_use",
    )


class ScriptedBackend:
    """Replay a fixed sequence of turns, exceptions or callables.

    Each ``complete`` call consumes one step. With ``repeat_last`` the final
    step is replayed forever, which models a model that never stops calling
    tools.
    """

    def __init__(self, steps: Iterable[ScriptStep], *, repeat_last: bool = False) -> None:
        self._steps = list(steps)
        self._repeat_last = repeat_last
        self._lock = threading.Lock()
        self.requests: list[InferenceRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def complete(self, request: InferenceRequest) -> ModelTurn:
        with self._lock:
            self.requests.append(request)
            if not self._steps:
                raise RuntimeError("Scripted backend has no steps left.")
            if self._repeat_last and len(self._steps) == 1:
                step = self._steps[0]
            else:
                step = self._steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(request)
        return step


class EchoBackend:
    """Answer every task with its own description; no tools are called."""

    def complete(self, request: InferenceRequest) -> ModelTurn:
        last_user_text = ""
        for message in reversed(request.messages):
            if message.get("role") == "user" and isinstance(message.get("content"), str):
                last_user_text = message["content"]
                break
        return final_answer(f"echo: {last_user_text.strip()}")
