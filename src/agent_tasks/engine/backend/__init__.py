"""Language-model backends used by the agent executor."""

from agent_tasks.engine.backend.anthropic_api import AnthropicBackend
from agent_tasks.engine.backend.base import (
    InferenceRequest,
    LlmBackend,
    ModelTurn,
    ToolCallRequest,
)
from agent_tasks.engine.backend.scripted import EchoBackend, ScriptedBackend

__all__ = [
    "AnthropicBackend",
    "EchoBackend",
    "InferenceRequest",
    "LlmBackend",
    "ModelTurn",
    "ScriptedBackend",
    "ToolCallRequest",
]
