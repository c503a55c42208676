"""Anthropic Messages API backend."""

from __future__ import annotations

import logging
from typing import Any

import anthropic
import httpx

from agent_tasks.engine.backend.base import InferenceRequest, ModelTurn, ToolCallRequest
from agent_tasks.engine.errors import BackendRequestError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5"
DEFAULT_MAX_TOKENS = 4_096
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0

_TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})


class AnthropicBackend:
    """Run inference turns through the Anthropic Messages API.

    SDK-level retries are disabled; the scheduler owns the retry policy. Each
    request timeout is clamped to what is left of the attempt deadline.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.0,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        base_url: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.request_timeout_seconds = request_timeout_seconds
        self._client = anthropic.Anthropic(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
            timeout=request_timeout_seconds,
            http_client=http_client,
        )

    def complete(self, request: InferenceRequest) -> ModelTurn:
        timeout = self.request_timeout_seconds
        remaining = request.signal.remaining_seconds()
        if remaining is not None:
            if remaining <= 0:
                raise request.signal.error()
            timeout = min(timeout, remaining)

        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=request.system_prompt,
                messages=request.messages,  # type: ignore[arg-type]
                tools=[
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "input_schema": tool.input_schema,
                    }
                    for tool in request.tools
                ],
                timeout=timeout,
            )
        except anthropic.APITimeoutError as error:
            if request.signal.is_set:
                raise request.signal.error() from error
            raise TransportError(f"Inference request timed out after {timeout:g}s.") from error
        except anthropic.APIConnectionError as error:
            raise TransportError(f"Inference service unreachable: {error}") from error
        except anthropic.APIStatusError as error:
            raise _status_error(error) from error

        return _to_model_turn(response)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> AnthropicBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _status_error(error: anthropic.APIStatusError) -> TransportError:
    message = f"Inference service returned HTTP {error.status_code}: {_error_message(error)}"
    if error.status_code in _TRANSIENT_STATUS_CODES or error.status_code >= 500:
        return TransportError(message, status_code=error.status_code)
    return BackendRequestError(message, status_code=error.status_code)


def _error_message(error: anthropic.APIStatusError) -> str:
    body = error.body
    if isinstance(body, dict):
        detail = body.get("error")
        if isinstance(detail, dict) and isinstance(detail.get("message"), str):
            return detail["message"]
    return error.message


def _to_model_turn(response: Any) -> ModelTurn:
    text_parts: list[str] = []
    tool_calls: list[ToolCallRequest] = []
    for block in response.content:
        if block.type == "text":
            text_parts.append(block.text)
        elif block.type == "tool_use":
            arguments = block.input if isinstance(block.input, dict) else {}
            tool_calls.append(
                ToolCallRequest(call_id=block.id, name=block.name, arguments=arguments),
            )

    stop_reason = response.stop_reason or "end_turn"
    if stop_reason != "tool_use":
        if stop_reason != "end_turn":
            logger.warning("Unexpected stop reason %s; treating reply as final", stop_reason)
        tool_calls = []

    usage = response.usage
    return ModelTurn(
        text="".join(text_parts),
        tool_calls=tool_calls,
        stop_reason=stop_reason,
        input_tokens=getattr(usage, "input_tokens", 0) or 0,
        output_tokens=getattr(usage, "output_tokens", 0) or 0,
    )
