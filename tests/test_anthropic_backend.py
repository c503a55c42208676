from __future__ import annotations

import json
import time
from collections.abc import Callable

import allure
import httpx
import pytest

from agent_tasks.engine.backend.anthropic_api import AnthropicBackend
from agent_tasks.engine.backend.base import InferenceRequest
from agent_tasks.engine.errors import BackendRequestError, TaskTimeoutError, TransportError
from agent_tasks.engine.supervisor import CancellationSignal
from agent_tasks.tools.registry import ToolRegistry

pytestmark = [
    allure.epic("Agent Tasks"),
    allure.feature("Anthropic Backend"),
]


def _backend(handler: Callable[[httpx.Request], httpx.Response]) -> AnthropicBackend:
    return AnthropicBackend(
        api_key="test-key",
        model="claude-test",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def _request(registry: ToolRegistry, signal: CancellationSignal | None = None) -> InferenceRequest:
    return InferenceRequest(
        system_prompt="You manage interview questions.",
        messages=[{"role": "user", "content": "List my categories."}],
        tools=registry.list_all()[:2],
        signal=signal or CancellationSignal(timeout_seconds=30),
    )


def _message(content: list[dict], stop_reason: str) -> dict:
    return {
        "id": "msg_01",
        "type": "message",
        "role": "assistant",
        "model": "claude-test",
        "content": content,
        "stop_reason": stop_reason,
        "stop_sequence": None,
        "usage": {"input_tokens": 42, "output_tokens": 7},
    }


def _error(status_code: int, error_type: str, message: str) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={"type": "error", "error": {"type": error_type, "message": message}},
    )


def test_tool_use_reply_is_parsed(registry: ToolRegistry) -> None:
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/messages"
        sent.append(json.loads(request.content))
        return httpx.Response(
            200,
            json=_message(
                [
                    {"type": "text", "text": "Let me check."},
                    {
                        "type": "tool_use",
                        "id": "toolu_01",
                        "name": "get_categories",
                        "input": {"includeInactive": False},
                    },
                ],
                "tool_use",
            ),
        )

    with _backend(handler) as backend:
        turn = backend.complete(_request(registry))

    assert turn.is_final is False
    assert turn.text == "Let me check."
    assert [(call.call_id, call.name) for call in turn.tool_calls] == [
        ("toolu_01", "get_categories"),
    ]
    assert turn.tool_calls[0].arguments == {"includeInactive": False}
    assert (turn.input_tokens, turn.output_tokens) == (42, 7)
    body = sent[0]
    assert body["model"] == "claude-test"
    assert body["system"] == "You manage interview questions."
    assert body["temperature"] == 0.0
    assert [tool["name"] for tool in body["tools"]] == ["get_categories", "get_qualifications"]


def test_end_turn_reply_is_final(registry: ToolRegistry) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_message([{"type": "text", "text": "Done."}], "end_turn"))

    with _backend(handler) as backend:
        turn = backend.complete(_request(registry))

    assert turn.is_final is True
    assert turn.text == "Done."


@pytest.mark.parametrize("status_code", [429, 500, 529])
def test_throttling_and_server_errors_are_transient(
    registry: ToolRegistry,
    status_code: int,
) -> None:
    with _backend(lambda _: _error(status_code, "overloaded_error", "Overloaded")) as backend:
        with pytest.raises(TransportError) as excinfo:
            backend.complete(_request(registry))

    assert not isinstance(excinfo.value, BackendRequestError)
    assert excinfo.value.transient is True
    assert excinfo.value.status_code == status_code
    assert str(excinfo.value) == f"Inference service returned HTTP {status_code}: Overloaded"


def test_rejected_request_is_not_transient(registry: ToolRegistry) -> None:
    response = _error(400, "invalid_request_error", "messages: field required")

    with _backend(lambda _: response) as backend:
        with pytest.raises(BackendRequestError) as excinfo:
            backend.complete(_request(registry))

    assert excinfo.value.transient is False
    assert "messages: field required" in str(excinfo.value)


def test_connection_failure_is_transient(registry: ToolRegistry) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _backend(handler) as backend:
        with pytest.raises(TransportError, match="unreachable") as excinfo:
            backend.complete(_request(registry))

    assert excinfo.value.transient is True


def test_expired_deadline_skips_request(registry: ToolRegistry) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_message([{"type": "text", "text": "late"}], "end_turn"))

    signal = CancellationSignal(timeout_seconds=0.01)
    time.sleep(0.03)

    with _backend(handler) as backend:
        with pytest.raises(TaskTimeoutError):
            backend.complete(_request(registry, signal))

    assert calls == []
