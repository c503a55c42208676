from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from agent_tasks.config import EngineSettings, LlmSettings, Settings

pytestmark = [
    allure.epic("Agent Tasks"),
    allure.feature("Configuration"),
]


def test_defaults_match_engine_contract() -> None:
    settings = Settings()

    assert settings.engine.max_iterations == 20
    assert settings.engine.per_task_timeout_seconds == 120.0
    assert settings.engine.max_retry_attempts == 3
    assert settings.engine.retry_backoff_seconds == (5.0, 15.0, 30.0)
    assert settings.llm.temperature == 0.0
    settings.validate()


def test_from_env_reads_engine_and_llm_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_TASKS_MAX_ITERATIONS", "8")
    monkeypatch.setenv("AGENT_TASKS_TASK_TIMEOUT_SECONDS", "45.5")
    monkeypatch.setenv("AGENT_TASKS_RETRY_BACKOFF_SECONDS", "1, 2,4")
    monkeypatch.setenv("AGENT_TASKS_RECOVER_STALE_TASKS", "off")
    monkeypatch.setenv("AGENT_TASKS_LLM_BACKEND", "Echo")
    monkeypatch.setenv("AGENT_TASKS_LLM_MODEL", "claude-haiku-4-5")
    monkeypatch.setenv("AGENT_TASKS_USER_ID", "  carol ")

    settings = Settings.from_env(db_path=Path("custom.db"))

    assert settings.db_path == Path("custom.db")
    assert settings.engine.max_iterations == 8
    assert settings.engine.per_task_timeout_seconds == 45.5
    assert settings.engine.retry_backoff_seconds == (1.0, 2.0, 4.0)
    assert settings.engine.recover_stale_tasks is False
    assert settings.llm.backend == "echo"
    assert settings.llm.model == "claude-haiku-4-5"
    assert settings.user_context.user_id == "carol"


def test_from_env_falls_back_to_sdk_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sdk-key")
    assert Settings.from_env().llm.api_key == "sdk-key"

    monkeypatch.setenv("AGENT_TASKS_ANTHROPIC_API_KEY", "own-key")
    assert Settings.from_env().llm.api_key == "own-key"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AGENT_TASKS_MAX_ITERATIONS", "many", "Invalid integer value"),
        ("AGENT_TASKS_TASK_TIMEOUT_SECONDS", "soon", "Invalid number"),
        ("AGENT_TASKS_RETRY_BACKOFF_SECONDS", "5,x", "Invalid comma-separated numbers"),
        ("AGENT_TASKS_RECOVER_STALE_TASKS", "maybe", "Invalid boolean value"),
    ],
)
def test_from_env_rejects_unparsable_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("engine", "message"),
    [
        (EngineSettings(max_iterations=0), "MAX_ITERATIONS"),
        (EngineSettings(per_task_timeout_seconds=0), "TASK_TIMEOUT_SECONDS"),
        (
            EngineSettings(per_task_timeout_seconds=60, stale_attempt_seconds=60),
            "below AGENT_TASKS_STALE_ATTEMPT_SECONDS",
        ),
        (EngineSettings(max_retry_attempts=-1), "MAX_RETRY_ATTEMPTS"),
        (EngineSettings(retry_backoff_seconds=()), "RETRY_BACKOFF_SECONDS"),
        (EngineSettings(retry_backoff_seconds=(5.0, -1.0)), "negative delays"),
        (EngineSettings(worker_count=0), "WORKER_COUNT"),
    ],
)
def test_validate_rejects_bad_engine_values(engine: EngineSettings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(engine=engine).validate()


def test_validate_rejects_unknown_backend() -> None:
    with pytest.raises(ValueError, match="AGENT_TASKS_LLM_BACKEND"):
        Settings(llm=LlmSettings(backend="openai")).validate()


def test_validate_for_inference_requires_api_key_for_anthropic() -> None:
    settings = Settings(llm=LlmSettings(backend="anthropic", api_key=""))

    with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
        settings.validate_for_inference()

    replace(settings, llm=LlmSettings(backend="anthropic", api_key="key")).validate_for_inference()
    Settings(llm=LlmSettings(backend="echo")).validate_for_inference()
