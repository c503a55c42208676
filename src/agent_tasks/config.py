"""Runtime configuration for the agent task engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_RETRY_BACKOFF_SECONDS: tuple[float, ...] = (5.0, 15.0, 30.0)
_BACKENDS = frozenset({"anthropic", "echo"})


@dataclass(slots=True)
class EngineSettings:
    """Executor loop, deadline and retry settings."""

    max_iterations: int = 20
    per_task_timeout_seconds: float = 120.0
    max_retry_attempts: int = 3
    retry_backoff_seconds: tuple[float, ...] = DEFAULT_RETRY_BACKOFF_SECONDS
    worker_count: int = 2
    poll_interval_seconds: float = 1.0
    stale_attempt_seconds: int = 600
    recover_stale_tasks: bool = True
    cancel_probe_interval_seconds: float = 1.0
    max_description_chars: int = 10_000


@dataclass(slots=True)
class LlmSettings:
    """Inference backend settings."""

    backend: str = "anthropic"
    api_key: str = ""
    model: str = "claude-sonnet-4-5"
    base_url: str | None = None
    max_tokens: int = 4_096
    temperature: float = 0.0
    request_timeout_seconds: float = 60.0


@dataclass(slots=True)
class UserContextSettings:
    """Acting user for CLI commands."""

    user_id: str = "default_user"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_tasks.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    engine: EngineSettings = field(default_factory=EngineSettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_TASKS_DB_PATH", ".agent_tasks.db")),
            sqlite_busy_timeout_ms=_env_int("AGENT_TASKS_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv("AGENT_TASKS_LOG_LEVEL", "INFO").strip().upper(),
            engine=EngineSettings(
                max_iterations=_env_int("AGENT_TASKS_MAX_ITERATIONS", 20),
                per_task_timeout_seconds=_env_float("AGENT_TASKS_TASK_TIMEOUT_SECONDS", 120.0),
                max_retry_attempts=_env_int("AGENT_TASKS_MAX_RETRY_ATTEMPTS", 3),
                retry_backoff_seconds=_env_float_list(
                    "AGENT_TASKS_RETRY_BACKOFF_SECONDS",
                    DEFAULT_RETRY_BACKOFF_SECONDS,
                ),
                worker_count=_env_int("AGENT_TASKS_WORKER_COUNT", 2),
                poll_interval_seconds=_env_float("AGENT_TASKS_POLL_INTERVAL_SECONDS", 1.0),
                stale_attempt_seconds=_env_int("AGENT_TASKS_STALE_ATTEMPT_SECONDS", 600),
                recover_stale_tasks=_env_bool("AGENT_TASKS_RECOVER_STALE_TASKS", True),
                cancel_probe_interval_seconds=_env_float(
                    "AGENT_TASKS_CANCEL_PROBE_INTERVAL_SECONDS",
                    1.0,
                ),
                max_description_chars=_env_int("AGENT_TASKS_MAX_DESCRIPTION_CHARS", 10_000),
            ),
            llm=LlmSettings(
                backend=os.getenv("AGENT_TASKS_LLM_BACKEND", "anthropic").strip().lower(),
                api_key=os.getenv(
                    "AGENT_TASKS_ANTHROPIC_API_KEY",
                    os.getenv("ANTHROPIC_API_KEY", ""),
                ),
                model=os.getenv("AGENT_TASKS_LLM_MODEL", "claude-sonnet-4-5"),
                base_url=os.getenv("AGENT_TASKS_ANTHROPIC_BASE_URL") or None,
                max_tokens=_env_int("AGENT_TASKS_LLM_MAX_TOKENS", 4_096),
                temperature=_env_float("AGENT_TASKS_LLM_TEMPERATURE", 0.0),
                request_timeout_seconds=_env_float("AGENT_TASKS_LLM_REQUEST_TIMEOUT_SECONDS", 60.0),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("AGENT_TASKS_USER_ID", "default_user").strip() or "default_user",
            ),
        )

    def validate(self) -> None:
        """Fail fast on values the engine cannot run with."""

        engine = self.engine
        if engine.max_iterations < 1:
            raise ValueError("AGENT_TASKS_MAX_ITERATIONS must be >= 1.")
        if engine.per_task_timeout_seconds <= 0:
            raise ValueError("AGENT_TASKS_TASK_TIMEOUT_SECONDS must be > 0.")
        if engine.max_retry_attempts < 0:
            raise ValueError("AGENT_TASKS_MAX_RETRY_ATTEMPTS must be >= 0.")
        if not engine.retry_backoff_seconds:
            raise ValueError("AGENT_TASKS_RETRY_BACKOFF_SECONDS must list at least one delay.")
        if any(delay < 0 for delay in engine.retry_backoff_seconds):
            raise ValueError("AGENT_TASKS_RETRY_BACKOFF_SECONDS must not contain negative delays.")
        if engine.worker_count < 1:
            raise ValueError("AGENT_TASKS_WORKER_COUNT must be >= 1.")
        if engine.poll_interval_seconds < 0:
            raise ValueError("AGENT_TASKS_POLL_INTERVAL_SECONDS must be >= 0.")
        if engine.stale_attempt_seconds <= 0:
            raise ValueError("AGENT_TASKS_STALE_ATTEMPT_SECONDS must be > 0.")
        if engine.per_task_timeout_seconds >= engine.stale_attempt_seconds:
            raise ValueError(
                "AGENT_TASKS_TASK_TIMEOUT_SECONDS must be below AGENT_TASKS_STALE_ATTEMPT_SECONDS.",
            )
        if engine.cancel_probe_interval_seconds <= 0:
            raise ValueError("AGENT_TASKS_CANCEL_PROBE_INTERVAL_SECONDS must be > 0.")
        if self.llm.backend not in _BACKENDS:
            raise ValueError(
                f"AGENT_TASKS_LLM_BACKEND must be one of {', '.join(sorted(_BACKENDS))}, "
                f"got {self.llm.backend!r}.",
            )
        if self.llm.max_tokens < 1:
            raise ValueError("AGENT_TASKS_LLM_MAX_TOKENS must be >= 1.")
        if self.llm.request_timeout_seconds <= 0:
            raise ValueError("AGENT_TASKS_LLM_REQUEST_TIMEOUT_SECONDS must be > 0.")

    def validate_for_inference(self) -> None:
        self.validate()
        if self.llm.backend == "anthropic" and not self.llm.api_key:
            raise ValueError(
                "AGENT_TASKS_ANTHROPIC_API_KEY (or ANTHROPIC_API_KEY) is required "
                "for the anthropic backend.",
            )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_float_list(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    items = [item.strip() for item in value.split(",") if item.strip()]
    try:
        return tuple(float(item) for item in items)
    except ValueError as error:
        raise ValueError(f"Invalid comma-separated numbers for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
