"""Scrub error text before it is stored on a task, logged as a tool call or shown to the model.

Three sources leak here: SQLAlchemy errors carry the failed statement and its
bound parameters (question text, user ids); Anthropic SDK errors echo request
headers and ``toolu_`` call ids; free-form tool errors may quote user emails.
"""

from __future__ import annotations

import re

from sqlalchemy.exc import SQLAlchemyError

_MAX_MESSAGE_CHARS = 2_000

# Everything SQLAlchemy appends after the driver message.
_SQL_TRAILER = re.compile(r"\s*(?:\[SQL: |\[parameters: |\(Background on this error at: )")

_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)\b(x-api-key|authorization)(\s*[:=]\s*)(?:bearer\s+)?\S+"),
        r"\1\2[redacted]",
    ),
    (re.compile(r"(?i)\bbearer\s+[a-z0-9._\-]{8,}"), "Bearer [redacted]"),
    (re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_\-]{8,}"), "[redacted-api-key]"),
    (
        re.compile(r"\b((?:AGENT_TASKS_|ANTHROPIC_)[A-Z_]*(?:KEY|TOKEN))\s*=\s*\S+"),
        r"\1=[redacted]",
    ),
    (re.compile(r"\btoolu_[A-Za-z0-9]{6,}"), "toolu_[id]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[redacted-email]"),
)


def strip_sql_details(text: str) -> str:
    """Drop the statement, parameters and docs link SQLAlchemy adds to DBAPI errors."""

    return _SQL_TRAILER.split(text, maxsplit=1)[0].strip()


def describe_storage_error(error: SQLAlchemyError) -> str:
    """One sanitized line naming what the database rejected, without the SQL."""

    text = sanitize_message(str(error))
    return text.splitlines()[0] if text else type(error).__name__


def sanitize_message(text: str, *, max_chars: int = _MAX_MESSAGE_CHARS) -> str:
    compact = strip_sql_details(text)
    if not compact:
        return ""
    for pattern, replacement in _RULES:
        compact = pattern.sub(replacement, compact)
    return compact[:max_chars]
