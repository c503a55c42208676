"""Domain views for the question bank."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(slots=True)
class CategoryView:
    id: int
    user_id: str
    name: str
    description: str | None
    is_active: bool
    created_at: datetime


@dataclass(slots=True)
class QualificationView:
    id: int
    user_id: str
    name: str
    description: str | None
    is_active: bool
    created_at: datetime


@dataclass(slots=True)
class QuestionView:
    id: int
    user_id: str
    question_text: str
    answer: str | None
    answer_pl: str | None
    tags: list[str]
    category_id: int | None
    category_name: str | None
    qualification_id: int | None
    qualification_name: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class QuestionWrite:
    """Fields for a new question."""

    question_text: str
    answer: str | None = None
    answer_pl: str | None = None
    tags: list[str] = field(default_factory=list)
    category_id: int | None = None
    qualification_id: int | None = None


@dataclass(slots=True)
class QuestionUpdate:
    """Partial update; ``None`` leaves a field unchanged."""

    question_text: str | None = None
    answer: str | None = None
    answer_pl: str | None = None
    tags: list[str] | None = None
    qualification_id: int | None = None


@dataclass(slots=True)
class BatchUpdateResult:
    updated_ids: list[int]
    failed_ids: list[int]

    @property
    def updated_count(self) -> int:
        return len(self.updated_ids)
