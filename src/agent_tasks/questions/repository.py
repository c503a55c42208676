"""User-scoped persistence for questions, categories and qualifications."""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_tasks.engine.errors import ToolExecutionError
from agent_tasks.questions.models import (
    BatchUpdateResult,
    CategoryView,
    QualificationView,
    QuestionUpdate,
    QuestionView,
    QuestionWrite,
)
from agent_tasks.storage.alembic_runner import upgrade_head
from agent_tasks.storage.common import (
    build_sqlite_engine,
    ensure_user,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_tasks.storage.sqlmodel_models import Qualification, Question, QuestionCategory


class QuestionBankError(ToolExecutionError):
    """Business-rule failure reported back to the model as a failed tool call."""


class QuestionBankRepository:
    """Question bank facade backed by SQLModel + SQLite.

    Every method takes the acting ``user_id`` and never touches rows owned by
    another user; foreign rows behave exactly like missing ones.
    """

    def __init__(self, *, db_path: Path, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def list_categories(
        self,
        user_id: str,
        *,
        include_inactive: bool = False,
    ) -> list[CategoryView]:
        with Session(self.engine) as session:
            statement = (
                select(QuestionCategory)
                .where(QuestionCategory.user_id == user_id)
                .order_by(col(QuestionCategory.name).asc())
            )
            if not include_inactive:
                statement = statement.where(col(QuestionCategory.is_active).is_(True))
            rows = session.exec(statement).all()
        return [_to_category_view(row) for row in rows]

    def get_category(self, user_id: str, category_id: int) -> CategoryView | None:
        with Session(self.engine) as session:
            row = self._category_row(session, user_id, category_id)
            return _to_category_view(row) if row is not None else None

    def create_category(
        self,
        user_id: str,
        name: str,
        *,
        description: str | None = None,
    ) -> CategoryView:
        with Session(self.engine) as session:
            ensure_user(session, user_id)
            row = QuestionCategory(
                user_id=user_id,
                name=name.strip(),
                description=description,
                is_active=True,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise QuestionBankError(f"Category '{name}' already exists.") from error
            session.refresh(row)
            return _to_category_view(row)

    def list_qualifications(
        self,
        user_id: str,
        *,
        include_inactive: bool = False,
    ) -> list[QualificationView]:
        with Session(self.engine) as session:
            statement = (
                select(Qualification)
                .where(Qualification.user_id == user_id)
                .order_by(col(Qualification.name).asc())
            )
            if not include_inactive:
                statement = statement.where(col(Qualification.is_active).is_(True))
            rows = session.exec(statement).all()
        return [_to_qualification_view(row) for row in rows]

    def create_qualification(
        self,
        user_id: str,
        name: str,
        *,
        description: str | None = None,
    ) -> QualificationView:
        with Session(self.engine) as session:
            ensure_user(session, user_id)
            row = Qualification(
                user_id=user_id,
                name=name.strip(),
                description=description,
                is_active=True,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise QuestionBankError(f"Qualification '{name}' already exists.") from error
            session.refresh(row)
            return _to_qualification_view(row)

    def list_questions(
        self,
        user_id: str,
        *,
        category_id: int | None = None,
        include_inactive: bool = False,
        limit: int | None = None,
    ) -> list[QuestionView]:
        with Session(self.engine) as session:
            statement = select(Question).where(Question.user_id == user_id)
            if category_id is not None:
                statement = statement.where(Question.category_id == category_id)
            if not include_inactive:
                statement = statement.where(col(Question.is_active).is_(True))
            statement = statement.order_by(col(Question.id).asc())
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return self._to_question_views(session, user_id, rows)

    def list_uncategorized(self, user_id: str, *, limit: int) -> list[QuestionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Question)
                .where(
                    Question.user_id == user_id,
                    col(Question.category_id).is_(None),
                    col(Question.is_active).is_(True),
                )
                .order_by(col(Question.id).asc())
                .limit(limit),
            ).all()
            return self._to_question_views(session, user_id, rows)

    def search_questions(self, user_id: str, text: str, *, limit: int) -> list[QuestionView]:
        """Case-insensitive substring match over text, answers and tags of active questions."""

        needle = text.strip().lower()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Question)
                .where(
                    Question.user_id == user_id,
                    col(Question.is_active).is_(True),
                    or_(
                        func.lower(Question.question_text).contains(needle, autoescape=True),
                        func.lower(Question.answer).contains(needle, autoescape=True),
                        func.lower(Question.answer_pl).contains(needle, autoescape=True),
                        func.lower(Question.tags).contains(needle, autoescape=True),
                    ),
                )
                .order_by(col(Question.id).asc())
                .limit(limit),
            ).all()
            return self._to_question_views(session, user_id, rows)

    def get_question(self, user_id: str, question_id: int) -> QuestionView | None:
        with Session(self.engine) as session:
            row = self._question_row(session, user_id, question_id)
            if row is None:
                return None
            return self._to_question_views(session, user_id, [row])[0]

    def create_question(self, user_id: str, payload: QuestionWrite) -> QuestionView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            ensure_user(session, user_id)
            self._require_references(
                session,
                user_id,
                category_id=payload.category_id,
                qualification_id=payload.qualification_id,
            )
            row = Question(
                user_id=user_id,
                question_text=payload.question_text,
                answer=payload.answer,
                answer_pl=payload.answer_pl,
                tags=_dump_tags(payload.tags),
                category_id=payload.category_id,
                qualification_id=payload.qualification_id,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_question_views(session, user_id, [row])[0]

    def update_question(
        self,
        user_id: str,
        question_id: int,
        changes: QuestionUpdate,
    ) -> QuestionView | None:
        with Session(self.engine) as session:
            row = self._question_row(session, user_id, question_id)
            if row is None or not row.is_active:
                return None
            self._require_references(session, user_id, qualification_id=changes.qualification_id)
            if changes.question_text is not None:
                row.question_text = changes.question_text
            if changes.answer is not None:
                row.answer = changes.answer
            if changes.answer_pl is not None:
                row.answer_pl = changes.answer_pl
            if changes.tags is not None:
                row.tags = _dump_tags(changes.tags)
            if changes.qualification_id is not None:
                row.qualification_id = changes.qualification_id
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_question_views(session, user_id, [row])[0]

    def set_question_category(
        self,
        user_id: str,
        question_id: int,
        category_id: int | None,
    ) -> QuestionView | None:
        """Assign a category, or clear it with ``None``."""

        with Session(self.engine) as session:
            row = self._question_row(session, user_id, question_id)
            if row is None or not row.is_active:
                return None
            self._require_references(session, user_id, category_id=category_id)
            row.category_id = category_id
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_question_views(session, user_id, [row])[0]

    def delete_question(self, user_id: str, question_id: int) -> bool:
        """Soft delete; returns False when the question is missing or already inactive."""

        with Session(self.engine) as session:
            row = self._question_row(session, user_id, question_id)
            if row is None or not row.is_active:
                return False
            row.is_active = False
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            return True

    def batch_update_questions(
        self,
        user_id: str,
        question_ids: Iterable[int],
        *,
        category_id: int | None = None,
        qualification_id: int | None = None,
        tags: list[str] | None = None,
    ) -> BatchUpdateResult:
        """Apply the same changes to many questions in one transaction."""

        now = to_db_datetime(utc_now())
        updated: list[int] = []
        failed: list[int] = []
        with Session(self.engine) as session:
            self._require_references(
                session,
                user_id,
                category_id=category_id,
                qualification_id=qualification_id,
            )
            for question_id in question_ids:
                row = self._question_row(session, user_id, question_id)
                if row is None or not row.is_active:
                    failed.append(question_id)
                    continue
                if category_id is not None:
                    row.category_id = category_id
                if qualification_id is not None:
                    row.qualification_id = qualification_id
                if tags is not None:
                    row.tags = _dump_tags(tags)
                row.updated_at = now
                session.add(row)
                updated.append(question_id)
            session.commit()
        return BatchUpdateResult(updated_ids=updated, failed_ids=failed)

    def _require_references(
        self,
        session: Session,
        user_id: str,
        *,
        category_id: int | None = None,
        qualification_id: int | None = None,
    ) -> None:
        if category_id is not None and self._category_row(session, user_id, category_id) is None:
            raise QuestionBankError(f"Category with ID '{category_id}' not found.")
        if qualification_id is not None:
            row = session.exec(
                select(Qualification).where(
                    Qualification.id == qualification_id,
                    Qualification.user_id == user_id,
                ),
            ).one_or_none()
            if row is None:
                raise QuestionBankError(f"Qualification with ID '{qualification_id}' not found.")

    def _category_row(
        self,
        session: Session,
        user_id: str,
        category_id: int,
    ) -> QuestionCategory | None:
        return session.exec(
            select(QuestionCategory).where(
                QuestionCategory.id == category_id,
                QuestionCategory.user_id == user_id,
            ),
        ).one_or_none()

    def _question_row(self, session: Session, user_id: str, question_id: int) -> Question | None:
        return session.exec(
            select(Question).where(Question.id == question_id, Question.user_id == user_id),
        ).one_or_none()

    def _to_question_views(
        self,
        session: Session,
        user_id: str,
        rows: Iterable[Question],
    ) -> list[QuestionView]:
        rows = list(rows)
        category_names = {
            row.id: row.name
            for row in session.exec(
                select(QuestionCategory).where(QuestionCategory.user_id == user_id),
            ).all()
        }
        qualification_names = {
            row.id: row.name
            for row in session.exec(
                select(Qualification).where(Qualification.user_id == user_id),
            ).all()
        }
        return [
            QuestionView(
                id=row.id or 0,
                user_id=row.user_id,
                question_text=row.question_text,
                answer=row.answer,
                answer_pl=row.answer_pl,
                tags=_load_tags(row.tags),
                category_id=row.category_id,
                category_name=category_names.get(row.category_id),
                qualification_id=row.qualification_id,
                qualification_name=qualification_names.get(row.qualification_id),
                is_active=row.is_active,
                created_at=to_utc_aware_datetime(row.created_at),
                updated_at=to_utc_aware_datetime(row.updated_at),
            )
            for row in rows
        ]


def _dump_tags(tags: list[str] | None) -> str | None:
    if not tags:
        return None
    return json.dumps(tags, ensure_ascii=False)


def _load_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


def _to_category_view(row: QuestionCategory) -> CategoryView:
    return CategoryView(
        id=row.id or 0,
        user_id=row.user_id,
        name=row.name,
        description=row.description,
        is_active=row.is_active,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_qualification_view(row: Qualification) -> QualificationView:
    return QualificationView(
        id=row.id or 0,
        user_id=row.user_id,
        name=row.name,
        description=row.description,
        is_active=row.is_active,
        created_at=to_utc_aware_datetime(row.created_at),
    )
