"""Built-in tools over the user's question bank."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from agent_tasks.engine.supervisor import CancellationSignal
from agent_tasks.questions.models import (
    CategoryView,
    QualificationView,
    QuestionUpdate,
    QuestionView,
    QuestionWrite,
)
from agent_tasks.questions.repository import QuestionBankRepository
from agent_tasks.tools.base import FunctionTool, ToolResult

_WORD_SPLIT_RE = re.compile(r"[ ,.?!;:\n\r]+")
_CODE_BLOCK_RE = re.compile(r"```[\s\S]*```")

TECHNICAL_TERMS: tuple[str, ...] = (
    "algorithm",
    "complexity",
    "implement",
    "design",
    "optimize",
    "architecture",
    "pattern",
    "async",
    "concurrent",
    "thread",
    "memory",
    "performance",
)


class ToolInput(BaseModel):
    """Tool arguments arrive in camelCase, as advertised in the schema."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ListInput(ToolInput):
    include_inactive: bool = Field(False, description="Include deleted/inactive entries.")


class GetQuestionsInput(ToolInput):
    category_id: int | None = Field(None, description="Filter questions by category ID.")
    limit: int = Field(50, ge=1, le=1000, description="Maximum number of questions to return.")
    include_inactive: bool = Field(False, description="Include deleted/inactive questions.")


class QuestionIdInput(ToolInput):
    question_id: int = Field(description="The ID of the question.")


class UncategorizedInput(ToolInput):
    limit: int = Field(50, ge=1, le=1000, description="Maximum number of questions to return.")


class SearchQuestionsInput(ToolInput):
    search_text: str = Field(
        min_length=2,
        max_length=200,
        description="Text to look for in question text, answers and tags.",
    )
    limit: int = Field(50, ge=1, le=200, description="Maximum number of results.")


class CreateNamedInput(ToolInput):
    name: str = Field(min_length=1, max_length=100, description="Display name.")
    description: str | None = Field(None, max_length=500, description="Optional description.")


class CreateQuestionInput(ToolInput):
    question_text: str = Field(min_length=1, max_length=1000, description="Question in English.")
    answer: str = Field(min_length=1, max_length=5000, description="Answer in English.")
    answer_pl: str = Field(min_length=1, max_length=5000, description="Answer in Polish.")
    category_id: int | None = Field(None, description="Category to assign.")
    qualification_id: int | None = Field(None, description="Qualification to assign.")
    tags: list[str] | None = Field(None, description="Tags for this question.")


class UpdateQuestionInput(ToolInput):
    question_id: int = Field(description="The ID of the question to update.")
    question_text: str | None = Field(None, min_length=1, max_length=1000)
    answer: str | None = Field(None, min_length=1, max_length=5000)
    answer_pl: str | None = Field(None, min_length=1, max_length=5000)
    qualification_id: int | None = None
    tags: list[str] | None = None

    @model_validator(mode="after")
    def _has_changes(self) -> UpdateQuestionInput:
        changes = (
            self.question_text,
            self.answer,
            self.answer_pl,
            self.qualification_id,
            self.tags,
        )
        if all(value is None for value in changes):
            raise ValueError("At least one field to update must be provided")
        return self


class UpdateQuestionCategoryInput(ToolInput):
    question_id: int = Field(description="The ID of the question.")
    category_id: int | None = Field(None, description="New category ID; omit to uncategorize.")


class BatchUpdateQuestionsInput(ToolInput):
    question_ids: list[int] = Field(
        min_length=1,
        max_length=100,
        description="Questions to update.",
    )
    category_id: int | None = None
    qualification_id: int | None = None
    tags: list[str] | None = None

    @model_validator(mode="after")
    def _has_changes(self) -> BatchUpdateQuestionsInput:
        if self.category_id is None and self.qualification_id is None and self.tags is None:
            raise ValueError("At least one of categoryId, qualificationId or tags is required")
        return self


class FindDuplicatesInput(ToolInput):
    threshold: float = Field(0.7, ge=0.0, le=1.0, description="Minimum Jaccard similarity.")
    limit: int = Field(20, ge=1, le=100, description="Maximum number of pairs to return.")


class AnalyzeDifficultyInput(ToolInput):
    question_id: int | None = Field(None, description="Analyze a single question.")
    category_id: int | None = Field(None, description="Analyze questions of one category.")
    limit: int = Field(20, ge=1, le=100, description="Maximum number of questions to analyze.")


@dataclass(slots=True)
class DifficultyAnalysis:
    score: float
    level: str
    factors: list[str]


def jaccard_similarity(first: str, second: str) -> float:
    """Word-set overlap of two texts, lowercased and split on punctuation."""

    words_first = {word for word in _WORD_SPLIT_RE.split(first.lower()) if word}
    words_second = {word for word in _WORD_SPLIT_RE.split(second.lower()) if word}
    if not words_first and not words_second:
        return 1.0
    union = words_first | words_second
    return len(words_first & words_second) / len(union)


def analyze_complexity(question_text: str, answer: str) -> DifficultyAnalysis:
    """Heuristic 0-10 difficulty score from length, vocabulary and code content."""

    factors: list[str] = []
    score = 0.0

    word_count = len(question_text.split())
    if word_count < 10:
        score += 1
        factors.append("Short question (simple)")
    elif word_count > 30:
        score += 3
        factors.append("Long question (complex)")
    else:
        score += 2
        factors.append("Medium length question")

    lowered_question = question_text.lower()
    lowered_answer = answer.lower()
    technical_count = sum(
        1 for term in TECHNICAL_TERMS if term in lowered_question or term in lowered_answer
    )
    if technical_count >= 3:
        score += 3
        factors.append(f"High technical term count ({technical_count})")
    elif technical_count > 0:
        score += 2
        factors.append(f"Some technical terms ({technical_count})")

    answer_word_count = len(answer.split())
    if answer_word_count > 100:
        score += 3
        factors.append("Detailed answer required")
    elif answer_word_count > 50:
        score += 2
        factors.append("Moderate answer length")
    else:
        score += 1
        factors.append("Short answer")

    if _CODE_BLOCK_RE.search(answer) or "function" in answer or "class" in answer:
        score += 2
        factors.append("Contains code examples")

    score = min(score / 1.1, 10.0)
    if score < 3:
        level = "Easy"
    elif score < 6:
        level = "Medium"
    elif score < 8:
        level = "Hard"
    else:
        level = "Very Hard"
    return DifficultyAnalysis(score=round(score, 1), level=level, factors=factors)


class QuestionBankTools:
    """Handlers for the built-in tools; each is scoped to the calling user."""

    def __init__(self, repository: QuestionBankRepository) -> None:
        self.repository = repository

    def get_categories(self, params: ListInput, user_id: str, _: CancellationSignal) -> Any:
        categories = self.repository.list_categories(
            user_id,
            include_inactive=params.include_inactive,
        )
        return {
            "success": True,
            "count": len(categories),
            "categories": [_category_payload(item) for item in categories],
        }

    def get_qualifications(self, params: ListInput, user_id: str, _: CancellationSignal) -> Any:
        qualifications = self.repository.list_qualifications(
            user_id,
            include_inactive=params.include_inactive,
        )
        return {
            "success": True,
            "count": len(qualifications),
            "qualifications": [_qualification_payload(item) for item in qualifications],
        }

    def get_questions(self, params: GetQuestionsInput, user_id: str, _: CancellationSignal) -> Any:
        questions = self.repository.list_questions(
            user_id,
            category_id=params.category_id,
            include_inactive=params.include_inactive,
            limit=params.limit,
        )
        return {
            "success": True,
            "count": len(questions),
            "questions": [_question_payload(item) for item in questions],
        }

    def get_question_by_id(
        self,
        params: QuestionIdInput,
        user_id: str,
        _: CancellationSignal,
    ) -> Any:
        question = self.repository.get_question(user_id, params.question_id)
        if question is None:
            return ToolResult.failure(f"Question with ID '{params.question_id}' not found.")
        return {"success": True, "question": _question_payload(question)}

    def get_uncategorized_questions(
        self,
        params: UncategorizedInput,
        user_id: str,
        _: CancellationSignal,
    ) -> Any:
        questions = self.repository.list_uncategorized(user_id, limit=params.limit)
        return {
            "success": True,
            "count": len(questions),
            "questions": [_question_payload(item) for item in questions],
        }

    def search_questions(
        self,
        params: SearchQuestionsInput,
        user_id: str,
        _: CancellationSignal,
    ) -> Any:
        questions = self.repository.search_questions(
            user_id,
            params.search_text,
            limit=params.limit,
        )
        return {
            "success": True,
            "searchText": params.search_text,
            "count": len(questions),
            "questions": [_question_payload(item) for item in questions],
        }

    def create_category(self, params: CreateNamedInput, user_id: str, _: CancellationSignal) -> Any:
        category = self.repository.create_category(
            user_id,
            params.name,
            description=params.description,
        )
        return {
            "success": True,
            "message": "Category created successfully",
            "category": _category_payload(category),
        }

    def create_qualification(
        self,
        params: CreateNamedInput,
        user_id: str,
        _: CancellationSignal,
    ) -> Any:
        qualification = self.repository.create_qualification(
            user_id,
            params.name,
            description=params.description,
        )
        return {
            "success": True,
            "message": "Qualification created successfully",
            "qualification": _qualification_payload(qualification),
        }

    def create_question(
        self,
        params: CreateQuestionInput,
        user_id: str,
        _: CancellationSignal,
    ) -> Any:
        question = self.repository.create_question(
            user_id,
            QuestionWrite(
                question_text=params.question_text,
                answer=params.answer,
                answer_pl=params.answer_pl,
                tags=params.tags or [],
                category_id=params.category_id,
                qualification_id=params.qualification_id,
            ),
        )
        return {
            "success": True,
            "message": "Question created successfully",
            "question": _question_payload(question),
        }

    def update_question(
        self,
        params: UpdateQuestionInput,
        user_id: str,
        _: CancellationSignal,
    ) -> Any:
        question = self.repository.update_question(
            user_id,
            params.question_id,
            QuestionUpdate(
                question_text=params.question_text,
                answer=params.answer,
                answer_pl=params.answer_pl,
                tags=params.tags,
                qualification_id=params.qualification_id,
            ),
        )
        if question is None:
            return ToolResult.failure(
                f"Question with ID '{params.question_id}' not found or unauthorized.",
            )
        return {
            "success": True,
            "message": "Question updated successfully",
            "question": _question_payload(question),
        }

    def update_question_category(
        self,
        params: UpdateQuestionCategoryInput,
        user_id: str,
        _: CancellationSignal,
    ) -> Any:
        question = self.repository.set_question_category(
            user_id,
            params.question_id,
            params.category_id,
        )
        if question is None:
            return ToolResult.failure(
                f"Question with ID '{params.question_id}' not found or unauthorized.",
            )
        return {
            "success": True,
            "message": "Question category updated successfully",
            "question": {
                "id": question.id,
                "questionText": question.question_text,
                "categoryId": question.category_id,
                "categoryName": question.category_name,
                "updatedAt": question.updated_at.isoformat(),
            },
        }

    def delete_question(self, params: QuestionIdInput, user_id: str, _: CancellationSignal) -> Any:
        if not self.repository.delete_question(user_id, params.question_id):
            return ToolResult.failure("Question not found or already deleted.")
        return {"success": True, "message": "Question deleted successfully"}

    def batch_update_questions(
        self,
        params: BatchUpdateQuestionsInput,
        user_id: str,
        signal: CancellationSignal,
    ) -> Any:
        signal.raise_if_cancelled()
        result = self.repository.batch_update_questions(
            user_id,
            params.question_ids,
            category_id=params.category_id,
            qualification_id=params.qualification_id,
            tags=params.tags,
        )
        total = len(params.question_ids)
        return {
            "success": result.updated_count > 0,
            "updatedCount": result.updated_count,
            "totalRequested": total,
            "failedCount": len(result.failed_ids),
            "failedIds": result.failed_ids,
            "message": f"Successfully updated {result.updated_count} out of {total} questions",
        }

    def find_duplicate_questions(
        self,
        params: FindDuplicatesInput,
        user_id: str,
        signal: CancellationSignal,
    ) -> Any:
        questions = self.repository.list_questions(user_id)
        pairs: list[dict[str, Any]] = []
        for index, first in enumerate(questions):
            if len(pairs) >= params.limit:
                break
            signal.raise_if_cancelled()
            for second in questions[index + 1 :]:
                if len(pairs) >= params.limit:
                    break
                similarity = jaccard_similarity(first.question_text, second.question_text)
                if similarity >= params.threshold:
                    pairs.append(
                        {
                            "question1": {"id": first.id, "questionText": first.question_text},
                            "question2": {"id": second.id, "questionText": second.question_text},
                            "similarity": round(similarity, 3),
                        },
                    )
        return {
            "success": True,
            "count": len(pairs),
            "threshold": params.threshold,
            "duplicatePairs": pairs,
        }

    def analyze_question_difficulty(
        self,
        params: AnalyzeDifficultyInput,
        user_id: str,
        _: CancellationSignal,
    ) -> Any:
        if params.question_id is not None:
            question = self.repository.get_question(user_id, params.question_id)
            if question is None:
                return ToolResult.failure(f"Question with ID '{params.question_id}' not found.")
            questions = [question] if question.is_active else []
        else:
            questions = self.repository.list_questions(
                user_id,
                category_id=params.category_id,
                limit=params.limit,
            )

        analyses = []
        for question in questions[: params.limit]:
            analysis = analyze_complexity(question.question_text, question.answer or "")
            analyses.append(
                {
                    "questionId": question.id,
                    "questionText": question.question_text[:100] + "...",
                    "difficultyScore": analysis.score,
                    "level": analysis.level,
                    "factors": analysis.factors,
                },
            )
        return {"success": True, "count": len(analyses), "analyses": analyses}


def build_question_bank_tools(repository: QuestionBankRepository) -> list[FunctionTool]:
    """Tool definitions in the order they are advertised to the model."""

    tools = QuestionBankTools(repository)
    return [
        FunctionTool(
            name="get_categories",
            description=(
                "Retrieves all question categories for the user. Use it to look up category "
                "IDs and names before categorizing or creating categories."
            ),
            input_model=ListInput,
            handler=tools.get_categories,
        ),
        FunctionTool(
            name="get_qualifications",
            description="Retrieves all qualifications (seniority levels, roles) for the user.",
            input_model=ListInput,
            handler=tools.get_qualifications,
        ),
        FunctionTool(
            name="get_questions",
            description=(
                "Retrieves interview questions for the user, optionally filtered by category. "
                "Returns question text, answers, category and tags."
            ),
            input_model=GetQuestionsInput,
            handler=tools.get_questions,
        ),
        FunctionTool(
            name="get_question_by_id",
            description="Retrieves one question with all of its details.",
            input_model=QuestionIdInput,
            handler=tools.get_question_by_id,
        ),
        FunctionTool(
            name="get_uncategorized_questions",
            description="Retrieves active questions that have no category assigned.",
            input_model=UncategorizedInput,
            handler=tools.get_uncategorized_questions,
        ),
        FunctionTool(
            name="search_questions",
            description=(
                "Searches active questions by a case-insensitive text match over the question, "
                "both answers and tags."
            ),
            input_model=SearchQuestionsInput,
            handler=tools.search_questions,
        ),
        FunctionTool(
            name="create_category",
            description="Creates a new question category. Check existing categories first.",
            input_model=CreateNamedInput,
            handler=tools.create_category,
        ),
        FunctionTool(
            name="create_qualification",
            description="Creates a new qualification.",
            input_model=CreateNamedInput,
            handler=tools.create_qualification,
        ),
        FunctionTool(
            name="create_question",
            description=(
                "Creates a new interview question. Requires questionText, answer and answerPl "
                "(Polish translation); category, qualification and tags are optional."
            ),
            input_model=CreateQuestionInput,
            handler=tools.create_question,
        ),
        FunctionTool(
            name="update_question",
            description=(
                "Updates fields of an existing question. Only provided fields are changed."
            ),
            input_model=UpdateQuestionInput,
            handler=tools.update_question,
        ),
        FunctionTool(
            name="update_question_category",
            description=(
                "Assigns a category to a question, or clears it when categoryId is omitted."
            ),
            input_model=UpdateQuestionCategoryInput,
            handler=tools.update_question_category,
        ),
        FunctionTool(
            name="delete_question",
            description="Soft-deletes a question; it stays stored but becomes inactive.",
            input_model=QuestionIdInput,
            handler=tools.delete_question,
        ),
        FunctionTool(
            name="batch_update_questions",
            description=(
                "Applies the same category, qualification or tags to up to 100 questions at once."
            ),
            input_model=BatchUpdateQuestionsInput,
            handler=tools.batch_update_questions,
        ),
        FunctionTool(
            name="find_duplicate_questions",
            description=(
                "Finds pairs of active questions whose wording overlaps (Jaccard similarity "
                "of their words) at or above the threshold."
            ),
            input_model=FindDuplicatesInput,
            handler=tools.find_duplicate_questions,
        ),
        FunctionTool(
            name="analyze_question_difficulty",
            description=(
                "Estimates difficulty (Easy, Medium, Hard, Very Hard) of one question, one "
                "category or all questions from length, technical vocabulary and code content."
            ),
            input_model=AnalyzeDifficultyInput,
            handler=tools.analyze_question_difficulty,
        ),
    ]


def _category_payload(category: CategoryView) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "isActive": category.is_active,
    }


def _qualification_payload(qualification: QualificationView) -> dict[str, Any]:
    return {
        "id": qualification.id,
        "name": qualification.name,
        "description": qualification.description,
        "isActive": qualification.is_active,
    }


def _question_payload(question: QuestionView) -> dict[str, Any]:
    return {
        "id": question.id,
        "questionText": question.question_text,
        "answer": question.answer,
        "answerPl": question.answer_pl,
        "categoryId": question.category_id,
        "categoryName": question.category_name,
        "qualificationId": question.qualification_id,
        "qualificationName": question.qualification_name,
        "isActive": question.is_active,
        "tags": question.tags,
        "createdAt": question.created_at.isoformat(),
        "updatedAt": question.updated_at.isoformat(),
    }
