"""Pydantic schemas for the tutoring session and provider-output coercion helpers."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Sequence, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

__all__ = [
    "ActionContent",
    "ActionType",
    "AiAction",
    "AppView",
    "ChatMessage",
    "ContentFormatError",
    "ContentGenerationError",
    "DIAGNOSTIC_PLACEHOLDER_OPTIONS",
    "Goal",
    "QUIZ_PLACEHOLDER_OPTIONS",
    "Question",
    "QuizResultRecord",
    "SessionSnapshot",
    "StudentProfile",
    "clean_json_text",
    "coerce_action_content",
    "coerce_questions",
    "parse_provider_json",
    "utc_timestamp",
]


class ContentGenerationError(RuntimeError):
    """Raised when the content provider cannot produce a usable result."""


class ContentFormatError(ContentGenerationError):
    """Raised when a provider payload arrived but cannot be coerced at all."""


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class AppView(str, Enum):
    ONBOARDING = "ONBOARDING"
    DIAGNOSTIC = "DIAGNOSTIC"
    TOPIC_SELECT = "TOPIC_SELECT"
    QUIZ = "QUIZ"
    DASHBOARD = "DASHBOARD"


class ActionType(str, Enum):
    REMEDIAL = "REMEDIAL"
    PRACTICE = "PRACTICE"
    ADVANCE = "ADVANCE"


class Goal(str, Enum):
    BASICS = "BASICS"
    EXAM = "EXAM"
    JOB = "JOB"


class StudentProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, str_strip_whitespace=True)

    id: Optional[str] = Field(
        default=None,
        description="Opaque learner identifier, assigned once at onboarding.",
    )
    name: str = Field(min_length=1)
    class_level: str = Field(default="", alias="classLevel")
    subject: str = Field(min_length=1, description="Current focus subject.")
    goal: Goal = Goal.BASICS
    language: str = "English"
    daily_time: Optional[int] = Field(
        default=30,
        ge=0,
        alias="dailyTime",
        description="Advisory study minutes per day.",
    )

    @field_validator("goal", mode="before")
    @classmethod
    def _normalize_goal(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class Question(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    text: str
    options: List[str] = Field(min_length=1)
    correct_option_index: int = Field(ge=0, alias="correctOptionIndex")
    explanation: Optional[str] = None

    @model_validator(mode="after")
    def _index_within_options(self) -> "Question":
        if self.correct_option_index >= len(self.options):
            raise ValueError(
                f"correctOptionIndex {self.correct_option_index} out of range "
                f"for {len(self.options)} options"
            )
        return self

    def is_correct(self, answer: Any) -> bool:
        if isinstance(answer, bool) or not isinstance(answer, int):
            return False
        return answer == self.correct_option_index


class ActionContent(BaseModel):
    title: str
    description: str
    content: str


class AiAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: ActionType
    topic: str
    title: Optional[str] = None
    description: Optional[str] = None
    content: str = Field(default="", description="Empty while the content fill is pending.")
    timestamp: str = Field(default_factory=utc_timestamp)

    @property
    def is_pending(self) -> bool:
        return not self.content


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "model"]
    text: str


class QuizResultRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    student_id: Optional[str] = Field(alias="studentId")
    topic: str
    score: int = Field(ge=0, le=100)
    timestamp: str = Field(default_factory=utc_timestamp)


class SessionSnapshot(BaseModel):
    """Immutable view model handed to the rendering collaborator."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    view: AppView
    loading: bool = False
    loading_message: str = Field(default="", alias="loadingMessage")
    profile: Optional[StudentProfile] = None
    subject: str = ""
    topic: str = ""
    diagnostic_questions: List[Question] = Field(default_factory=list, alias="diagnosticQuestions")
    quiz_questions: List[Question] = Field(default_factory=list, alias="quizQuestions")
    latest_action: Optional[AiAction] = Field(default=None, alias="latestAction")
    is_action_loading: bool = Field(default=False, alias="isActionLoading")
    chat_history: List[ChatMessage] = Field(default_factory=list, alias="chatHistory")
    is_composing: bool = Field(default=False, alias="isComposing")
    mastery: Dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Provider payload coercion
# ---------------------------------------------------------------------------

_FENCE_MARKERS = ("```json", "```JSON", "```")

QUIZ_PLACEHOLDER_OPTIONS = ("Yes", "No")
DIAGNOSTIC_PLACEHOLDER_OPTIONS = ("Option A", "Option B")


def clean_json_text(text: Optional[str]) -> str:
    """Strip markdown code fences that models like to wrap around JSON."""

    cleaned = text or ""
    for marker in _FENCE_MARKERS:
        cleaned = cleaned.replace(marker, "")
    return cleaned.strip()


def _first_json_value(text: str) -> Any:
    decoder = json.JSONDecoder()
    for idx, char in enumerate(text):
        if char not in "[{":
            continue
        try:
            value, _ = decoder.raw_decode(text, idx)
        except ValueError:
            continue
        return value
    raise ValueError("No JSON value found in provider text")


def parse_provider_json(text: Optional[str]) -> Any:
    """Decode provider output; ``None`` when nothing usable is present."""

    cleaned = clean_json_text(text)
    if not cleaned:
        return None
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    try:
        return _first_json_value(cleaned)
    except ValueError:
        logger.error("Failed to parse JSON response: %s...", cleaned[:200])
        return None


def _coerce_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    text = text.strip()
    return text or None


def _coerce_options(value: Any, placeholder: Sequence[str]) -> List[str]:
    if not isinstance(value, list) or len(value) < 2:
        return list(placeholder)
    return ["" if option is None else str(option).strip() for option in value]


def _coerce_index(value: Any, option_count: int) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        return 0
    return value if 0 <= value < option_count else 0


def coerce_questions(
    raw: Any,
    *,
    id_prefix: str = "q",
    placeholder_options: Sequence[str] = QUIZ_PLACEHOLDER_OPTIONS,
    default_explanation: str = "No explanation provided.",
) -> List[Question]:
    """Turn an untrusted question array into validated :class:`Question` objects.

    Only a missing or empty array is a failure; every field inside an entry is
    defaulted rather than rejected.
    """

    if not isinstance(raw, list) or not raw:
        raise ContentFormatError("Invalid question format received")

    stamp = int(time.time() * 1000)
    questions: List[Question] = []
    seen_ids: Set[str] = set()
    for index, entry in enumerate(raw):
        item = entry if isinstance(entry, dict) else {}
        options = _coerce_options(item.get("options"), placeholder_options)
        question_id = _coerce_text(item.get("id"))
        if not question_id or question_id in seen_ids:
            question_id = f"{id_prefix}-{stamp}-{index}"
        seen_ids.add(question_id)
        questions.append(
            Question(
                id=question_id,
                text=_coerce_text(item.get("text")) or "Question unavailable",
                options=options,
                correct_option_index=_coerce_index(item.get("correctOptionIndex"), len(options)),
                explanation=_coerce_text(item.get("explanation")) or default_explanation,
            )
        )
    return questions


def coerce_action_content(raw: Any) -> ActionContent:
    """Validate the action-content object; only ``content`` is mandatory."""

    if not isinstance(raw, dict):
        raise ContentFormatError("Action content must be a JSON object")
    content = _coerce_text(raw.get("content"))
    if content is None:
        raise ContentFormatError("Action content missing 'content'")
    return ActionContent(
        title=_coerce_text(raw.get("title")) or "Learning Task",
        description=_coerce_text(raw.get("description")) or "Review this topic.",
        content=content,
    )
