"""Session state machine driving a learner through the tutoring loop.

``ONBOARDING -> DIAGNOSTIC -> TOPIC_SELECT -> QUIZ -> DASHBOARD`` with
``DASHBOARD -> TOPIC_SELECT -> QUIZ -> DASHBOARD`` as the steady cycle.

All state lives in one :class:`SessionContext` owned by the orchestrator and is
only mutated on the event loop between awaits, so no locking is needed. After
every mutation an immutable :class:`~schemas.SessionSnapshot` is handed to the
injected view.

Action content is filled by a background task. Each quiz completion bumps a
generation counter; a fill whose generation is no longer current is dropped,
which is how late responses for a superseded action are discarded.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Union

import config
from content_provider import ContentProvider
from engines.bands import validate_score
from engines.difficulty_manager import select_difficulty
from engines.planner import next_action
from mastery_store import MasteryStore
from schemas import (
    AiAction,
    AppView,
    ChatMessage,
    Question,
    QuizResultRecord,
    SessionSnapshot,
    StudentProfile,
)
from session_store import SessionPersistence
from telemetry import QuizResultSink

logger = logging.getLogger(__name__)

DIAGNOSTIC_LOADING_MESSAGE = "Preparing diagnostic assessment for {subject}..."
QUIZ_LOADING_MESSAGE = "Generating {difficulty} quiz for {topic}..."
CHAT_GREETING = "Namaste {name}! I am your AI tutor. Ask me anything about {subject}."
CHAT_APOLOGY = "Network error. Please try again."

Answers = Union[Sequence[Optional[int]], Mapping[str, Optional[int]]]


class InvalidTransitionError(RuntimeError):
    """Raised when an event arrives in a view that does not accept it."""


class SessionView(Protocol):
    def render(self, snapshot: SessionSnapshot) -> None: ...


class NullView:
    def render(self, snapshot: SessionSnapshot) -> None:
        return None


def round_half_up(numerator: int, denominator: int) -> int:
    """Integer rounding of ``numerator / denominator`` with halves going up."""
    return (2 * numerator + denominator) // (2 * denominator)


def score_quiz(questions: Sequence[Question], answers: Optional[Answers]) -> int:
    """Percentage of correctly answered questions, 0..100.

    ``answers`` is either a list aligned with ``questions`` or a mapping keyed by
    question id. Missing or non-integer answers count as incorrect.
    """

    if not questions:
        raise ValueError("cannot score an empty question set")
    answers = answers if answers is not None else []
    correct = 0
    for position, question in enumerate(questions):
        if isinstance(answers, Mapping):
            answer = answers.get(question.id)
        else:
            answer = answers[position] if position < len(answers) else None
        if question.is_correct(answer):
            correct += 1
    return round_half_up(correct * 100, len(questions))


@dataclass
class SessionContext:
    view: AppView
    profile: Optional[StudentProfile] = None
    student_id: Optional[str] = None
    subject: str = ""
    topic: str = ""
    loading: bool = False
    loading_message: str = ""
    diagnostic_questions: List[Question] = field(default_factory=list)
    diagnostic_answers: List[Optional[int]] = field(default_factory=list)
    quiz_questions: List[Question] = field(default_factory=list)
    latest_action: Optional[AiAction] = None
    action_generation: int = 0
    chat_history: List[ChatMessage] = field(default_factory=list)
    chat_epoch: int = 0
    composing: int = 0


class SessionOrchestrator:
    """Finite-state controller for one learner session."""

    def __init__(
        self,
        provider: ContentProvider,
        persistence: SessionPersistence,
        *,
        telemetry: Optional[QuizResultSink] = None,
        view: Optional[SessionView] = None,
        catalog: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> None:
        self.provider = provider
        self.persistence = persistence
        self.telemetry = telemetry
        self.view = view or NullView()
        self.catalog = catalog if catalog is not None else config.AVAILABLE_SUBJECTS

        persisted = persistence.load()
        self.mastery = MasteryStore(persistence, persisted.mastery)
        profile = persisted.profile
        self.context = SessionContext(
            view=AppView.TOPIC_SELECT if profile is not None else AppView.ONBOARDING,
            profile=profile,
            student_id=persisted.student_id or (profile.id if profile else None),
            subject=profile.subject if profile else "",
        )
        self._tasks: Set[asyncio.Task] = set()
        self._fills_in_flight: Set[int] = set()

    # ------------------------------------------------------------------
    # Snapshot / rendering
    # ------------------------------------------------------------------
    @property
    def current_view(self) -> AppView:
        return self.context.view

    @property
    def is_action_loading(self) -> bool:
        ctx = self.context
        return ctx.latest_action is not None and ctx.action_generation in self._fills_in_flight

    @property
    def is_idle(self) -> bool:
        """True when no load, chat reply or background fill is outstanding."""
        ctx = self.context
        return not self._tasks and not ctx.loading and ctx.composing == 0

    def snapshot(self) -> SessionSnapshot:
        ctx = self.context
        return SessionSnapshot(
            view=ctx.view,
            loading=ctx.loading,
            loading_message=ctx.loading_message,
            profile=ctx.profile,
            subject=ctx.subject,
            topic=ctx.topic,
            diagnostic_questions=list(ctx.diagnostic_questions),
            quiz_questions=list(ctx.quiz_questions),
            latest_action=ctx.latest_action.model_copy() if ctx.latest_action else None,
            is_action_loading=self.is_action_loading,
            chat_history=list(ctx.chat_history),
            is_composing=ctx.composing > 0,
            mastery=self.mastery.as_dict(),
        )

    def _publish(self) -> None:
        self.view.render(self.snapshot())

    def _require(self, *views: AppView) -> None:
        ctx = self.context
        if ctx.view not in views:
            expected = ", ".join(view.value for view in views)
            raise InvalidTransitionError(
                f"event not accepted in {ctx.view.value} (expected {expected})"
            )
        if ctx.loading:
            raise InvalidTransitionError(f"{ctx.view.value} is busy: {ctx.loading_message}")

    def _set_loading(self, message: str) -> None:
        self.context.loading = True
        self.context.loading_message = message
        self._publish()

    def _clear_loading(self) -> None:
        self.context.loading = False
        self.context.loading_message = ""

    # ------------------------------------------------------------------
    # Onboarding and diagnostic
    # ------------------------------------------------------------------
    async def submit_profile(
        self, profile: Union[StudentProfile, Mapping[str, Any]]
    ) -> StudentProfile:
        self._require(AppView.ONBOARDING)
        ctx = self.context
        if not isinstance(profile, StudentProfile):
            profile = StudentProfile.model_validate(profile)
        if not profile.id:
            profile = profile.model_copy(update={"id": ctx.student_id or uuid.uuid4().hex})

        self.persistence.save_profile(profile)
        ctx.profile = profile
        ctx.student_id = profile.id
        ctx.subject = profile.subject

        self._set_loading(DIAGNOSTIC_LOADING_MESSAGE.format(subject=profile.subject))
        questions: List[Question] = []
        try:
            questions = await self.provider.generate_diagnostic(profile)
        except Exception:
            logger.exception("Diagnostic generation failed; skipping to topic selection")
        finally:
            self._clear_loading()

        if questions:
            ctx.diagnostic_questions = list(questions)
            ctx.view = AppView.DIAGNOSTIC
        else:
            ctx.view = AppView.TOPIC_SELECT
        self._publish()
        return profile

    def submit_diagnostic(self, answers: Optional[Sequence[Optional[int]]] = None) -> None:
        """Finish the placement test. Answers are kept for inspection only."""

        self._require(AppView.DIAGNOSTIC)
        ctx = self.context
        ctx.diagnostic_answers = list(answers or [])
        if ctx.diagnostic_questions:
            logger.info(
                "Diagnostic completed for %s: %d%% (%d answers)",
                ctx.student_id,
                score_quiz(ctx.diagnostic_questions, ctx.diagnostic_answers),
                len(ctx.diagnostic_answers),
            )
        ctx.view = AppView.TOPIC_SELECT
        self._publish()

    # ------------------------------------------------------------------
    # Quiz loop
    # ------------------------------------------------------------------
    async def select_topic(self, subject: str, topic: str) -> List[Question]:
        self._require(AppView.TOPIC_SELECT)
        if not topic or not topic.strip():
            raise ValueError("topic must be a non-empty string")
        ctx = self.context
        ctx.subject = (subject or "").strip() or (ctx.profile.subject if ctx.profile else "")
        ctx.topic = topic.strip()

        difficulty = select_difficulty(self.mastery.get(ctx.topic))
        self._set_loading(
            QUIZ_LOADING_MESSAGE.format(difficulty=difficulty.value.lower(), topic=ctx.topic)
        )
        try:
            questions = await self.provider.generate_quiz(ctx.profile, ctx.topic, difficulty)
        finally:
            self._clear_loading()

        ctx.quiz_questions = list(questions)
        ctx.view = AppView.QUIZ
        self._publish()
        return ctx.quiz_questions

    async def submit_quiz_answers(self, answers: Optional[Answers]) -> AiAction:
        self._require(AppView.QUIZ)
        return await self.complete_quiz(score_quiz(self.context.quiz_questions, answers))

    async def complete_quiz(self, score: int) -> AiAction:
        """Record the score, publish a pending action and start filling it."""

        self._require(AppView.QUIZ)
        validate_score(score)
        ctx = self.context
        topic = ctx.topic

        self.mastery.record(topic, score)
        self._emit_result(topic, score)

        action_type = next_action(score)
        ctx.action_generation += 1
        generation = ctx.action_generation
        ctx.latest_action = AiAction(type=action_type, topic=topic)

        ctx.view = AppView.DASHBOARD
        self._start_chat()
        self._fills_in_flight.add(generation)
        self._publish()

        task = asyncio.create_task(self._fill_action(generation, ctx.latest_action))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ctx.latest_action

    def _emit_result(self, topic: str, score: int) -> None:
        if self.telemetry is None:
            return
        record = QuizResultRecord(student_id=self.context.student_id, topic=topic, score=score)
        try:
            self.telemetry.submit(record)
        except Exception:
            logger.exception("Quiz result emission failed for topic %s", topic)

    async def _fill_action(self, generation: int, action: AiAction) -> None:
        ctx = self.context
        content = None
        try:
            content = await self.provider.generate_action_content(
                ctx.profile, action.topic, action.type
            )
        except Exception:
            logger.exception("Action content generation failed for topic %s", action.topic)
        finally:
            self._fills_in_flight.discard(generation)

        if generation != ctx.action_generation or ctx.latest_action is None:
            logger.info(
                "Dropping stale action content (generation %d, current %d)",
                generation,
                ctx.action_generation,
            )
            return
        if content is not None:
            ctx.latest_action.title = content.title
            ctx.latest_action.description = content.description
            ctx.latest_action.content = content.content
        self._publish()

    def request_new_topic(self) -> None:
        self._require(AppView.DASHBOARD)
        ctx = self.context
        ctx.action_generation += 1
        ctx.latest_action = None
        ctx.chat_history = []
        ctx.chat_epoch += 1
        ctx.composing = 0
        ctx.view = AppView.TOPIC_SELECT
        self._publish()

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    def _start_chat(self) -> None:
        ctx = self.context
        ctx.chat_epoch += 1
        ctx.composing = 0
        subject = ctx.subject or (ctx.profile.subject if ctx.profile else "")
        name = ctx.profile.name if ctx.profile else ""
        ctx.chat_history = [
            ChatMessage(role="model", text=CHAT_GREETING.format(name=name, subject=subject))
        ]

    async def send_chat_message(self, text: str) -> Optional[str]:
        """Append ``text`` and the tutor's reply; blank messages are ignored."""

        self._require(AppView.DASHBOARD)
        message = (text or "").strip()
        if not message:
            return None
        ctx = self.context
        epoch = ctx.chat_epoch
        ctx.chat_history.append(ChatMessage(role="user", text=message))
        history = list(ctx.chat_history)
        ctx.composing += 1
        self._publish()

        topic = ctx.latest_action.topic if ctx.latest_action else ctx.profile.subject
        try:
            reply = await self.provider.chat(ctx.profile, history, message, topic)
        except Exception:
            logger.exception("Chat request failed")
            reply = CHAT_APOLOGY

        if epoch != ctx.chat_epoch:
            logger.info("Dropping chat reply for a closed conversation")
            return None
        ctx.composing = max(0, ctx.composing - 1)
        ctx.chat_history.append(ChatMessage(role="model", text=reply))
        self._publish()
        return reply

    # ------------------------------------------------------------------
    # Dashboard helpers
    # ------------------------------------------------------------------
    def progress_by_subject(self) -> Dict[str, Dict[str, int]]:
        return self.mastery.progress_by_subject(self.catalog)

    async def drain(self) -> None:
        """Wait for every background action fill to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = [
    "CHAT_APOLOGY",
    "CHAT_GREETING",
    "InvalidTransitionError",
    "NullView",
    "SessionContext",
    "SessionOrchestrator",
    "SessionView",
    "round_half_up",
    "score_quiz",
]
