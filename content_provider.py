"""Content-generation contract and the Gemini-backed implementation.

The :class:`ContentProvider` base class owns everything that is independent of
the transport: prompt rendering, response schemas, payload coercion and the
per-request failure policy. Subclasses only move text over the wire through
``_generate_json`` and ``_generate_text``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from time import perf_counter
from typing import Any, Dict, List, Optional, Sequence

import httpx

import config
from engines.difficulty_manager import DifficultyTier
from prompts.masterprompts import MasterPrompt, get_prompt
from schemas import (
    DIAGNOSTIC_PLACEHOLDER_OPTIONS,
    QUIZ_PLACEHOLDER_OPTIONS,
    ActionContent,
    ActionType,
    ChatMessage,
    ContentFormatError,
    ContentGenerationError,
    Question,
    StudentProfile,
    coerce_action_content,
    coerce_questions,
    parse_provider_json,
)

logger = logging.getLogger(__name__)
_LLM_LOGGER = logging.getLogger("tutor.llm")

DIAGNOSTIC_TEMPERATURE = 0.3
QUIZ_TEMPERATURE = 0.3
ACTION_TEMPERATURE = 0.4

EMPTY_CHAT_REPLY = "I didn't quite get that. Could you rephrase?"

FALLBACK_QUESTION = Question(
    id="err1",
    text="We couldn't load the questions right now. Please try reloading.",
    options=["Retry"],
    correct_option_index=0,
    explanation="Network or parsing error.",
)

QUESTION_ARRAY_SCHEMA: Dict[str, Any] = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "id": {"type": "STRING"},
            "text": {"type": "STRING"},
            "options": {"type": "ARRAY", "items": {"type": "STRING"}},
            "correctOptionIndex": {"type": "INTEGER"},
            "explanation": {"type": "STRING"},
        },
        "required": ["id", "text", "options", "correctOptionIndex", "explanation"],
    },
}

ACTION_CONTENT_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING"},
        "description": {"type": "STRING"},
        "content": {"type": "STRING"},
    },
    "required": ["title", "description", "content"],
}


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    _LLM_LOGGER.info(message)


class ContentProvider(ABC):
    """Typed requests against an external text-generation service."""

    def __init__(
        self,
        *,
        prompt: Optional[MasterPrompt] = None,
        questions_per_quiz: int = config.QUESTIONS_PER_QUIZ,
        questions_per_diagnostic: int = config.QUESTIONS_PER_DIAGNOSTIC,
    ) -> None:
        self.prompt = prompt or get_prompt(config.PROMPT_VARIANT)
        self.questions_per_quiz = questions_per_quiz
        self.questions_per_diagnostic = questions_per_diagnostic

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------
    @abstractmethod
    async def _generate_json(
        self,
        prompt: str,
        *,
        system_instruction: str,
        schema: Dict[str, Any],
        temperature: float,
    ) -> str:
        """Return the raw text of a schema-constrained JSON completion."""

    @abstractmethod
    async def _generate_text(
        self,
        prompt: str,
        *,
        system_instruction: str,
        history: Sequence[ChatMessage],
    ) -> str:
        """Return a free-text completion; may be empty."""

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    def system_instruction(self, profile: StudentProfile) -> str:
        return self.prompt.render_system(
            name=profile.name,
            class_level=profile.class_level,
            subject=profile.subject,
            language=profile.language,
            goal=profile.goal.value,
        )

    async def _request_json(
        self,
        kind: str,
        prompt: str,
        *,
        profile: StudentProfile,
        schema: Dict[str, Any],
        temperature: float,
    ) -> Any:
        try:
            text = await self._generate_json(
                prompt,
                system_instruction=self.system_instruction(profile),
                schema=schema,
                temperature=temperature,
            )
        except ContentGenerationError:
            raise
        except Exception as exc:
            raise ContentGenerationError(f"{kind} request failed: {exc}") from exc
        return parse_provider_json(text)

    async def generate_diagnostic(self, profile: StudentProfile) -> List[Question]:
        """Mixed-difficulty placement questions; raises on any failure."""

        prompt = self.prompt.render_diagnostic(
            subject=profile.subject,
            class_level=profile.class_level,
            count=self.questions_per_diagnostic,
        )
        payload = await self._request_json(
            "diagnostic",
            prompt,
            profile=profile,
            schema=QUESTION_ARRAY_SCHEMA,
            temperature=DIAGNOSTIC_TEMPERATURE,
        )
        return coerce_questions(
            payload,
            id_prefix="d",
            placeholder_options=DIAGNOSTIC_PLACEHOLDER_OPTIONS,
            default_explanation="",
        )

    async def generate_quiz(
        self,
        profile: StudentProfile,
        topic: str,
        difficulty: DifficultyTier,
    ) -> List[Question]:
        """Quiz questions for ``topic``; never raises.

        Any failure yields the single :data:`FALLBACK_QUESTION` so that the quiz
        view always has something to show.
        """

        prompt = self.prompt.render_quiz(
            topic=topic,
            difficulty=difficulty.description,
            count=self.questions_per_quiz,
        )
        try:
            payload = await self._request_json(
                "quiz",
                prompt,
                profile=profile,
                schema=QUESTION_ARRAY_SCHEMA,
                temperature=QUIZ_TEMPERATURE,
            )
            return coerce_questions(
                payload,
                id_prefix="q",
                placeholder_options=QUIZ_PLACEHOLDER_OPTIONS,
                default_explanation="No explanation provided.",
            )
        except ContentGenerationError:
            logger.exception("Quiz generation failed for topic %s", topic)
            return [FALLBACK_QUESTION]

    async def generate_action_content(
        self,
        profile: StudentProfile,
        topic: str,
        action_type: ActionType,
    ) -> ActionContent:
        prompt = self.prompt.render_action(topic=topic, action=action_type.value)
        payload = await self._request_json(
            "action",
            prompt,
            profile=profile,
            schema=ACTION_CONTENT_SCHEMA,
            temperature=ACTION_TEMPERATURE,
        )
        return coerce_action_content(payload)

    async def chat(
        self,
        profile: StudentProfile,
        history: Sequence[ChatMessage],
        message: str,
        topic: str,
    ) -> str:
        prior = list(history)
        # The caller appends the outgoing message before asking; it is re-sent
        # inside the rendered prompt instead.
        if prior and prior[-1].role == "user" and prior[-1].text == message:
            prior = prior[:-1]
        prompt = self.prompt.render_chat(topic=topic, message=message)
        try:
            reply = await self._generate_text(
                prompt,
                system_instruction=self.system_instruction(profile),
                history=prior,
            )
        except ContentGenerationError:
            raise
        except Exception as exc:
            raise ContentGenerationError(f"chat request failed: {exc}") from exc
        if not reply or not reply.strip():
            return EMPTY_CHAT_REPLY
        return reply.strip()


class GeminiContentProvider(ContentProvider):
    """Calls the Gemini ``generateContent`` REST endpoint through httpx."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        prompt: Optional[MasterPrompt] = None,
    ) -> None:
        super().__init__(prompt=prompt)
        self.api_key = config.GEMINI_API_KEY if api_key is None else api_key
        self.model = model or config.MODEL_ID
        self.base_url = (base_url or config.GEMINI_BASE_URL).rstrip("/")
        self.timeout = config.LLM_TIMEOUT if timeout is None else float(timeout)
        self.max_retries = config.LLM_MAX_RETRIES if max_retries is None else int(max_retries)
        self.retry_backoff = (
            config.LLM_RETRY_BACKOFF if retry_backoff is None else float(retry_backoff)
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def _generate_json(
        self,
        prompt: str,
        *,
        system_instruction: str,
        schema: Dict[str, Any],
        temperature: float,
    ) -> str:
        body = self._build_body(
            prompt,
            system_instruction=system_instruction,
            history=(),
            generation_config={
                "responseMimeType": "application/json",
                "responseSchema": schema,
                "temperature": temperature,
            },
        )
        return await self._post("json", body)

    async def _generate_text(
        self,
        prompt: str,
        *,
        system_instruction: str,
        history: Sequence[ChatMessage],
    ) -> str:
        body = self._build_body(
            prompt,
            system_instruction=system_instruction,
            history=history,
            generation_config=None,
        )
        return await self._post("chat", body)

    @staticmethod
    def _build_body(
        prompt: str,
        *,
        system_instruction: str,
        history: Sequence[ChatMessage],
        generation_config: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        turns = list(history)
        # Conversations sent to Gemini must open with a user turn.
        while turns and turns[0].role != "user":
            turns.pop(0)
        contents = [{"role": turn.role, "parts": [{"text": turn.text}]} for turn in turns]
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        body: Dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "contents": contents,
        }
        if generation_config:
            body["generationConfig"] = generation_config
        return body

    @staticmethod
    def _extract_text(data: Any) -> str:
        if not isinstance(data, dict):
            raise ValueError("Gemini response is not a JSON object")
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        content = candidates[0].get("content") or {}
        parts = content.get("parts") or []
        return "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))

    async def _post(self, kind: str, body: Dict[str, Any]) -> str:
        if not self.api_key:
            raise ContentGenerationError("GEMINI_API_KEY is not configured")

        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        request_id = uuid.uuid4().hex
        last_exception: Optional[Exception] = None
        attempt_count = max(0, self.max_retries) + 1

        for attempt_index in range(attempt_count):
            attempt_number = attempt_index + 1
            start_time = perf_counter()
            client = httpx.AsyncClient(timeout=self.timeout)
            retryable = True
            try:
                response = await client.post(self.endpoint, json=body, headers=headers)
                response.raise_for_status()
                text = self._extract_text(response.json())
                latency_ms = int((perf_counter() - start_time) * 1000)
                _json_log(
                    "llm_call",
                    {
                        "request_id": request_id,
                        "kind": kind,
                        "model": self.model,
                        "latency_ms": latency_ms,
                        "attempt": attempt_number,
                        "outcome": "ok",
                    },
                )
                return text
            except httpx.HTTPStatusError as exc:
                status = getattr(getattr(exc, "response", None), "status_code", None)
                retryable = status is None or status >= 500 or status == 429
                _json_log(
                    "llm_call",
                    {
                        "request_id": request_id,
                        "kind": kind,
                        "model": self.model,
                        "latency_ms": int((perf_counter() - start_time) * 1000),
                        "attempt": attempt_number,
                        "outcome": "http_error",
                        "status": status,
                    },
                )
                logger.warning(
                    "Gemini HTTP error %s for model %s (attempt %d/%d): %s",
                    status,
                    self.model,
                    attempt_number,
                    attempt_count,
                    exc,
                )
                last_exception = exc
            except (httpx.TimeoutException, httpx.RequestError, ValueError, TypeError, KeyError) as exc:
                _json_log(
                    "llm_call",
                    {
                        "request_id": request_id,
                        "kind": kind,
                        "model": self.model,
                        "latency_ms": int((perf_counter() - start_time) * 1000),
                        "attempt": attempt_number,
                        "outcome": "error",
                        "error": type(exc).__name__,
                    },
                )
                logger.warning(
                    "Gemini request failed for model %s (attempt %d/%d): %s",
                    self.model,
                    attempt_number,
                    attempt_count,
                    exc,
                )
                last_exception = exc
            finally:
                await client.aclose()

            if not retryable:
                break
            if attempt_index < attempt_count - 1:
                await asyncio.sleep(self.retry_backoff * (2 ** attempt_index))

        raise ContentGenerationError(
            f"Gemini {kind} request failed for model {self.model}"
        ) from last_exception


__all__ = [
    "ACTION_CONTENT_SCHEMA",
    "ContentFormatError",
    "ContentGenerationError",
    "ContentProvider",
    "EMPTY_CHAT_REPLY",
    "FALLBACK_QUESTION",
    "GeminiContentProvider",
    "QUESTION_ARRAY_SCHEMA",
]
