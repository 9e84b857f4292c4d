"""Tests for the ContentProvider contract and the Gemini transport."""

from __future__ import annotations

import json
import logging
import types

import pytest

import content_provider as provider_module
from content_provider import (
    ACTION_CONTENT_SCHEMA,
    EMPTY_CHAT_REPLY,
    FALLBACK_QUESTION,
    QUESTION_ARRAY_SCHEMA,
    ContentGenerationError,
    GeminiContentProvider,
)
from engines.difficulty_manager import DifficultyTier
from schemas import ActionType, ChatMessage, StudentProfile


@pytest.fixture
def profile():
    return StudentProfile(id="s-1", name="Asha", class_level="6", subject="Mathematics")


def _questions_json(count: int = 2) -> str:
    return json.dumps(
        [
            {
                "id": f"q{i}",
                "text": f"Question {i}",
                "options": ["a", "b", "c", "d"],
                "correctOptionIndex": i % 4,
                "explanation": "Because.",
            }
            for i in range(count)
        ]
    )


# ---------------------------------------------------------------------------
# Contract behaviour (transport replaced by ScriptedProvider)
# ---------------------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_generate_quiz_uses_tier_description_and_schema(scripted_provider, profile):
    scripted_provider.json_responses.append("```json\n" + _questions_json(5) + "\n```")

    questions = await scripted_provider.generate_quiz(profile, "Fractions", DifficultyTier.WEAK)

    assert [q.id for q in questions] == ["q0", "q1", "q2", "q3", "q4"]
    call = scripted_provider.calls[0]
    assert "Topic: Fractions" in call["prompt"]
    assert "beginner (focus on basics)" in call["prompt"]
    assert call["schema"] is QUESTION_ARRAY_SCHEMA
    assert call["temperature"] == pytest.approx(0.3)
    assert "Student: Asha, Class: 6, Subject: Mathematics." in call["system_instruction"]


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "response",
    [ContentGenerationError("down"), RuntimeError("boom"), "[]", "not json", '{"a": 1}'],
)
async def test_generate_quiz_falls_back_on_any_failure(scripted_provider, profile, response, caplog):
    scripted_provider.json_responses.append(response)

    with caplog.at_level(logging.ERROR, logger="content_provider"):
        questions = await scripted_provider.generate_quiz(profile, "Algebra", DifficultyTier.AVERAGE)

    assert questions == [FALLBACK_QUESTION]
    assert questions[0].id == "err1"
    assert questions[0].options == ["Retry"]
    assert any("Quiz generation failed" in record.getMessage() for record in caplog.records)


@pytest.mark.anyio("asyncio")
async def test_generate_diagnostic_coerces_with_diagnostic_defaults(scripted_provider, profile):
    scripted_provider.json_responses.append(json.dumps([{"text": "Pick one", "options": "x"}]))

    questions = await scripted_provider.generate_diagnostic(profile)

    assert questions[0].id.startswith("d-")
    assert questions[0].options == ["Option A", "Option B"]
    assert questions[0].explanation == ""
    assert "Subject: Mathematics" in scripted_provider.calls[0]["prompt"]


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("response", [ValueError("transport"), "", "[]"])
async def test_generate_diagnostic_raises_on_failure(scripted_provider, profile, response):
    scripted_provider.json_responses.append(response)

    with pytest.raises(ContentGenerationError):
        await scripted_provider.generate_diagnostic(profile)


@pytest.mark.anyio("asyncio")
async def test_generate_action_content(scripted_provider, profile):
    scripted_provider.json_responses.append(
        json.dumps({"title": "Mango Maths", "content": "Share 12 mangoes among 4 friends."})
    )

    content = await scripted_provider.generate_action_content(profile, "Fractions", ActionType.REMEDIAL)

    assert content.title == "Mango Maths"
    assert content.description == "Review this topic."
    call = scripted_provider.calls[0]
    assert "Action Plan: REMEDIAL" in call["prompt"]
    assert call["schema"] is ACTION_CONTENT_SCHEMA
    assert call["temperature"] == pytest.approx(0.4)


@pytest.mark.anyio("asyncio")
async def test_generate_action_content_raises_without_content(scripted_provider, profile):
    scripted_provider.json_responses.append(json.dumps({"title": "Only a title"}))

    with pytest.raises(ContentGenerationError):
        await scripted_provider.generate_action_content(profile, "Light", ActionType.ADVANCE)


@pytest.mark.anyio("asyncio")
async def test_chat_drops_echoed_message_from_history(scripted_provider, profile):
    scripted_provider.text_responses.append("  Think of a cricket ball.  ")
    history = [
        ChatMessage(role="model", text="Namaste Asha!"),
        ChatMessage(role="user", text="What is force?"),
    ]

    reply = await scripted_provider.chat(profile, history, "What is force?", "Force & Motion")

    assert reply == "Think of a cricket ball."
    call = scripted_provider.calls[0]
    assert [m.text for m in call["history"]] == ["Namaste Asha!"]
    assert 'Student Question: "What is force?"' in call["prompt"]


@pytest.mark.anyio("asyncio")
async def test_chat_empty_reply_asks_to_rephrase(scripted_provider, profile):
    scripted_provider.text_responses.append("   ")

    reply = await scripted_provider.chat(profile, [], "hmm", "Light")

    assert reply == EMPTY_CHAT_REPLY


@pytest.mark.anyio("asyncio")
async def test_chat_failure_raises(scripted_provider, profile):
    scripted_provider.text_responses.append(ConnectionError("offline"))

    with pytest.raises(ContentGenerationError):
        await scripted_provider.chat(profile, [], "hello", "Light")


# ---------------------------------------------------------------------------
# Gemini transport (httpx replaced by a stub module)
# ---------------------------------------------------------------------------


@pytest.fixture
def gemini_stub(monkeypatch):
    """Patch the httpx client used by the Gemini provider with a controllable stub."""

    calls = []
    responses: list = []

    class _StubHTTPStatusError(Exception):
        def __init__(self, message: str, *, request=None, response=None):
            super().__init__(message)
            self.request = request
            self.response = response

    class _StubTimeoutError(Exception):
        pass

    class _StubRequestError(Exception):
        pass

    class _StubResponse:
        def __init__(self, status_code: int, payload):
            self.status_code = status_code
            self._payload = payload

        def raise_for_status(self):
            if self.status_code >= 400:
                raise _StubHTTPStatusError(f"HTTP {self.status_code}", response=self)

        def json(self):
            return self._payload

    class _StubAsyncClient:
        def __init__(self, *args, **kwargs):
            self.kwargs = kwargs

        async def post(self, url, json=None, headers=None):
            if not responses:
                raise AssertionError("Gemini stub has no queued responses")
            calls.append({"url": url, "json": json, "headers": headers, "client_kwargs": self.kwargs})
            item = responses.pop(0)
            if isinstance(item, Exception):
                raise item
            status_code, payload = item
            return _StubResponse(status_code, payload)

        async def aclose(self):
            return None

    stub_module = types.SimpleNamespace(
        AsyncClient=_StubAsyncClient,
        HTTPStatusError=_StubHTTPStatusError,
        TimeoutException=_StubTimeoutError,
        RequestError=_StubRequestError,
    )
    monkeypatch.setattr(provider_module, "httpx", stub_module)

    return {"responses": responses, "calls": calls, "module": stub_module}


def _candidate(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def _gemini(**kwargs) -> GeminiContentProvider:
    options = {
        "api_key": "test-key",
        "model": "test-model",
        "base_url": "https://gemini.invalid/v1beta",
        "timeout": 5,
        "max_retries": 0,
        "retry_backoff": 0,
    }
    options.update(kwargs)
    return GeminiContentProvider(**options)


@pytest.mark.anyio("asyncio")
async def test_gemini_quiz_request_shape(gemini_stub, profile, caplog):
    gemini_stub["responses"].append((200, _candidate(_questions_json(3))))

    with caplog.at_level(logging.INFO, logger="tutor.llm"):
        questions = await _gemini().generate_quiz(profile, "Geometry", DifficultyTier.STRONG)

    assert len(questions) == 3
    call = gemini_stub["calls"][0]
    assert call["url"] == "https://gemini.invalid/v1beta/models/test-model:generateContent"
    assert call["headers"]["x-goog-api-key"] == "test-key"
    assert call["client_kwargs"]["timeout"] == 5
    body = call["json"]
    assert body["generationConfig"]["responseMimeType"] == "application/json"
    assert body["generationConfig"]["responseSchema"] == QUESTION_ARRAY_SCHEMA
    assert body["generationConfig"]["temperature"] == pytest.approx(0.3)
    assert body["contents"][-1]["role"] == "user"
    assert "advanced (critical thinking)" in body["contents"][-1]["parts"][0]["text"]
    assert "Asha" in body["systemInstruction"]["parts"][0]["text"]

    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "tutor.llm"]
    assert events and events[0]["event"] == "llm_call"
    assert events[0]["outcome"] == "ok"
    assert events[0]["kind"] == "json"


@pytest.mark.anyio("asyncio")
async def test_gemini_retries_server_errors(gemini_stub, profile):
    gemini_stub["responses"].extend(
        [
            (503, {"error": "unavailable"}),
            (200, _candidate(json.dumps({"title": "T", "description": "D", "content": "C"}))),
        ]
    )

    content = await _gemini(max_retries=1).generate_action_content(
        profile, "Matter", ActionType.PRACTICE
    )

    assert content.content == "C"
    assert len(gemini_stub["calls"]) == 2


@pytest.mark.anyio("asyncio")
async def test_gemini_does_not_retry_client_errors(gemini_stub, profile):
    gemini_stub["responses"].extend([(400, {"error": "bad"}), (200, _candidate("unused"))])

    with pytest.raises(ContentGenerationError):
        await _gemini(max_retries=2).generate_action_content(profile, "Matter", ActionType.PRACTICE)

    assert len(gemini_stub["calls"]) == 1


@pytest.mark.anyio("asyncio")
async def test_gemini_transport_errors_exhaust_retries(gemini_stub, profile):
    timeout_error = gemini_stub["module"].TimeoutException("slow")
    gemini_stub["responses"].extend([timeout_error, timeout_error])

    with pytest.raises(ContentGenerationError):
        await _gemini(max_retries=1).generate_diagnostic(profile)

    assert len(gemini_stub["calls"]) == 2
    assert not gemini_stub["responses"]


@pytest.mark.anyio("asyncio")
async def test_gemini_missing_key_fails_at_call_time(gemini_stub, profile):
    provider = _gemini(api_key="")

    with pytest.raises(ContentGenerationError):
        await provider.chat(profile, [], "hello", "Light")

    assert gemini_stub["calls"] == []


@pytest.mark.anyio("asyncio")
async def test_gemini_chat_sends_history_starting_with_user(gemini_stub, profile):
    gemini_stub["responses"].append((200, {"candidates": []}))
    history = [
        ChatMessage(role="model", text="Namaste Asha!"),
        ChatMessage(role="user", text="first"),
        ChatMessage(role="model", text="answer"),
        ChatMessage(role="user", text="second"),
    ]

    reply = await _gemini().chat(profile, history, "second", "Algebra")

    assert reply == EMPTY_CHAT_REPLY
    body = gemini_stub["calls"][0]["json"]
    assert [turn["role"] for turn in body["contents"]] == ["user", "model", "user"]
    assert body["contents"][0]["parts"][0]["text"] == "first"
    assert "generationConfig" not in body
