# app.py — adaptive tutor session API
# - One SessionOrchestrator per session id, persisted in a SQLite key-value namespace
# - Content generation delegated to the configured ContentProvider (Gemini by default)

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import config
import db
from content_provider import ContentProvider, GeminiContentProvider
from env_validation import get_env_bool
from orchestrator import InvalidTransitionError, SessionOrchestrator
from schemas import SessionSnapshot, StudentProfile
from session_store import SessionPersistence
from telemetry import TelemetryEmitter

logger = logging.getLogger(__name__)

# Least recently used first; idle sessions beyond MAX_SESSIONS are evicted.
_SESSIONS: Dict[str, SessionOrchestrator] = {}
_provider: Optional[ContentProvider] = None


@asynccontextmanager
async def _lifespan(_: FastAPI):
    logging.basicConfig(level=config.LOG_LEVEL.upper())
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info(
            "Tutor API ready (model=%s, prompt variant=%s)", config.MODEL_ID, config.PROMPT_VARIANT
        )
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    yield
    pending = list(_SESSIONS.values())
    if pending:
        await asyncio.gather(*(session.drain() for session in pending), return_exceptions=True)


app = FastAPI(title="Adaptive Tutor", version="1.0.0", lifespan=_lifespan)


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition(_: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def get_provider() -> ContentProvider:
    global _provider
    if _provider is None:
        _provider = GeminiContentProvider()
    return _provider


def get_session(session_id: str) -> SessionOrchestrator:
    session = _SESSIONS.pop(session_id, None)
    if session is None:
        persistence = SessionPersistence(db.SQLiteKeyValueStore(f"session:{session_id}"))
        telemetry = TelemetryEmitter(store_locally=get_env_bool("STORE_QUIZ_RESULTS", True))
        session = SessionOrchestrator(get_provider(), persistence, telemetry=telemetry)
        logger.info("Session %s started in %s", session_id, session.current_view.value)
    _SESSIONS[session_id] = session
    _evict_idle_sessions(keep=session_id)
    return session


def _evict_idle_sessions(keep: str) -> None:
    excess = len(_SESSIONS) - config.MAX_SESSIONS
    if excess <= 0:
        return
    for session_id in [sid for sid, s in _SESSIONS.items() if sid != keep and s.is_idle][:excess]:
        del _SESSIONS[session_id]
        logger.debug("Evicted idle session %s", session_id)


class DiagnosticBody(BaseModel):
    answers: List[Optional[int]] = Field(default_factory=list)


class TopicBody(BaseModel):
    subject: str = ""
    topic: str = Field(min_length=1)


class QuizBody(BaseModel):
    answers: Optional[Union[List[Optional[int]], Dict[str, Optional[int]]]] = None
    score: Optional[int] = Field(default=None, ge=0, le=100)


class ChatBody(BaseModel):
    message: str


@app.get("/subjects")
def subjects():
    return config.AVAILABLE_SUBJECTS


@app.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def session_state(session_id: str):
    return get_session(session_id).snapshot()


@app.get("/sessions/{session_id}/progress")
async def session_progress(session_id: str):
    return get_session(session_id).progress_by_subject()


@app.post("/sessions/{session_id}/profile", response_model=SessionSnapshot)
async def submit_profile(session_id: str, body: StudentProfile):
    session = get_session(session_id)
    await session.submit_profile(body)
    return session.snapshot()


@app.post("/sessions/{session_id}/diagnostic", response_model=SessionSnapshot)
async def submit_diagnostic(session_id: str, body: DiagnosticBody):
    session = get_session(session_id)
    session.submit_diagnostic(body.answers)
    return session.snapshot()


@app.post("/sessions/{session_id}/topic", response_model=SessionSnapshot)
async def select_topic(session_id: str, body: TopicBody):
    session = get_session(session_id)
    try:
        await session.select_topic(body.subject, body.topic)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return session.snapshot()


@app.post("/sessions/{session_id}/quiz", response_model=SessionSnapshot)
async def complete_quiz(session_id: str, body: QuizBody):
    if (body.answers is None) == (body.score is None):
        raise HTTPException(status_code=422, detail="Provide exactly one of 'answers' or 'score'.")
    session = get_session(session_id)
    try:
        if body.score is not None:
            await session.complete_quiz(body.score)
        else:
            await session.submit_quiz_answers(body.answers)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return session.snapshot()


@app.post("/sessions/{session_id}/new-topic", response_model=SessionSnapshot)
async def request_new_topic(session_id: str):
    session = get_session(session_id)
    session.request_new_topic()
    return session.snapshot()


@app.post("/sessions/{session_id}/chat", response_model=SessionSnapshot)
async def chat(session_id: str, body: ChatBody):
    session = get_session(session_id)
    await session.send_chat_message(body.message)
    return session.snapshot()
