"""Environment-driven settings shared by the tutor core and the HTTP surface."""

from __future__ import annotations

import logging
import os
from typing import Dict, List

logger = logging.getLogger(__name__)


def _safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid float for %s=%r; using %s", env_name, raw, default)
        return default


def _safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for %s=%r; using %s", env_name, raw, default)
        return default


# --------- Content provider (Gemini) ---------
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", os.getenv("API_KEY", "")).strip()
MODEL_ID = os.getenv("MODEL_ID", "gemini-3-flash-preview").strip()
GEMINI_BASE_URL = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
).rstrip("/")
LLM_TIMEOUT = _safe_float("LLM_TIMEOUT", 60.0)
LLM_MAX_RETRIES = _safe_int("LLM_MAX_RETRIES", 1)
LLM_RETRY_BACKOFF = _safe_float("LLM_RETRY_BACKOFF", 0.5)
PROMPT_VARIANT = os.getenv("PROMPT_VARIANT", "rural_india")

# --------- Persistence & telemetry ---------
SUBMIT_URL = os.getenv("SUBMIT_URL", "").strip()
SUBMIT_TIMEOUT = _safe_float("SUBMIT_TIMEOUT", 5.0)
SUBMIT_MAX_ATTEMPTS = _safe_int("SUBMIT_MAX_ATTEMPTS", 3)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# --------- Session constants ---------
QUESTIONS_PER_QUIZ = 5
QUESTIONS_PER_DIAGNOSTIC = 5
MAX_SESSIONS = _safe_int("MAX_SESSIONS", 256)

AVAILABLE_SUBJECTS: Dict[str, List[str]] = {
    "Mathematics": ["Number System", "Fractions", "Algebra", "Geometry"],
    "Science": ["Living World", "Matter", "Force & Motion", "Light"],
    "English": ["Grammar", "Vocabulary", "Reading Comprehension", "Writing"],
}
