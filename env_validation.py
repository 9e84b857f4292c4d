"""Environment variable validation and management."""

import os
import logging

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when environment variables hold invalid values."""
    pass


_URL_VARS = ("GEMINI_BASE_URL", "SUBMIT_URL")

_NUMERIC_VARS = {
    "LLM_TIMEOUT": float,
    "LLM_RETRY_BACKOFF": float,
    "LLM_MAX_RETRIES": int,
    "SUBMIT_TIMEOUT": float,
    "SUBMIT_MAX_ATTEMPTS": int,
    "MAX_SESSIONS": int,
}

_OPTIONAL_VARS = {
    "GEMINI_API_KEY": "API key for the content-generation provider",
    "SUBMIT_URL": "Endpoint receiving quiz-result submissions",
    "PROMPT_VARIANT": "Active prompt variant name",
}


def validate_environment() -> None:
    """Validate the tutor's environment variables.

    Nothing is strictly required: the provider key is checked when a request
    is made, so a missing key degrades to the quiz fallback instead of
    blocking startup.

    Raises ConfigurationError if a set variable holds an invalid value.
    """
    for var in _URL_VARS:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise ConfigurationError(f"Invalid URL format for {var}: {value}")

    for var, caster in _NUMERIC_VARS.items():
        value = os.getenv(var)
        if not value:
            continue
        try:
            number = caster(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid numeric value for {var}: {value}") from exc
        if number < 0:
            raise ConfigurationError(f"{var} must not be negative: {value}")

    for var, description in _OPTIONAL_VARS.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}
