import logging
import os

import pytest

from env_validation import ConfigurationError, get_env_bool, validate_environment


def test_leaves_db_path_to_db_module(monkeypatch):
    monkeypatch.delenv("DB_PATH", raising=False)

    validate_environment()

    assert "DB_PATH" not in os.environ


def test_rejects_invalid_urls(monkeypatch):
    monkeypatch.setenv("SUBMIT_URL", "ftp://collector.local")

    with pytest.raises(ConfigurationError):
        validate_environment()


@pytest.mark.parametrize("name, value", [("LLM_TIMEOUT", "soon"), ("SUBMIT_MAX_ATTEMPTS", "-1")])
def test_rejects_invalid_numbers(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        validate_environment()


def test_warns_about_missing_optional_vars(monkeypatch, caplog):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    with caplog.at_level(logging.WARNING, logger="env_validation"):
        validate_environment()

    assert any("GEMINI_API_KEY" in record.getMessage() for record in caplog.records)


@pytest.mark.parametrize(
    "raw, expected",
    [("1", True), ("yes", True), ("ON", True), ("0", False), ("off", False)],
)
def test_get_env_bool(monkeypatch, raw, expected):
    monkeypatch.setenv("STORE_QUIZ_RESULTS", raw)

    assert get_env_bool("STORE_QUIZ_RESULTS") is expected


def test_get_env_bool_default(monkeypatch):
    monkeypatch.delenv("STORE_QUIZ_RESULTS", raising=False)

    assert get_env_bool("STORE_QUIZ_RESULTS", True) is True
