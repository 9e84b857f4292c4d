"""Fire-and-forget emission of completed quiz results.

Each result is written as a JSON log line, optionally appended to the local
``quiz_results`` table and, when a submission endpoint is configured, posted to
it in the background with retry/backoff. Submission problems are logged and
never reach the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import requests

import config
import db
from schemas import QuizResultRecord

LOGGER = logging.getLogger("tutor.telemetry")


@runtime_checkable
class QuizResultSink(Protocol):
    def submit(self, record: QuizResultRecord) -> None: ...


async def _forward_record_with_retry(
    payload: Dict[str, Any],
    *,
    submit_url: str,
    headers: Dict[str, str],
    timeout: float = 5.0,
    max_attempts: int = 3,
    initial_delay: float = 0.5,
) -> bool:
    """Post ``payload`` with exponential backoff; ``True`` once accepted."""

    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            response = await asyncio.to_thread(
                requests.post,
                submit_url,
                json=payload,
                headers=headers,
                timeout=timeout,
            )
            if response.status_code < 400:
                return True
            if response.status_code < 500:
                LOGGER.warning(
                    "Quiz result rejected with status %s; not retrying", response.status_code
                )
                return False
            LOGGER.warning(
                "Submission endpoint responded with status %s on attempt %s",
                response.status_code,
                attempt,
            )
        except requests.RequestException as exc:
            LOGGER.warning("Failed to forward quiz result (attempt %s): %s", attempt, exc)
        if attempt == max_attempts:
            break
        await asyncio.sleep(delay)
        delay *= 2
    LOGGER.error("Giving up on quiz result after %s attempts", max_attempts)
    return False


def _schedule_forward(
    payload: Dict[str, Any],
    *,
    submit_url: str,
    headers: Dict[str, str],
    timeout: float,
    max_attempts: int,
) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    coro = _forward_record_with_retry(
        payload,
        submit_url=submit_url,
        headers=headers,
        timeout=timeout,
        max_attempts=max_attempts,
    )

    if loop and loop.is_running():
        loop.create_task(coro)
    else:
        threading.Thread(target=lambda: asyncio.run(coro), daemon=True).start()


class TelemetryEmitter:
    """Default :class:`QuizResultSink` implementation."""

    def __init__(
        self,
        *,
        submit_url: Optional[str] = None,
        store_locally: bool = False,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.submit_url = config.SUBMIT_URL if submit_url is None else submit_url
        self.store_locally = store_locally
        self.timeout = config.SUBMIT_TIMEOUT if timeout is None else float(timeout)
        self.max_attempts = (
            config.SUBMIT_MAX_ATTEMPTS if max_attempts is None else max(1, int(max_attempts))
        )

    def submit(self, record: QuizResultRecord) -> None:
        payload = record.model_dump(by_alias=True)
        LOGGER.info(
            json.dumps({"event": "quiz_result", **payload}, ensure_ascii=False, sort_keys=True)
        )

        if self.store_locally:
            try:
                db.record_quiz_result(
                    record.student_id, record.topic, record.score, record.timestamp
                )
            except sqlite3.Error:
                LOGGER.exception("Failed to store quiz result locally")

        if not self.submit_url:
            return

        headers = {"Content-Type": "application/json"}
        try:
            _schedule_forward(
                payload,
                submit_url=self.submit_url,
                headers=headers,
                timeout=self.timeout,
                max_attempts=self.max_attempts,
            )
        except RuntimeError:
            LOGGER.exception("Could not schedule quiz result submission")


__all__ = ["QuizResultSink", "TelemetryEmitter"]
