import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from content_provider import ContentProvider  # noqa: E402


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    db.init()
    return str(db_path)


@pytest.fixture
def anyio_backend():
    """Force anyio to use asyncio backend for async tests."""

    return "asyncio"


class ScriptedProvider(ContentProvider):
    """ContentProvider whose transport replays queued raw responses.

    Queue entries are either raw text (returned as the completion) or an
    exception instance (raised from the transport). Every request is recorded
    in ``calls``.
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.json_responses: List[Any] = []
        self.text_responses: List[Any] = []
        self.calls: List[Dict[str, Any]] = []

    async def _generate_json(self, prompt, *, system_instruction, schema, temperature):
        self.calls.append(
            {
                "kind": "json",
                "prompt": prompt,
                "system_instruction": system_instruction,
                "schema": schema,
                "temperature": temperature,
            }
        )
        return self._next(self.json_responses)

    async def _generate_text(self, prompt, *, system_instruction, history):
        self.calls.append(
            {
                "kind": "text",
                "prompt": prompt,
                "system_instruction": system_instruction,
                "history": list(history),
            }
        )
        return self._next(self.text_responses)

    @staticmethod
    def _next(queue: List[Any]) -> Optional[str]:
        if not queue:
            raise AssertionError("ScriptedProvider has no queued responses")
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def scripted_provider():
    return ScriptedProvider()
