"""Session persistence over an injected key-value collaborator."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from schemas import StudentProfile

logger = logging.getLogger(__name__)

PROFILE_KEY = "student_profile"
STUDENT_ID_KEY = "student_id"
MASTERY_KEY = "topic_mastery"


@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Dictionary-backed store, used for ephemeral sessions and tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._data


@dataclass
class PersistedSession:
    profile: Optional[StudentProfile] = None
    student_id: Optional[str] = None
    mastery: Dict[str, object] = field(default_factory=dict)


class SessionPersistence:
    """Reads and writes the three persisted session entries.

    ``load`` never raises on bad data: an unreadable profile is reported as
    absent and an unreadable mastery map as empty, so a damaged store sends
    the learner back through onboarding instead of crashing the session.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def load(self) -> PersistedSession:
        return PersistedSession(
            profile=self._load_profile(),
            student_id=self.store.get(STUDENT_ID_KEY) or None,
            mastery=self._load_mastery(),
        )

    def _load_profile(self) -> Optional[StudentProfile]:
        raw = self.store.get(PROFILE_KEY)
        if not raw:
            return None
        try:
            return StudentProfile.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable persisted profile", exc_info=True)
            return None

    def _load_mastery(self) -> Dict[str, object]:
        raw = self.store.get(MASTERY_KEY)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable persisted mastery record")
            return {}
        if not isinstance(data, dict):
            logger.warning("Persisted mastery record is not an object; ignoring it")
            return {}
        return data

    def save_profile(self, profile: StudentProfile) -> None:
        self.store.set(PROFILE_KEY, profile.model_dump_json(by_alias=True))
        if profile.id:
            self.store.set(STUDENT_ID_KEY, profile.id)

    def save_mastery(self, mastery: Dict[str, int]) -> None:
        self.store.set(MASTERY_KEY, json.dumps(mastery, ensure_ascii=False, sort_keys=True))

    def clear(self) -> None:
        for key in (PROFILE_KEY, STUDENT_ID_KEY, MASTERY_KEY):
            self.store.delete(key)


__all__ = [
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "MASTERY_KEY",
    "PROFILE_KEY",
    "PersistedSession",
    "STUDENT_ID_KEY",
    "SessionPersistence",
]
