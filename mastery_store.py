"""Per-topic mastery scores with write-through persistence."""

from __future__ import annotations

import logging
from typing import Dict, Iterator, Mapping, Optional, Sequence

from engines.bands import validate_score
from session_store import SessionPersistence

logger = logging.getLogger(__name__)

OTHER_SUBJECT = "Other"


class MasteryStore:
    """Topic → last quiz score (0–100). Last write wins; nothing is deleted."""

    def __init__(
        self,
        persistence: Optional[SessionPersistence] = None,
        initial: Optional[Mapping[str, object]] = None,
    ) -> None:
        self._persistence = persistence
        self._scores: Dict[str, int] = {}
        for topic, score in (initial or {}).items():
            try:
                self._scores[str(topic)] = validate_score(score)
            except ValueError:
                logger.warning("Dropping persisted mastery entry %r=%r", topic, score)

    @classmethod
    def load(cls, persistence: SessionPersistence) -> "MasteryStore":
        return cls(persistence, persistence.load().mastery)

    def get(self, topic: str) -> Optional[int]:
        return self._scores.get(topic)

    def record(self, topic: str, score: int) -> None:
        if not topic:
            raise ValueError("topic must be a non-empty string")
        self._scores[topic] = validate_score(score)
        if self._persistence is not None:
            self._persistence.save_mastery(self._scores)

    def as_dict(self) -> Dict[str, int]:
        return dict(self._scores)

    def progress_by_subject(
        self, catalog: Mapping[str, Sequence[str]]
    ) -> Dict[str, Dict[str, int]]:
        """Group recorded topics under their catalog subject.

        Subjects appear in catalog order and only when they have at least one
        recorded topic; topics missing from the catalog land under ``"Other"``.
        """

        grouped: Dict[str, Dict[str, int]] = {}
        known = set()
        for subject, topics in catalog.items():
            for topic in topics:
                known.add(topic)
                if topic in self._scores:
                    grouped.setdefault(subject, {})[topic] = self._scores[topic]
        for topic, score in self._scores.items():
            if topic not in known:
                grouped.setdefault(OTHER_SUBJECT, {})[topic] = score
        return grouped

    def __contains__(self, topic: object) -> bool:
        return topic in self._scores

    def __len__(self) -> int:
        return len(self._scores)

    def __iter__(self) -> Iterator[str]:
        return iter(self._scores)


__all__ = ["MasteryStore", "OTHER_SUBJECT"]
