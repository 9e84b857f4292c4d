"""Mastery-driven difficulty selection for quiz generation."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from engines.bands import MasteryBand, band_for


class DifficultyTier(str, Enum):
    WEAK = "Weak"
    AVERAGE = "Average"
    STRONG = "Strong"

    @property
    def description(self) -> str:
        """Phrase used when asking the provider for questions at this tier."""
        return _TIER_DESCRIPTIONS[self]


_TIER_DESCRIPTIONS = {
    DifficultyTier.WEAK: "beginner (focus on basics)",
    DifficultyTier.AVERAGE: "intermediate (application based)",
    DifficultyTier.STRONG: "advanced (critical thinking)",
}

_TIER_BY_BAND = {
    MasteryBand.LOW: DifficultyTier.WEAK,
    MasteryBand.MID: DifficultyTier.AVERAGE,
    MasteryBand.HIGH: DifficultyTier.STRONG,
}

# First exposure to a topic is pitched optimistically.
DEFAULT_TIER = DifficultyTier.AVERAGE


def select_difficulty(previous_score: Optional[int]) -> DifficultyTier:
    """Pick the quiz tier from the last recorded score for a topic."""

    if previous_score is None:
        return DEFAULT_TIER
    return _TIER_BY_BAND[band_for(previous_score)]


__all__ = ["DEFAULT_TIER", "DifficultyTier", "select_difficulty"]
