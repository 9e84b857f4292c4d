"""Three-band partition of the 0–100 mastery scale.

Both the difficulty selector and the post-quiz planner read a score through
:func:`band_for`, so a learner who is quizzed at ``Weak`` difficulty is also
the learner who gets a ``REMEDIAL`` follow-up, and so on up the scale.
"""

from __future__ import annotations

from enum import Enum

REMEDIAL_THRESHOLD = 40
ADVANCE_THRESHOLD = 70

MIN_SCORE = 0
MAX_SCORE = 100


class MasteryBand(str, Enum):
    LOW = "low"
    MID = "mid"
    HIGH = "high"


def validate_score(score: object) -> int:
    """Return ``score`` if it is an integer percentage, else raise ``ValueError``."""

    if isinstance(score, bool) or not isinstance(score, int):
        raise ValueError(f"score must be an integer, got {type(score).__name__}")
    if not MIN_SCORE <= score <= MAX_SCORE:
        raise ValueError(f"score must be within [{MIN_SCORE}, {MAX_SCORE}], got {score}")
    return score


def band_for(score: int) -> MasteryBand:
    """Map a score to its band; thresholds are inclusive on the upper band."""

    validate_score(score)
    if score < REMEDIAL_THRESHOLD:
        return MasteryBand.LOW
    if score < ADVANCE_THRESHOLD:
        return MasteryBand.MID
    return MasteryBand.HIGH


__all__ = [
    "ADVANCE_THRESHOLD",
    "MAX_SCORE",
    "MIN_SCORE",
    "MasteryBand",
    "REMEDIAL_THRESHOLD",
    "band_for",
    "validate_score",
]
