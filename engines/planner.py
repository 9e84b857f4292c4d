"""Post-quiz planner deciding the tutor's next pedagogical action."""

from __future__ import annotations

from engines.bands import MasteryBand, band_for
from schemas import ActionType

_ACTION_BY_BAND = {
    MasteryBand.LOW: ActionType.REMEDIAL,
    MasteryBand.MID: ActionType.PRACTICE,
    MasteryBand.HIGH: ActionType.ADVANCE,
}


def next_action(score: int) -> ActionType:
    """Return REMEDIAL, PRACTICE or ADVANCE for a completed quiz score."""
    return _ACTION_BY_BAND[band_for(score)]


__all__ = ["next_action"]
