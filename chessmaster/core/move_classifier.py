"""
Contains the severity classifier used by the game analysis pipeline.

A played move is compared against the best line the engine found before the
move. The centipawn difference between the two is mapped onto one of three
ascending tiers; the highest tier whose threshold is met wins.
"""
from typing import List, Optional, Tuple, TYPE_CHECKING

from chessmaster.types import Severity

if TYPE_CHECKING:
    from chessmaster.config.settings import SeverityThresholdsModel


def compute_delta(best_score_cp: Optional[int], actual_score_cp: Optional[int]) -> Optional[int]:
    """The cost of the played move: best achievable minus actually reached."""
    if best_score_cp is None or actual_score_cp is None:
        return None
    return best_score_cp - actual_score_cp


class MoveClassifier:
    """A stateless classifier mapping centipawn deltas onto severity tiers."""

    def __init__(self, thresholds: "SeverityThresholdsModel"):
        # Highest tier first so the first match is the most severe one.
        self._tiers: List[Tuple[Severity, int]] = [
            (Severity.BLUNDER, thresholds.blunder),
            (Severity.MISTAKE, thresholds.mistake),
            (Severity.INACCURACY, thresholds.inaccuracy),
        ]

    def classify_delta(self, delta_cp: Optional[int]) -> Optional[Severity]:
        """
        Classifies a delta by its magnitude.

        Returns None when the delta is unknown or below the lowest threshold.
        """
        if delta_cp is None:
            return None
        magnitude = abs(delta_cp)
        for severity, threshold in self._tiers:
            if magnitude >= threshold:
                return severity
        return None
