"""
Provides a collection of pure, stateless functions for chess-related calculations.

This module acts as the "math library" for the chess domain. It has no
dependencies on other parts of this application except for the data contracts
defined in `types.py`. Its functions are deterministic and form the building
blocks of the engine adapter and the analysis pipeline.
"""

from typing import Final, Optional

import chess

from chessmaster.types import Evaluation, ScoreKind, Side

# Mate scores live on a scale that dominates any plausible centipawn value.
MATE_SCORE_BASE: Final[int] = 100_000
MATE_DISTANCE_STEP: Final[int] = 1_000
MAX_MATE_DISTANCE: Final[int] = 100


def evaluation_to_centipawns(evaluation: Optional[Evaluation]) -> Optional[int]:
    """
    Converts an engine evaluation into a single centipawn scale.

    A forced mate in N becomes `sign(N) * (100000 - min(|N|, 100) * 1000)`, so
    closer mates have a larger magnitude and every mate outranks every
    centipawn score of the same sign. Mate 0 (the side to move is already
    mated) has no meaningful score and converts to None.
    """
    if evaluation is None:
        return None

    if evaluation.kind is ScoreKind.CENTIPAWNS:
        return int(evaluation.value)

    if evaluation.value == 0:
        return None
    sign = 1 if evaluation.value > 0 else -1
    distance = min(abs(evaluation.value), MAX_MATE_DISTANCE)
    return sign * (MATE_SCORE_BASE - distance * MATE_DISTANCE_STEP)


def side_from_color(color: chess.Color) -> Side:
    return Side.WHITE if color == chess.WHITE else Side.BLACK


def color_from_side(side: Side) -> chess.Color:
    return chess.WHITE if side is Side.WHITE else chess.BLACK


def get_move_number(ply_index: int) -> int:
    """Calculates the 1-indexed move number from a 0-indexed ply."""
    return ply_index // 2 + 1


def white_perspective(score_cp: Optional[int], side_to_move: Side) -> Optional[int]:
    """Re-expresses a side-to-move score from White's point of view."""
    if score_cp is None:
        return None
    return score_cp if side_to_move is Side.WHITE else -score_cp


def clamp_int(value: object, lower: int, upper: int, default: int) -> int:
    """
    Coerces `value` to an int within [lower, upper].

    Non-numeric input (including None) falls back to `default`.
    """
    try:
        number = round(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return default
    return min(upper, max(lower, number))
