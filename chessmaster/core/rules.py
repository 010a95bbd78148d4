"""
The rules engine adapter.

This module acts as an Anti-Corruption Layer over `python-chess`: the lobby
registry and the analysis pipeline only ever talk to `RulesEngine`, which
translates between our domain types (`Side`, `TerminalStatus`, `AppliedMove`,
`RecordedGame`) and the library's board and move objects.
"""
import io
from typing import Optional, Tuple

import chess
import chess.pgn
import structlog

from chessmaster.core.chess_utils import side_from_color
from chessmaster.exceptions import IllegalMoveError, PgnParsingError
from chessmaster.types import AppliedMove, FEN, RecordedGame, Side, TerminalStatus

logger = structlog.get_logger(__name__)

DRAW_RESULT = "1/2-1/2"

_DRAW_REASONS = {
    TerminalStatus.STALEMATE: "stalemate",
    TerminalStatus.THREEFOLD_REPETITION: "threefold",
    TerminalStatus.INSUFFICIENT_MATERIAL: "insufficient_material",
    TerminalStatus.OTHER_DRAW: "draw",
}


def win_result_for(side: Side) -> str:
    return "1-0" if side is Side.WHITE else "0-1"


class RulesEngine:
    """Applies moves, reports side to move and terminal status, loads PGN."""

    def new_position(self, fen: Optional[FEN] = None) -> chess.Board:
        if fen is None:
            return chess.Board()
        try:
            return chess.Board(fen)
        except ValueError as e:
            raise IllegalMoveError(f"Invalid position: {fen}") from e

    def _parse_move(self, board: chess.Board, uci: Optional[str], san: Optional[str]) -> chess.Move:
        # Coordinate notation wins when both forms are supplied.
        if uci:
            move = chess.Move.from_uci(uci.strip())
            if not board.is_legal(move):
                raise chess.IllegalMoveError(f"illegal uci: {uci!r}")
            return move
        if san:
            return board.parse_san(san.strip())
        raise IllegalMoveError("A move needs either coordinate or SAN notation.")

    def apply_move(
        self, board: chess.Board, uci: Optional[str] = None, san: Optional[str] = None
    ) -> AppliedMove:
        """
        Applies a move to `board` in place.

        Raises:
            IllegalMoveError: If the move is malformed or illegal. The board
                is left exactly as it was.
        """
        try:
            move = self._parse_move(board, uci, san)
        except ValueError as e:
            # InvalidMoveError, IllegalMoveError and AmbiguousMoveError are all ValueErrors.
            raise IllegalMoveError(f"Illegal move: {uci or san}", move_spec=uci or san) from e

        side = side_from_color(board.turn)
        fen_before = board.fen()
        san_text = board.san(move)
        board.push(move)
        return AppliedMove(
            uci=move.uci(), san=san_text, side=side,
            fen_before=fen_before, fen_after=board.fen(),
        )

    def side_to_move(self, board: chess.Board) -> Side:
        return side_from_color(board.turn)

    def terminal_status(self, board: chess.Board) -> TerminalStatus:
        """
        Reports whether the game on `board` is over.

        Must be called after the last move was pushed, so that a checkmate is
        attributed to the side that just moved.
        """
        if board.is_checkmate():
            return TerminalStatus.CHECKMATE
        if board.is_stalemate():
            return TerminalStatus.STALEMATE
        if board.is_repetition(3):
            return TerminalStatus.THREEFOLD_REPETITION
        if board.is_insufficient_material():
            return TerminalStatus.INSUFFICIENT_MATERIAL
        if board.is_fifty_moves() or board.is_fivefold_repetition() or board.is_seventyfive_moves():
            return TerminalStatus.OTHER_DRAW
        return TerminalStatus.NONE

    def outcome_for(self, status: TerminalStatus, mover: Side) -> Optional[Tuple[str, str]]:
        """
        Maps a terminal status onto a `(result, reason)` pair.

        Checkmate is a win for `mover`; every other terminal status is a draw.
        """
        if status is TerminalStatus.NONE:
            return None
        if status is TerminalStatus.CHECKMATE:
            return win_result_for(mover), "checkmate"
        return DRAW_RESULT, _DRAW_REASONS[status]

    def encode(self, board: chess.Board) -> FEN:
        return board.fen()

    def load_recorded_game(self, pgn_text: str) -> RecordedGame:
        """
        Loads a recorded game into its start position and ordered move list.

        Games starting from a custom position (`FEN` header) are honoured.

        Raises:
            PgnParsingError: If the text holds no game, or a move in it is
                malformed or illegal in sequence.
        """
        if not pgn_text or not pgn_text.strip():
            raise PgnParsingError("PGN is required for analysis.")

        try:
            game = chess.pgn.read_game(io.StringIO(pgn_text))
        except (ValueError, KeyError) as e:
            raise PgnParsingError(f"Unable to parse PGN for analysis: {e}") from e

        if game is None:
            raise PgnParsingError("Unable to parse PGN for analysis.")
        if game.errors:
            logger.warning("Rejecting recorded game with errors.", error=str(game.errors[0]))
            raise PgnParsingError(f"Unable to parse PGN for analysis: {game.errors[0]}")

        board = game.board()
        moves = list(game.mainline_moves())
        return RecordedGame(start_fen=board.fen(), moves=moves, headers=dict(game.headers))
