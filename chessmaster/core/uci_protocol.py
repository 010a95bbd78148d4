"""
The UCI conversation for a single search, as an explicit state machine.

`UciSearchMachine` knows nothing about processes or pipes. It is advanced one
output line at a time via `feed()`, which returns the commands that must be
written back to the engine. This keeps the protocol logic fully deterministic
and lets tests drive it with canned engine output.

Stages, strictly ordered:

    handshake --(uciok)--> awaiting_ready --(readyok)--> searching --(bestmove)--> done
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import structlog

from chessmaster.core.chess_utils import clamp_int
from chessmaster.exceptions import EngineProtocolError
from chessmaster.types import EngineLine, Evaluation, FEN, ScoreKind, SearchRequest, SearchResult

logger = structlog.get_logger(__name__)

MIN_SKILL_LEVEL = 0
MAX_SKILL_LEVEL = 20


class SearchStage(str, Enum):
    HANDSHAKE = "handshake"
    AWAITING_READY = "awaiting_ready"
    SEARCHING = "searching"
    DONE = "done"


@dataclass
class InfoLine:
    """The fields of one `info` line that the search record cares about."""
    multipv: int = 1
    depth: Optional[int] = None
    seldepth: Optional[int] = None
    evaluation: Optional[Evaluation] = None
    bound: Optional[str] = None
    pv: List[str] = field(default_factory=list)

    @property
    def carries_line(self) -> bool:
        return self.evaluation is not None or bool(self.pv)


def _next_int(tokens: List[str], index: int) -> Optional[int]:
    if index >= len(tokens):
        return None
    try:
        return int(tokens[index])
    except ValueError:
        return None


def parse_info_line(line: str) -> InfoLine:
    # Examples:
    #   info depth 14 seldepth 20 multipv 2 score cp -23 nodes 123456 pv e2e4 e7e5
    #   info depth 9 score mate 3 lowerbound pv h5f7
    #   info string NNUE evaluation using nn-xyz.nnue enabled
    tokens = line.split()
    info = InfoLine()
    i = 1 if tokens and tokens[0] == "info" else 0
    while i < len(tokens):
        token = tokens[i]
        if token == "string":
            return InfoLine()
        if token == "pv":
            info.pv = tokens[i + 1:]
            break
        if token == "depth":
            info.depth = _next_int(tokens, i + 1)
            i += 2
        elif token == "seldepth":
            info.seldepth = _next_int(tokens, i + 1)
            i += 2
        elif token == "multipv":
            index = _next_int(tokens, i + 1)
            if index is not None and index > 0:
                info.multipv = index
            i += 2
        elif token == "score":
            kind = tokens[i + 1] if i + 1 < len(tokens) else ""
            value = _next_int(tokens, i + 2)
            if kind in (ScoreKind.CENTIPAWNS.value, ScoreKind.MATE.value) and value is not None:
                info.evaluation = Evaluation(kind=ScoreKind(kind), value=value)
            i += 3
        elif token in ("lowerbound", "upperbound"):
            info.bound = token
            i += 1
        else:
            i += 1
    return info


def build_position_command(fen: Optional[FEN], moves: Optional[List[str]] = None) -> str:
    """Builds `position ...`, dropping blank entries from the replay list."""
    base = f"position fen {fen}" if fen else "position startpos"
    replay = [str(move).strip() for move in (moves or []) if move and str(move).strip()]
    if not replay:
        return base
    return f"{base} moves {' '.join(replay)}"


def build_go_command(depth: Optional[int], movetime_ms: Optional[int], default_movetime_ms: int) -> str:
    """Depth-bounded when a positive depth is given, otherwise time-bounded."""
    if depth is not None and depth > 0:
        return f"go depth {int(depth)}"
    if movetime_ms is not None and movetime_ms > 0:
        return f"go movetime {int(movetime_ms)}"
    return f"go movetime {default_movetime_ms}"


@dataclass
class _LineRecord:
    depth: Optional[int] = None
    evaluation: Optional[Evaluation] = None
    pv: List[str] = field(default_factory=list)


class UciSearchMachine:
    """
    Drives one `uci` → `isready` → `position`/`go` → `bestmove` exchange.

    Usage:
        machine = UciSearchMachine(request, default_skill_level=10, ...)
        send(machine.start())
        for line in engine_output:
            send(machine.feed(line))
            if machine.done:
                break
        result = machine.result()
    """

    def __init__(
        self,
        request: SearchRequest,
        default_skill_level: int = 10,
        default_movetime_ms: int = 1000,
        max_multipv: int = 10,
    ):
        self._request = request
        self._default_movetime_ms = default_movetime_ms
        self.skill_level = clamp_int(request.skill_level, MIN_SKILL_LEVEL, MAX_SKILL_LEVEL, default_skill_level)
        self.multipv = clamp_int(request.multipv, 1, max_multipv, 1)
        self.stage = SearchStage.HANDSHAKE
        self._records: Dict[int, _LineRecord] = {}
        self._best_move: Optional[str] = None
        self._ponder: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.stage is SearchStage.DONE

    def start(self) -> List[str]:
        return ["uci"]

    def feed(self, raw_line: str) -> List[str]:
        """Consumes one output line and returns the commands to send in response."""
        line = raw_line.strip()
        if not line:
            return []

        if self.stage is SearchStage.HANDSHAKE:
            if line.endswith("uciok"):
                return self._on_uciok()
            return []

        if self.stage is SearchStage.AWAITING_READY:
            if line.endswith("readyok"):
                return self._on_readyok()
            return []

        if self.stage is SearchStage.SEARCHING:
            if line.startswith("info "):
                self._on_info(line)
            elif line.startswith("bestmove"):
                self._on_bestmove(line)
            return []

        return []

    def _on_uciok(self) -> List[str]:
        commands = [f"setoption name Skill Level value {self.skill_level}"]
        if self.multipv > 1:
            commands.append(f"setoption name MultiPV value {self.multipv}")
        commands.append("isready")
        self.stage = SearchStage.AWAITING_READY
        return commands

    def _on_readyok(self) -> List[str]:
        request = self._request
        self.stage = SearchStage.SEARCHING
        return [
            build_position_command(request.fen, request.moves),
            build_go_command(request.depth, request.movetime_ms, self._default_movetime_ms),
        ]

    def _on_info(self, line: str) -> None:
        info = parse_info_line(line)
        # Progress lines (currmove, hashfull, ...) do not describe a line.
        if not info.carries_line:
            return
        record = self._records.setdefault(info.multipv, _LineRecord())
        if info.depth is not None:
            record.depth = info.depth
        if info.evaluation is not None:
            record.evaluation = info.evaluation
        if info.pv:
            record.pv = list(info.pv)

    def _on_bestmove(self, line: str) -> None:
        parts = line.split()
        if len(parts) < 2:
            raise EngineProtocolError(f"Malformed bestmove line: {line!r}")
        self._best_move = None if parts[1] == "(none)" else parts[1]
        if len(parts) >= 4 and parts[2] == "ponder":
            self._ponder = parts[3]
        self.stage = SearchStage.DONE

    def result(self) -> SearchResult:
        if not self.done:
            raise EngineProtocolError(f"No result available in stage '{self.stage.value}'.")

        lines = [
            EngineLine(index=index, depth=record.depth, evaluation=record.evaluation, pv=list(record.pv))
            for index, record in sorted(self._records.items())
        ][: self.multipv]
        primary = self._records.get(1)
        if primary is None and lines:
            primary = self._records[lines[0].index]

        return SearchResult(
            best_move=self._best_move,
            ponder=self._ponder,
            evaluation=primary.evaluation if primary else None,
            depth=primary.depth if primary else None,
            pv=list(primary.pv) if primary else [],
            lines=lines,
        )
