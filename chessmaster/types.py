# chessmaster/types.py
"""
A central module for shared data structures and service interfaces (Protocols).
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import (Any, Dict, List, Optional, Protocol, TYPE_CHECKING,
                    runtime_checkable, TypeAlias)

if TYPE_CHECKING:
    import chess

FEN: TypeAlias = str

class Side(str, Enum):
    WHITE = "white"; BLACK = "black"

    @property
    def opponent(self) -> "Side":
        return Side.BLACK if self is Side.WHITE else Side.WHITE

class ScoreKind(str, Enum):
    CENTIPAWNS = "cp"; MATE = "mate"

class Severity(str, Enum):
    INACCURACY = "inaccuracy"; MISTAKE = "mistake"; BLUNDER = "blunder"

class TerminalStatus(str, Enum):
    NONE = "none"; CHECKMATE = "checkmate"; STALEMATE = "stalemate"
    THREEFOLD_REPETITION = "threefold_repetition"
    INSUFFICIENT_MATERIAL = "insufficient_material"; OTHER_DRAW = "other_draw"

# --- ENGINE DATA CONTRACTS ---

@dataclass(frozen=True, slots=True)
class Evaluation:
    """A score as reported by the engine, from the side to move's perspective."""
    kind: ScoreKind; value: int

@dataclass(frozen=True, slots=True)
class EngineLine:
    index: int; depth: Optional[int]; evaluation: Optional[Evaluation]; pv: List[str]

    @property
    def best_move(self) -> Optional[str]:
        return self.pv[0] if self.pv else None

@dataclass(frozen=True, slots=True)
class SearchRequest:
    """
    Input of one engine search call.

    `fen=None` means the standard starting position. `depth` takes precedence
    over `movetime_ms` when both are given.
    """
    fen: Optional[FEN] = None
    moves: List[str] = field(default_factory=list)
    depth: Optional[int] = None
    movetime_ms: Optional[int] = None
    skill_level: Optional[int] = None
    multipv: int = 1
    timeout_ms: Optional[int] = None

@dataclass(frozen=True, slots=True)
class SearchResult:
    best_move: Optional[str]; ponder: Optional[str]; evaluation: Optional[Evaluation]
    depth: Optional[int]; pv: List[str]; lines: List[EngineLine]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

# --- RULES DATA CONTRACTS ---

@dataclass(frozen=True, slots=True)
class AppliedMove:
    uci: str; san: str; side: Side; fen_before: FEN; fen_after: FEN

@dataclass(frozen=True)
class RecordedGame:
    start_fen: FEN; moves: List["chess.Move"]; headers: Dict[str, str]

# --- ANALYSIS DATA CONTRACTS ---

@dataclass(frozen=True, slots=True)
class PlyEvaluation:
    ply: int; move_number: int; side: Side; san: str; uci: str
    fen_before: FEN; fen_after: FEN; depth: Optional[int]
    evaluation: Optional[Evaluation]; score_cp: Optional[int]
    score_cp_white: Optional[int]; principal_variation: List[str]

@dataclass(frozen=True, slots=True)
class MoveAnnotation:
    ply: int; move_number: int; side: Side; san: str; severity: Severity
    delta_cp: int; best_score_cp: int; actual_score_cp: int
    recommended_move: Optional[str]; recommended_line: List[str]

@dataclass(frozen=True, slots=True)
class AnalysisIssue:
    ply: int; context: str; message: str

@dataclass(frozen=True, slots=True)
class AnalysisMeta:
    total_plies: int; analyzed_plies: int; thresholds: Dict[str, int]
    depth: Optional[int]; movetime_ms: Optional[int]; final_fen: FEN

@dataclass
class GameAnalysis:
    meta: AnalysisMeta
    timeline: List[PlyEvaluation] = field(default_factory=list)
    annotations: List[MoveAnnotation] = field(default_factory=list)
    errors: List[AnalysisIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

# --- PERSISTENCE DATA CONTRACTS ---

@dataclass(frozen=True)
class CompletedGameRecord:
    """One finished online game, as stored for a single account."""
    id: str; account_id: str; game_id: str
    players: List[Dict[str, Any]]; moves: List[Dict[str, Any]]
    result: Optional[str]; reason: Optional[str]; winner: Optional[str]
    started_at: Optional[str]; finished_at: str
    metadata: Dict[str, Any] = field(default_factory=dict)


# --- PROTOCOLS: Abstract Interfaces for Services ---

@runtime_checkable
class EngineService(Protocol):
    """Position in, scored move out. Each call owns its engine process."""
    async def search(self, request: SearchRequest) -> SearchResult: ...

@runtime_checkable
class GameRecordStore(Protocol):
    """Narrow save/list/delete interface over completed-game records."""
    async def save(self, record: CompletedGameRecord) -> None: ...
    async def list_for_account(self, account_id: str, limit: int = 100, offset: int = 0) -> List[CompletedGameRecord]: ...
    async def delete_for_account(self, account_id: str) -> int: ...

@runtime_checkable
class Connection(Protocol):
    """
    A full-duplex client connection as seen by the lobby registry.

    `send` must not block: payloads are queued and written by the transport.
    """
    connection_id: str
    participant_id: Optional[str]

    @property
    def is_open(self) -> bool: ...
    def send(self, payload: Dict[str, Any]) -> None: ...
    def close(self) -> None: ...
