"""
In-memory state of the online lobby: participants, lobbies and applied moves.

These are plain mutable dataclasses owned by `LobbyRegistry`; nothing outside
the registry should mutate them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import chess

from chessmaster.types import Connection, FEN, Side

__all__ = ["LobbyStatus", "MoveRecord", "Participant", "Lobby", "Side"]


class LobbyStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class MoveRecord:
    """One move accepted into a lobby."""
    participant_id: str
    uci: str
    san: str
    fen_after: FEN
    timestamp_ms: int

    def to_wire(self) -> Dict[str, Any]:
        return {
            "playerId": self.participant_id,
            "uci": self.uci,
            "san": self.san,
            "fenAfter": self.fen_after,
            "timestamp": self.timestamp_ms,
        }


@dataclass(slots=True)
class Participant:
    """
    A remote player, identified across reconnects by `participant_id`.

    `connection` is None while the player is detached.
    """
    participant_id: str
    connection: Optional[Connection]
    created_at: float
    last_seen_at: float
    account_id: Optional[str] = None
    display_name: Optional[str] = None
    game_id: Optional[str] = None
    side: Optional[Side] = None
    awaiting_pong: bool = False
    last_ping_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.display_name or f"Player-{self.participant_id[:4].upper()}"

    @property
    def is_attached(self) -> bool:
        return self.connection is not None

    def clear_seat(self) -> None:
        self.game_id = None
        self.side = None


@dataclass(slots=True)
class Lobby:
    """
    A two-seat game.

    Invariants kept by the registry: an empty guest seat means `WAITING`, and
    `ACTIVE` means both seats are filled.
    """
    game_id: str
    created_at: float
    host: Participant
    board: chess.Board
    guest: Optional[Participant] = None
    moves: List[MoveRecord] = field(default_factory=list)
    status: LobbyStatus = LobbyStatus.WAITING
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    result: Optional[str] = None
    reason: Optional[str] = None

    def seats(self) -> List[Participant]:
        return [p for p in (self.host, self.guest) if p is not None]

    def seat_for(self, side: Side) -> Optional[Participant]:
        for participant in self.seats():
            if participant.side is side:
                return participant
        return None

    def has_seat(self, participant: Participant) -> bool:
        return any(p.participant_id == participant.participant_id for p in self.seats())
