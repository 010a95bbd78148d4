"""
The lobby/session registry.

`LobbyRegistry` owns the participant and lobby directories and implements the
session state machine (waiting -> active -> completed). Every handler runs to
completion synchronously, including its broadcasts, which only enqueue on
the non-blocking `Connection.send`. Guard violations are raised as
`LobbyError` before any state is touched.
"""

import random
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

import structlog

from chessmaster.core.rules import win_result_for
from chessmaster.exceptions import IllegalMoveError, LobbyError
from chessmaster.lobby.messages import (CreateMessage, ErrorCode, HelloMessage,
                                        JoinMessage, LeaveMessage, MoveMessage,
                                        PongMessage, ResignMessage)
from chessmaster.lobby.models import (Lobby, LobbyStatus, MoveRecord,
                                      Participant)
from chessmaster.lobby.scheduler import TaskScheduler
from chessmaster.types import CompletedGameRecord, Connection, Side
from chessmaster.utils import metrics

if TYPE_CHECKING:
    from chessmaster.config.settings import LobbySettings
    from chessmaster.core.rules import RulesEngine

logger = structlog.get_logger(__name__)

CompletionSink = Callable[[CompletedGameRecord], None]


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _winner_for(result: Optional[str]) -> Optional[str]:
    if result == "1-0":
        return Side.WHITE.value
    if result == "0-1":
        return Side.BLACK.value
    return None


class LobbyRegistry:
    """An explicitly owned directory of participants and two-seat lobbies."""

    def __init__(
        self,
        rules: "RulesEngine",
        settings: "LobbySettings",
        scheduler: TaskScheduler,
        completion_sink: Optional[CompletionSink] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            rules: Rules engine adapter used to validate and apply moves.
            settings: Grace and retention windows, lobby id length.
            scheduler: Keyed scheduler for disconnect grace timers.
            completion_sink: Receives a record per account-linked seat when a
                game completes. Must not block.
            clock: Source of wall-clock seconds.
            rng: Random source for the colour coin toss.
        """
        self._rules = rules
        self._settings = settings
        self._scheduler = scheduler
        self._completion_sink = completion_sink
        self._clock = clock
        self._rng = rng or random.Random()
        self._participants: Dict[str, Participant] = {}
        self._lobbies: Dict[str, Lobby] = {}

    # --- Lookups ---

    def participant(self, participant_id: str) -> Optional[Participant]:
        return self._participants.get(participant_id)

    def participant_for(self, connection: Connection) -> Optional[Participant]:
        if not connection.participant_id:
            return None
        return self._participants.get(connection.participant_id)

    def lobby(self, game_id: str) -> Optional[Lobby]:
        return self._lobbies.get(game_id)

    @property
    def participant_count(self) -> int:
        return len(self._participants)

    @property
    def lobby_count(self) -> int:
        return len(self._lobbies)

    # --- Messaging helpers ---

    def _send(self, participant: Optional[Participant], payload: Dict[str, Any]) -> None:
        if participant is None or participant.connection is None or not participant.connection.is_open:
            return
        participant.connection.send(payload)

    def _broadcast(self, lobby: Lobby, payload: Dict[str, Any], exclude: Optional[str] = None) -> None:
        for participant in lobby.seats():
            if participant.participant_id != exclude:
                self._send(participant, payload)

    def _require_participant(self, connection: Connection) -> Participant:
        participant = self.participant_for(connection)
        if participant is None:
            raise LobbyError(ErrorCode.NOT_IDENTIFIED, "Send hello first")
        return participant

    def _turn(self, lobby: Lobby) -> str:
        return self._rules.side_to_move(lobby.board).value

    @staticmethod
    def _normalize_game_id(game_id: Optional[str]) -> str:
        return (game_id or "").strip().upper()

    def _new_game_id(self) -> str:
        while True:
            game_id = uuid.uuid4().hex[: self._settings.game_id_length].upper()
            if game_id not in self._lobbies:
                return game_id
            logger.debug("Lobby id collision, regenerating.", game_id=game_id)

    def _update_lobby_gauge(self) -> None:
        metrics.LOBBIES_OPEN.set(len(self._lobbies))

    # --- Handlers ---

    def hello(self, connection: Connection, message: HelloMessage) -> Participant:
        """
        Identifies a connection, reattaching a known participant id if presented.

        A repeated hello on an identified connection re-identifies its current
        participant unless a different id is presented; that participant is then
        detached through `disconnect` before the connection is rebound.
        """
        now = self._clock()
        current = self.participant_for(connection)
        if message.player_id:
            participant = self._participants.get(message.player_id)
        else:
            participant = current
        if current is not None and participant is not current:
            self.disconnect(connection)

        if participant is not None:
            self._scheduler.cancel(participant.participant_id)
            participant.connection = connection
            participant.awaiting_pong = False
            participant.last_seen_at = now
            if message.username:
                participant.display_name = message.username
            if message.user_id:
                participant.account_id = message.user_id
            logger.info("Participant reattached.", player_id=participant.participant_id, game_id=participant.game_id)
        else:
            participant = Participant(
                participant_id=str(uuid.uuid4()),
                connection=connection,
                created_at=now,
                last_seen_at=now,
                account_id=message.user_id or None,
                display_name=message.username or None,
            )
            self._participants[participant.participant_id] = participant
            logger.info("Participant identified.", player_id=participant.participant_id)

        connection.participant_id = participant.participant_id
        self._send(participant, {"type": "hello", "playerId": participant.participant_id})

        lobby = self._lobbies.get(participant.game_id) if participant.game_id else None
        if lobby is not None:
            self._send(participant, {
                "type": "resume",
                "gameId": lobby.game_id,
                "fen": self._rules.encode(lobby.board),
                "turn": self._turn(lobby),
                "color": participant.side.value if participant.side else None,
                "moves": [move.to_wire() for move in lobby.moves],
                "result": lobby.result,
                "reason": lobby.reason,
            })
        return participant

    def create(self, connection: Connection, message: CreateMessage) -> Lobby:
        """Opens a waiting lobby with the sender as host."""
        host = self._require_participant(connection)
        if host.game_id:
            raise LobbyError(ErrorCode.ALREADY_IN_GAME, "Leave current game before creating a new one")

        if message.color in (Side.WHITE.value, Side.BLACK.value):
            side = Side(message.color)
        else:
            side = self._rng.choice([Side.WHITE, Side.BLACK])

        now = self._clock()
        lobby = Lobby(
            game_id=self._new_game_id(),
            created_at=now,
            host=host,
            board=self._rules.new_position(),
        )
        host.game_id = lobby.game_id
        host.side = side
        self._lobbies[lobby.game_id] = lobby
        self._update_lobby_gauge()

        self._send(host, {"type": "created", "gameId": lobby.game_id, "color": side.value})
        logger.info("Lobby created.", game_id=lobby.game_id, host=host.participant_id, color=side.value)
        return lobby

    def join(self, connection: Connection, message: JoinMessage) -> Lobby:
        """Seats the sender as guest and starts the game."""
        guest = self._require_participant(connection)
        if guest.game_id:
            raise LobbyError(ErrorCode.ALREADY_IN_GAME, "Leave current game before joining another")
        game_id = self._normalize_game_id(message.game_id)
        if not game_id:
            raise LobbyError(ErrorCode.INVALID_GAME_ID, "gameId is required to join a lobby")

        lobby = self._lobbies.get(game_id)
        if lobby is None:
            raise LobbyError(ErrorCode.GAME_NOT_FOUND, "Lobby not found")
        if lobby.status is not LobbyStatus.WAITING or lobby.guest is not None:
            raise LobbyError(ErrorCode.LOBBY_FULL, "Lobby already has two players")

        guest.game_id = lobby.game_id
        guest.side = lobby.host.side.opponent
        lobby.guest = guest
        logger.info("Participant joined lobby.", game_id=lobby.game_id, player_id=guest.participant_id, color=guest.side.value)
        self._start(lobby)
        return lobby

    def _start(self, lobby: Lobby) -> None:
        lobby.status = LobbyStatus.ACTIVE
        lobby.board = self._rules.new_position()
        lobby.moves.clear()
        lobby.started_at = self._clock()

        white, black = lobby.seat_for(Side.WHITE), lobby.seat_for(Side.BLACK)
        payload = {
            "type": "start",
            "gameId": lobby.game_id,
            "fen": self._rules.encode(lobby.board),
            "turn": self._turn(lobby),
            "white": {"playerId": white.participant_id, "name": white.name},
            "black": {"playerId": black.participant_id, "name": black.name},
        }
        for participant in lobby.seats():
            self._send(participant, {**payload, "color": participant.side.value})
        logger.info("Game started.", game_id=lobby.game_id)

    def move(self, connection: Connection, message: MoveMessage) -> MoveRecord:
        """
        Validates and applies a move, broadcasts it, then checks for game end.

        Raises:
            LobbyError: On any guard violation or an illegal move; the
                position is left untouched.
        """
        participant = self._require_participant(connection)
        if message.player_id and message.player_id != participant.participant_id:
            raise LobbyError(ErrorCode.PLAYER_MISMATCH, "Player not recognized for move")

        lobby = self._lobbies.get(self._normalize_game_id(message.game_id))
        if lobby is None:
            raise LobbyError(ErrorCode.GAME_NOT_FOUND, "Game not found")
        if participant.game_id != lobby.game_id or not lobby.has_seat(participant):
            raise LobbyError(ErrorCode.NOT_IN_GAME, "Player not seated in this game")
        if lobby.status is not LobbyStatus.ACTIVE:
            raise LobbyError(ErrorCode.GAME_NOT_ACTIVE, "Game is not active")
        if participant.side is not self._rules.side_to_move(lobby.board):
            raise LobbyError(ErrorCode.NOT_YOUR_TURN, "Not your turn")

        try:
            applied = self._rules.apply_move(lobby.board, uci=message.uci, san=message.san)
        except IllegalMoveError as e:
            logger.warning("Illegal move rejected.", game_id=lobby.game_id, player_id=participant.participant_id, move=e.move_spec)
            raise LobbyError(ErrorCode.ILLEGAL_MOVE, "Illegal move") from e

        record = MoveRecord(
            participant_id=participant.participant_id,
            uci=applied.uci,
            san=applied.san,
            fen_after=applied.fen_after,
            timestamp_ms=int(self._clock() * 1000),
        )
        lobby.moves.append(record)
        turn = self._turn(lobby)
        self._broadcast(lobby, {
            "type": "move",
            "gameId": lobby.game_id,
            "playerId": participant.participant_id,
            "uci": applied.uci,
            "san": applied.san,
            "fen": applied.fen_after,
            "turn": turn,
        })
        logger.info("Move applied.", game_id=lobby.game_id, player_id=participant.participant_id, uci=applied.uci, turn=turn)

        # Terminal status is read after the push, so checkmate belongs to the mover.
        outcome = self._rules.outcome_for(self._rules.terminal_status(lobby.board), applied.side)
        if outcome is not None:
            self.finalize(lobby, *outcome)
        return record

    def resign(self, connection: Connection, message: ResignMessage) -> None:
        participant = self._require_participant(connection)
        game_id = self._normalize_game_id(message.game_id)
        if not game_id:
            raise LobbyError(ErrorCode.INVALID_GAME_ID, "gameId is required")
        lobby = self._lobbies.get(game_id)
        if lobby is None:
            raise LobbyError(ErrorCode.GAME_NOT_FOUND, "Game not available")
        if participant.game_id != lobby.game_id:
            raise LobbyError(ErrorCode.NOT_IN_GAME, "Player not seated in this game")
        if lobby.status is not LobbyStatus.ACTIVE:
            raise LobbyError(ErrorCode.GAME_NOT_ACTIVE, "Game is not active")
        self.finalize(lobby, win_result_for(participant.side.opponent), "resign")

    def leave(self, connection: Connection, message: Optional[LeaveMessage] = None) -> None:
        """Vacates the sender's seat. Always acknowledged with `left`."""
        participant = self._require_participant(connection)
        lobby = self._lobbies.get(participant.game_id) if participant.game_id else None
        if lobby is None:
            self._release(participant)
            self._send(participant, {"type": "left", "gameId": None})
            return

        game_id = lobby.game_id
        if lobby.status is LobbyStatus.ACTIVE:
            self.finalize(lobby, win_result_for(participant.side.opponent), "left")
        else:
            self._broadcast(
                lobby,
                {"type": "opponent_disconnect", "gameId": game_id, "playerId": participant.participant_id},
                exclude=participant.participant_id,
            )
            self._vacate(lobby, participant)

        self._send(participant, {"type": "left", "gameId": game_id})
        logger.info("Participant left lobby.", player_id=participant.participant_id, game_id=game_id)

    def pong(self, connection: Connection, message: Optional[PongMessage] = None) -> None:
        participant = self.participant_for(connection)
        if participant is None:
            return
        participant.awaiting_pong = False
        participant.last_seen_at = self._clock()

    def disconnect(self, connection: Connection) -> None:
        """
        Detaches the participant bound to `connection` and arms its grace timer.

        A connection the participant has already been moved off (by a later
        reattach) is ignored.
        """
        participant = self.participant_for(connection)
        if participant is None or participant.connection is not connection:
            return

        participant.connection = None
        participant.awaiting_pong = False
        participant.last_seen_at = self._clock()
        participant_id = participant.participant_id
        self._scheduler.schedule(
            participant_id, self._settings.disconnect_grace_s,
            lambda: self._on_grace_expired(participant_id),
        )

        lobby = self._lobbies.get(participant.game_id) if participant.game_id else None
        if lobby is not None and lobby.status is LobbyStatus.ACTIVE:
            self._broadcast(
                lobby,
                {"type": "opponent_disconnect", "gameId": lobby.game_id, "playerId": participant_id},
                exclude=participant_id,
            )
        logger.info("Participant disconnected.", player_id=participant_id, game_id=participant.game_id)

    def _on_grace_expired(self, participant_id: str) -> None:
        participant = self._participants.get(participant_id)
        if participant is None or participant.connection is not None or not participant.game_id:
            return

        lobby = self._lobbies.get(participant.game_id)
        if lobby is None:
            participant.clear_seat()
            return

        logger.info("Disconnect grace expired.", player_id=participant_id, game_id=lobby.game_id)
        if lobby.status is LobbyStatus.ACTIVE:
            self.finalize(lobby, win_result_for(participant.side.opponent), "disconnect_timeout")
        else:
            self._vacate(lobby, participant)

    def _release(self, participant: Participant) -> None:
        participant.clear_seat()
        self._scheduler.cancel(participant.participant_id)

    def _vacate(self, lobby: Lobby, participant: Participant) -> None:
        """Removes one seat from a non-active lobby, dropping the lobby once empty."""
        if lobby.host is not None and lobby.host.participant_id == participant.participant_id:
            lobby.host = lobby.guest
            lobby.guest = None
        elif lobby.guest is not None and lobby.guest.participant_id == participant.participant_id:
            lobby.guest = None
        self._release(participant)

        if lobby.host is None:
            self._lobbies.pop(lobby.game_id, None)
            self._update_lobby_gauge()
            logger.info("Lobby removed (empty).", game_id=lobby.game_id)
        else:
            lobby.status = LobbyStatus.WAITING

    # --- Completion ---

    def finalize(self, lobby: Lobby, result: str, reason: str) -> None:
        """
        Completes a lobby: broadcasts the outcome, frees both seats and removes
        the lobby. A no-op for a lobby that is already completed.
        """
        if lobby.status is LobbyStatus.COMPLETED:
            return

        lobby.status = LobbyStatus.COMPLETED
        lobby.completed_at = self._clock()
        lobby.result = result
        lobby.reason = reason

        self._broadcast(lobby, {"type": "game_over", "gameId": lobby.game_id, "result": result, "reason": reason})
        records = self._completed_records(lobby)

        for participant in lobby.seats():
            self._release(participant)
        self._lobbies.pop(lobby.game_id, None)
        self._update_lobby_gauge()
        metrics.GAMES_COMPLETED_TOTAL.labels(reason=reason).inc()
        logger.info("Game completed.", game_id=lobby.game_id, result=result, reason=reason, moves=len(lobby.moves))

        if self._completion_sink is not None:
            for record in records:
                self._completion_sink(record)

    def _completed_records(self, lobby: Lobby) -> List[CompletedGameRecord]:
        players = [
            {
                "playerId": p.participant_id,
                "accountId": p.account_id,
                "name": p.name,
                "color": p.side.value if p.side else None,
            }
            for p in lobby.seats()
        ]
        moves = [move.to_wire() for move in lobby.moves]
        return [
            CompletedGameRecord(
                id=str(uuid.uuid4()),
                account_id=p.account_id,
                game_id=lobby.game_id,
                players=players,
                moves=moves,
                result=lobby.result,
                reason=lobby.reason,
                winner=_winner_for(lobby.result),
                started_at=_iso(lobby.started_at),
                finished_at=_iso(lobby.completed_at),
                metadata={"mode": "online", "color": p.side.value if p.side else None},
            )
            for p in lobby.seats() if p.account_id
        ]

    # --- Housekeeping ---

    def evict_idle(self, now: Optional[float] = None) -> int:
        """Drops detached, lobby-less participants idle beyond the retention window."""
        now = self._clock() if now is None else now
        stale = [
            p.participant_id for p in self._participants.values()
            if p.connection is None and not p.game_id
            and now - p.last_seen_at > self._settings.idle_retention_s
        ]
        for participant_id in stale:
            self._scheduler.cancel(participant_id)
            del self._participants[participant_id]
        if stale:
            logger.info("Evicted idle participants.", count=len(stale))
        return len(stale)
