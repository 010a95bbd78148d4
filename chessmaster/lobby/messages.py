"""
Wire format of the lobby protocol.

Inbound envelopes are JSON objects with a `type` tag. Each type has a pydantic
model that accepts the camelCase keys clients send (`playerId`, `gameId`, ...).
Outbound messages are plain dicts built by the registry; `error_payload`
shapes the error reply.
"""

import json
from enum import Enum
from typing import Any, Dict, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from chessmaster.exceptions import LobbyError


class ErrorCode(str, Enum):
    """Stable tokens carried by every `error` reply."""
    INVALID_JSON = "INVALID_JSON"
    UNKNOWN_TYPE = "UNKNOWN_TYPE"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    NOT_IDENTIFIED = "NOT_IDENTIFIED"
    ALREADY_IN_GAME = "ALREADY_IN_GAME"
    INVALID_GAME_ID = "INVALID_GAME_ID"
    GAME_NOT_FOUND = "GAME_NOT_FOUND"
    LOBBY_FULL = "LOBBY_FULL"
    NOT_IN_GAME = "NOT_IN_GAME"
    PLAYER_MISMATCH = "PLAYER_MISMATCH"
    GAME_NOT_ACTIVE = "GAME_NOT_ACTIVE"
    NOT_YOUR_TURN = "NOT_YOUR_TURN"
    ILLEGAL_MOVE = "ILLEGAL_MOVE"


class InboundMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class HelloMessage(InboundMessage):
    type: Literal["hello"] = "hello"
    player_id: Optional[str] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    game_id: Optional[str] = None


class CreateMessage(InboundMessage):
    type: Literal["create"] = "create"
    # Anything other than "white"/"black" means a coin toss.
    color: Optional[str] = None


class JoinMessage(InboundMessage):
    type: Literal["join"] = "join"
    game_id: Optional[str] = None


class MoveMessage(InboundMessage):
    type: Literal["move"] = "move"
    game_id: str
    player_id: Optional[str] = None
    uci: Optional[str] = None
    san: Optional[str] = None

    @model_validator(mode="after")
    def validate_has_move(self) -> "MoveMessage":
        if not self.uci and not self.san:
            raise ValueError("a move needs 'uci' or 'san'")
        return self


class ResignMessage(InboundMessage):
    type: Literal["resign"] = "resign"
    game_id: Optional[str] = None


class LeaveMessage(InboundMessage):
    type: Literal["leave"] = "leave"
    game_id: Optional[str] = None


class PongMessage(InboundMessage):
    type: Literal["pong"] = "pong"


MESSAGE_TYPES: Dict[str, Type[InboundMessage]] = {
    "hello": HelloMessage,
    "create": CreateMessage,
    "join": JoinMessage,
    "move": MoveMessage,
    "resign": ResignMessage,
    "leave": LeaveMessage,
    "pong": PongMessage,
}


def parse_envelope(text: str) -> InboundMessage:
    """
    Decodes one inbound frame into its typed message.

    Raises:
        LobbyError: `INVALID_JSON`, `UNKNOWN_TYPE` or `INVALID_PAYLOAD`.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise LobbyError(ErrorCode.INVALID_JSON, "Message must be valid JSON") from e

    message_type = data.get("type") if isinstance(data, dict) else None
    model = MESSAGE_TYPES.get(message_type) if isinstance(message_type, str) else None
    if model is None:
        raise LobbyError(ErrorCode.UNKNOWN_TYPE, f"Unknown message type: {message_type}")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise LobbyError(ErrorCode.INVALID_PAYLOAD, f"Invalid {message_type} payload") from e


def error_payload(code: ErrorCode, message: str) -> Dict[str, Any]:
    return {"type": "error", "code": code.value, "msg": message}
