"""
Defines custom exceptions for the Chessmaster server.

Centralizing exceptions in this module prevents circular dependencies that can
arise when different components need to catch errors defined in others. A clear
exception hierarchy, with a common `ChessmasterError` base, allows callers to
catch exactly the failure family they are prepared to handle.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from chessmaster.lobby.messages import ErrorCode


class ChessmasterError(Exception):
    """Base class for all application-specific, catchable errors."""
    pass


class EngineError(ChessmasterError):
    """
    Base class for failures of a single engine search call.

    Attributes:
        kind: A stable token naming the failure family (e.g. 'timeout').
        diagnostics: Captured stderr text from the engine process, if any.
    """
    kind: str = "engine-error"

    def __init__(self, message: str, diagnostics: Optional[str] = None):
        super().__init__(message)
        self.diagnostics = diagnostics or ""

    def __str__(self) -> str:
        base = super().__str__()
        if self.diagnostics:
            return f"{base}\nStderr:\n{self.diagnostics}"
        return base


class EngineNotConfiguredError(EngineError):
    """
    Raised when no usable engine executable could be resolved.

    This covers both a missing path and a path that exists but is not an
    executable file.
    """
    kind = "not-configured"


class EngineSpawnError(EngineError):
    """Raised when the operating system refuses to start the engine process."""
    kind = "spawn-failure"


class EngineTimeoutError(EngineError):
    """Raised when the engine did not deliver a best move before the deadline."""
    kind = "timeout"


class EngineProtocolError(EngineError):
    """
    Raised when the engine output cannot be reconciled with the UCI stages,
    e.g. a `bestmove` line that carries no move token.
    """
    kind = "protocol-error"


class EnginePrematureExitError(EngineError):
    """Raised when the engine process exits or closes its pipes before `bestmove`."""
    kind = "premature-exit"


class EngineDownloadError(ChessmasterError):
    """Raised when no engine release could be downloaded and unpacked."""
    pass


class RulesError(ChessmasterError):
    """Base class for errors raised by the rules engine adapter."""
    pass


class IllegalMoveError(RulesError):
    """
    Raised when the rules engine rejects a move.

    The position the move was applied to is guaranteed to be unchanged.
    """
    def __init__(self, message: str, move_spec: Optional[str] = None):
        super().__init__(message)
        self.move_spec = move_spec


class PgnParsingError(RulesError):
    """
    Raised for recorded games that cannot be loaded: empty input, unparsable
    text or a move that is illegal in sequence.
    """
    pass


class LobbyError(ChessmasterError):
    """
    A state-guard or protocol violation reported back to the sender.

    These never change registry state; the gateway turns them into `error`
    replies carrying the stable `code` token.
    """
    def __init__(self, code: "ErrorCode", message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class PersistenceError(ChessmasterError):
    """Raised when the completed-game record store cannot be read or written."""
    pass
