"""
Per-connection dispatch and background liveness for the lobby protocol.

The gateway is transport-agnostic: it sees `Connection` objects and raw text
frames. Each frame is decoded, routed by its `type` tag to the registry, and
any `LobbyError` is turned into an `error` reply to the sender alone.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

import structlog

from chessmaster.exceptions import LobbyError
from chessmaster.lobby.messages import (CreateMessage, HelloMessage,
                                        InboundMessage, JoinMessage,
                                        LeaveMessage, MoveMessage, PongMessage,
                                        ResignMessage, error_payload,
                                        parse_envelope)
from chessmaster.types import Connection
from chessmaster.utils import metrics

if TYPE_CHECKING:
    from chessmaster.config.settings import LobbySettings
    from chessmaster.lobby.registry import LobbyRegistry

logger = structlog.get_logger(__name__)

PING_PAYLOAD = {"type": "ping"}


class ConnectionGateway:
    """Routes inbound frames to the registry and runs the liveness sweeps."""

    def __init__(
        self,
        registry: "LobbyRegistry",
        settings: "LobbySettings",
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._settings = settings
        self._clock = clock
        self._connections: Dict[str, Connection] = {}
        self._tasks: List[asyncio.Task] = []
        self._routes = {
            HelloMessage: registry.hello,
            CreateMessage: registry.create,
            JoinMessage: registry.join,
            MoveMessage: registry.move,
            ResignMessage: registry.resign,
            LeaveMessage: registry.leave,
            PongMessage: registry.pong,
        }

    @property
    def registry(self) -> "LobbyRegistry":
        return self._registry

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connect(self, connection: Connection) -> None:
        """Registers a new connection. No identity is assigned until `hello`."""
        self._connections[connection.connection_id] = connection
        metrics.CONNECTIONS_OPEN.set(len(self._connections))
        logger.debug("Connection opened.", connection_id=connection.connection_id)

    def handle_text(self, connection: Connection, text: str) -> None:
        """Processes one inbound frame to completion, including all broadcasts."""
        try:
            message = parse_envelope(text)
            metrics.MESSAGES_RECEIVED_TOTAL.labels(type=message.type).inc()
            self._dispatch(connection, message)
        except LobbyError as e:
            metrics.ERROR_REPLIES_TOTAL.labels(code=e.code.value).inc()
            logger.debug("Rejected message.", connection_id=connection.connection_id, code=e.code.value)
            if connection.is_open:
                connection.send(error_payload(e.code, e.message))

    def _dispatch(self, connection: Connection, message: InboundMessage) -> None:
        handler = self._routes[type(message)]
        with structlog.contextvars.bound_contextvars(
            connection_id=connection.connection_id, player_id=connection.participant_id,
        ):
            handler(connection, message)

    def disconnect(self, connection: Connection) -> None:
        """Forgets a closed connection and starts the participant's grace window."""
        if self._connections.pop(connection.connection_id, None) is None:
            return
        metrics.CONNECTIONS_OPEN.set(len(self._connections))
        self._registry.disconnect(connection)
        logger.debug("Connection closed.", connection_id=connection.connection_id)

    # --- Sweeps ---

    def sweep_liveness(self, now: Optional[float] = None) -> List[Connection]:
        """
        Pings every identified connection and closes those that left the
        previous ping unanswered for longer than the pong grace.

        Returns:
            The connections that were force-closed.
        """
        now = self._clock() if now is None else now
        terminated: List[Connection] = []
        for connection in list(self._connections.values()):
            participant = self._registry.participant_for(connection)
            if participant is None or participant.connection is not connection:
                continue
            if (
                participant.awaiting_pong
                and participant.last_ping_at is not None
                and now - participant.last_ping_at > self._settings.pong_grace_s
            ):
                logger.warning("Terminating unresponsive client.", player_id=participant.participant_id)
                metrics.CONNECTIONS_TERMINATED_TOTAL.inc()
                connection.close()
                terminated.append(connection)
                continue
            connection.send(PING_PAYLOAD)
            participant.awaiting_pong = True
            participant.last_ping_at = now
        return terminated

    def sweep_idle(self, now: Optional[float] = None) -> int:
        return self._registry.evict_idle(now)

    async def _run_periodically(self, interval_s: float, sweep: Callable[[], object], name: str) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                sweep()
            except Exception:
                logger.exception("Periodic sweep failed.", sweep=name)

    def start(self) -> None:
        """Starts the liveness and idle-eviction loops on the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._run_periodically(self._settings.ping_interval_s, self.sweep_liveness, "liveness"),
                name="gateway-liveness",
            ),
            asyncio.create_task(
                self._run_periodically(self._settings.cleanup_interval_s, self.sweep_idle, "idle"),
                name="gateway-idle",
            ),
        ]
        logger.info(
            "Gateway sweeps started.",
            ping_interval_s=self._settings.ping_interval_s,
            cleanup_interval_s=self._settings.cleanup_interval_s,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
