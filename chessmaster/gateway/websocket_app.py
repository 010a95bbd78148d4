"""
FastAPI application exposing the lobby protocol over WebSocket.

Each socket gets a `WebSocketConnection` whose `send` only enqueues; a writer
task drains the queue onto the socket. This keeps registry handlers
synchronous: a frame is fully processed, broadcasts included, before the
next `receive` is awaited.
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import punq
import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from prometheus_client import make_asgi_app

from chessmaster.config.settings import Settings
from chessmaster.gateway.connection_gateway import ConnectionGateway
from chessmaster.orchestration.persistence_client import PersistenceWriter
from chessmaster.services.game_record_store import SqliteGameRecordStore
from chessmaster.types import Connection

logger = structlog.get_logger(__name__)

_CLOSE = object()


class WebSocketConnection(Connection):
    """Adapts a Starlette `WebSocket` to the registry's `Connection` protocol."""

    def __init__(self, websocket: WebSocket):
        self.connection_id = uuid.uuid4().hex
        self.participant_id: Optional[str] = None
        self._websocket = websocket
        self._outbox: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    def send(self, payload: Dict[str, Any]) -> None:
        if self._closed:
            return
        self._outbox.put_nowait(payload)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._outbox.put_nowait(_CLOSE)

    async def run_writer(self) -> None:
        """Writes queued payloads in order until closed or the socket fails."""
        while True:
            item = await self._outbox.get()
            if item is _CLOSE:
                try:
                    await self._websocket.close()
                except (WebSocketDisconnect, RuntimeError, OSError):
                    pass
                return
            try:
                await self._websocket.send_text(json.dumps(item))
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug("Send failed, closing writer.", connection_id=self.connection_id, error=str(e))
                self._closed = True
                return

    async def run_reader(self, gateway: ConnectionGateway) -> None:
        """Feeds inbound frames to the gateway until the client disconnects."""
        while True:
            message = await self._websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            text = message.get("text")
            if text is None and message.get("bytes") is not None:
                text = message["bytes"].decode("utf-8", errors="replace")
            if text is not None:
                gateway.handle_text(self, text)


def create_app(container: punq.Container) -> FastAPI:
    """
    Builds the ASGI application from a wired container.

    The lifespan opens the record store, starts the persistence writer and
    the gateway sweeps, and tears them down in reverse order.
    """
    settings: Settings = container.resolve(Settings)
    gateway: ConnectionGateway = container.resolve(ConnectionGateway)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store: SqliteGameRecordStore = container.resolve(SqliteGameRecordStore)
        writer: PersistenceWriter = container.resolve(PersistenceWriter)
        async with store:
            writer.start()
            gateway.start()
            logger.info("Server ready.", ws_path=settings.server.ws_path)
            try:
                yield
            finally:
                await gateway.stop()
                await writer.stop()
                logger.info("Server stopped.")

    app = FastAPI(title="chessmaster", lifespan=lifespan)
    app.mount("/metrics", make_asgi_app())

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "connections": gateway.connection_count,
            "lobbies": gateway.registry.lobby_count,
        }

    @app.websocket(settings.server.ws_path)
    async def ws_endpoint(websocket: WebSocket):
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        gateway.connect(connection)
        reader = asyncio.create_task(connection.run_reader(gateway))
        writer = asyncio.create_task(connection.run_writer())
        try:
            # The writer ends when the gateway closes the connection.
            await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            gateway.disconnect(connection)
            connection.close()
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            if not writer.done():
                await asyncio.wait({writer}, timeout=1.0)
                writer.cancel()

    return app
