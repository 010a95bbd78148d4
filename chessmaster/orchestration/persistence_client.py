"""
Queue-based hand-off of completed-game records to the record store.

The lobby registry runs synchronously inside a single message dispatch and must
never wait on the database. `PersistenceClient.submit` therefore only places a
record on an `asyncio.Queue`; `PersistenceWriter` is the background consumer
that drains the queue into a `GameRecordStore`.
"""

import asyncio
from typing import Optional

import structlog

from chessmaster.exceptions import PersistenceError
from chessmaster.types import CompletedGameRecord, GameRecordStore
from chessmaster.utils import metrics

logger = structlog.get_logger(__name__)


class PersistenceClient:
    """
    A non-blocking adapter that puts completed-game records onto a queue.

    It is handed to the lobby registry as its completion sink.
    """

    def __init__(self, queue: "asyncio.Queue[CompletedGameRecord]"):
        self._queue = queue

    def submit(self, record: CompletedGameRecord) -> None:
        """
        Enqueues a record without waiting.

        When the queue is full the record is dropped and logged; live play is
        never held up by persistence.
        """
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            logger.error(
                "Persistence queue full, dropping completed game record.",
                game_id=record.game_id, account_id=record.account_id,
            )
            return
        metrics.PERSISTENCE_QUEUE_DEPTH.set(self._queue.qsize())
        logger.debug("Queued completed game record.", game_id=record.game_id, account_id=record.account_id)

    __call__ = submit


class PersistenceWriter:
    """The single consumer of the persistence queue."""

    def __init__(self, queue: "asyncio.Queue[CompletedGameRecord]", store: GameRecordStore):
        self._queue = queue
        self._store = store
        self._task: Optional[asyncio.Task] = None

    async def _drain_forever(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._store.save(record)
                logger.info("Completed game persisted.", game_id=record.game_id, account_id=record.account_id)
            except PersistenceError:
                logger.error("Failed to persist completed game.", game_id=record.game_id, exc_info=True)
            finally:
                self._queue.task_done()
                metrics.PERSISTENCE_QUEUE_DEPTH.set(self._queue.qsize())

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain_forever(), name="persistence-writer")

    async def stop(self) -> None:
        """Flushes whatever is queued, then stops the consumer."""
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
