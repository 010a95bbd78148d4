# tests/orchestration/test_persistence_client.py
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chessmaster.exceptions import PersistenceError
from chessmaster.orchestration.persistence_client import PersistenceClient, PersistenceWriter
from chessmaster.types import CompletedGameRecord, GameRecordStore


def make_record(record_id):
    return CompletedGameRecord(
        id=record_id, account_id="acct", game_id="G1", players=[], moves=[],
        result="1-0", reason="checkmate", winner="white", started_at=None,
        finished_at="2025-01-01T00:00:00+00:00",
    )


@pytest.mark.asyncio
async def test_submit_enqueues_without_waiting():
    queue = asyncio.Queue()
    client = PersistenceClient(queue)

    client(make_record("r1"))

    assert queue.qsize() == 1


@pytest.mark.asyncio
async def test_full_queue_drops_record():
    queue = asyncio.Queue(maxsize=1)
    client = PersistenceClient(queue)

    client.submit(make_record("r1"))
    client.submit(make_record("r2"))

    assert queue.qsize() == 1
    assert queue.get_nowait().id == "r1"


@pytest.mark.asyncio
async def test_writer_drains_queue_into_store():
    # Arrange
    queue = asyncio.Queue()
    store = MagicMock(spec=GameRecordStore)
    store.save = AsyncMock()
    writer = PersistenceWriter(queue, store)
    client = PersistenceClient(queue)

    # Act
    writer.start()
    client.submit(make_record("r1"))
    client.submit(make_record("r2"))
    await writer.stop()

    # Assert
    assert [c.args[0].id for c in store.save.await_args_list] == ["r1", "r2"]


@pytest.mark.asyncio
async def test_writer_survives_store_failures():
    queue = asyncio.Queue()
    store = MagicMock(spec=GameRecordStore)
    store.save = AsyncMock(side_effect=[PersistenceError("disk full"), None])
    writer = PersistenceWriter(queue, store)

    writer.start()
    queue.put_nowait(make_record("r1"))
    queue.put_nowait(make_record("r2"))
    await writer.stop()

    assert store.save.await_count == 2
