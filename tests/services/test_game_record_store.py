# tests/services/test_game_record_store.py
import aiosqlite
import pytest

from chessmaster.config.settings import PersistenceSettings
from chessmaster.exceptions import PersistenceError
from chessmaster.services.game_record_store import SqliteGameRecordStore, is_lock_contention
from chessmaster.types import CompletedGameRecord


def make_record(record_id, account_id="acct-1", finished_at="2025-01-01T10:00:00+00:00", moves=None):
    return CompletedGameRecord(
        id=record_id,
        account_id=account_id,
        game_id="ABCD1234",
        players=[{"playerId": "p1", "color": "white"}, {"playerId": "p2", "color": "black"}],
        moves=moves if moves is not None else [{"uci": "e2e4"}],
        result="1-0",
        reason="resign",
        winner="white",
        started_at="2025-01-01T09:55:00+00:00",
        finished_at=finished_at,
        metadata={"mode": "online"},
    )


@pytest.mark.asyncio
async def test_save_and_list_newest_first(tmp_path):
    # Arrange
    settings = PersistenceSettings(db_filepath=str(tmp_path / "games.db"))

    async with SqliteGameRecordStore(settings) as store:
        await store.save(make_record("r1", finished_at="2025-01-01T10:00:00+00:00"))
        await store.save(make_record("r2", finished_at="2025-01-02T10:00:00+00:00"))
        await store.save(make_record("r3", account_id="acct-2"))

        # Act
        records = await store.list_for_account("acct-1")

    # Assert
    assert [r.id for r in records] == ["r2", "r1"]
    assert records[0].players[0]["playerId"] == "p1"
    assert records[0].moves == [{"uci": "e2e4"}]
    assert records[0].metadata == {"mode": "online"}


@pytest.mark.asyncio
async def test_list_honours_limit_and_offset(tmp_path):
    settings = PersistenceSettings(db_filepath=str(tmp_path / "games.db"))
    async with SqliteGameRecordStore(settings) as store:
        for day in range(1, 6):
            await store.save(make_record(f"r{day}", finished_at=f"2025-01-0{day}T00:00:00+00:00"))

        page = await store.list_for_account("acct-1", limit=2, offset=1)

    assert [r.id for r in page] == ["r4", "r3"]


@pytest.mark.asyncio
async def test_delete_for_account(tmp_path):
    settings = PersistenceSettings(db_filepath=str(tmp_path / "games.db"))
    async with SqliteGameRecordStore(settings) as store:
        await store.save(make_record("r1"))
        await store.save(make_record("r2"))
        await store.save(make_record("r3", account_id="acct-2"))

        deleted = await store.delete_for_account("acct-1")

        assert deleted == 2
        assert await store.list_for_account("acct-1") == []
        assert len(await store.list_for_account("acct-2")) == 1


@pytest.mark.asyncio
async def test_oversized_move_list_is_stored_empty(tmp_path):
    settings = PersistenceSettings(db_filepath=str(tmp_path / "games.db"))
    huge = [{"uci": "e2e4", "pad": "x" * 100} for _ in range(1000)]
    async with SqliteGameRecordStore(settings) as store:
        await store.save(make_record("r1", moves=huge))
        records = await store.list_for_account("acct-1")

    assert records[0].moves == []


@pytest.mark.asyncio
async def test_save_requires_account(tmp_path):
    settings = PersistenceSettings(db_filepath=str(tmp_path / "games.db"))
    async with SqliteGameRecordStore(settings) as store:
        with pytest.raises(PersistenceError):
            await store.save(make_record("r1", account_id=""))


@pytest.mark.asyncio
async def test_store_must_be_opened(tmp_path):
    store = SqliteGameRecordStore(PersistenceSettings(db_filepath=str(tmp_path / "games.db")))
    with pytest.raises(PersistenceError):
        await store.list_for_account("acct-1")


def test_only_lock_contention_is_retried():
    assert is_lock_contention(aiosqlite.OperationalError("database is locked"))
    assert is_lock_contention(aiosqlite.OperationalError("database table is BUSY"))
    assert not is_lock_contention(aiosqlite.OperationalError("no such table: games"))
