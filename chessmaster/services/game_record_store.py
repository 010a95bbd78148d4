"""
Provides a concrete implementation of the `GameRecordStore` protocol using SQLite.

Completed online games are kept per account so that a player's history can be
listed or cleared later. Rows store the player and move lists as JSON text,
bounded in size so a pathological game cannot bloat the database.
"""

import json
from pathlib import Path
from typing import List, Optional, Tuple, Type, TYPE_CHECKING

import aiosqlite
import structlog

from chessmaster.exceptions import PersistenceError
from chessmaster.types import CompletedGameRecord, GameRecordStore
from chessmaster.utils.retry import retry_with_backoff

if TYPE_CHECKING:
    from chessmaster.config.settings import PersistenceSettings

logger = structlog.get_logger(__name__)

# "database is locked" surfaces as an OperationalError under WAL contention.
RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    aiosqlite.OperationalError,
)


def is_lock_contention(error: BaseException) -> bool:
    """Only lock and busy errors are worth retrying; schema or disk errors are not."""
    message = str(error).lower()
    return "locked" in message or "busy" in message

MAX_PLAYERS_JSON = 20_000
MAX_MOVES_JSON = 50_000

CREATE_GAMES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS games (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    game_id TEXT NOT NULL,
    players_json TEXT NOT NULL,
    moves_json TEXT NOT NULL,
    result TEXT,
    reason TEXT,
    winner TEXT,
    metadata_json TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT NOT NULL
)
"""

CREATE_GAMES_INDEX_SQL = "CREATE INDEX IF NOT EXISTS idx_games_user ON games (user_id, finished_at)"


def _bounded_json(value: object, limit: int) -> str:
    text = json.dumps(value)
    if len(text) > limit:
        # Truncated JSON would not round-trip; keep it parseable instead.
        logger.warning("Record field too large, storing empty list.", size=len(text), limit=limit)
        return "[]"
    return text


def _row_to_record(row: aiosqlite.Row) -> CompletedGameRecord:
    return CompletedGameRecord(
        id=row["id"],
        account_id=row["user_id"],
        game_id=row["game_id"],
        players=json.loads(row["players_json"] or "[]"),
        moves=json.loads(row["moves_json"] or "[]"),
        result=row["result"],
        reason=row["reason"],
        winner=row["winner"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        metadata=json.loads(row["metadata_json"] or "{}"),
    )


class SqliteGameRecordStore(GameRecordStore):
    """
    A `GameRecordStore` backed by a local SQLite database.

    This class is an async context manager, managing its own database connection
    lifecycle.
    """

    def __init__(self, settings: "PersistenceSettings"):
        self._db_path = Path(settings.db_filepath)
        self._connection: Optional[aiosqlite.Connection] = None

    async def __aenter__(self) -> "SqliteGameRecordStore":
        """Opens the connection and creates the schema."""
        try:
            if str(self._db_path) != ":memory:":
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(self._db_path, timeout=10.0)
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute("PRAGMA journal_mode=WAL;")
            await self._connection.execute(CREATE_GAMES_TABLE_SQL)
            await self._connection.execute(CREATE_GAMES_INDEX_SQL)
            await self._connection.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to initialize game record store: {e}") from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._connection:
            await self._connection.close()
            self._connection = None

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise PersistenceError("Game record store is not connected.")
        return self._connection

    async def save(self, record: CompletedGameRecord) -> None:
        """
        Stores a completed game for its account.

        Raises:
            PersistenceError: If the record has no account or a non-retriable
                database error occurs.
        """
        if not record.account_id:
            raise PersistenceError("account_id is required to record a completed game.")
        try:
            await self._insert(record)
        except aiosqlite.OperationalError as e:
            raise PersistenceError(f"Failed to store completed game: {e}") from e

    @retry_with_backoff(exceptions_to_catch=RETRYABLE_EXCEPTIONS, retry_if=is_lock_contention, target="games")
    async def _insert(self, record: CompletedGameRecord) -> None:
        conn = self._ensure_connected()
        query = (
            "INSERT OR REPLACE INTO games (id, user_id, game_id, players_json, moves_json, result, "
            "reason, winner, metadata_json, started_at, finished_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
        )
        params = (
            record.id, record.account_id, record.game_id,
            _bounded_json(record.players, MAX_PLAYERS_JSON),
            _bounded_json(record.moves, MAX_MOVES_JSON),
            record.result, record.reason, record.winner,
            json.dumps(record.metadata or {}),
            record.started_at, record.finished_at,
        )
        try:
            await conn.execute(query, params)
            await conn.commit()
        except aiosqlite.OperationalError:
            await conn.rollback()
            raise
        except aiosqlite.Error as e:
            await conn.rollback()
            raise PersistenceError(f"Failed to store completed game: {e}") from e

    async def list_for_account(self, account_id: str, limit: int = 100, offset: int = 0) -> List[CompletedGameRecord]:
        """Returns an account's games, most recently finished first."""
        try:
            rows = await self._select(account_id, limit, offset)
        except aiosqlite.OperationalError as e:
            raise PersistenceError(f"Failed to list completed games: {e}") from e

        records: List[CompletedGameRecord] = []
        for row in rows:
            try:
                records.append(_row_to_record(row))
            except json.JSONDecodeError as e:
                logger.warning("Corrupt game record, skipping.", record_id=row["id"], error=str(e))
        return records

    @retry_with_backoff(exceptions_to_catch=RETRYABLE_EXCEPTIONS, retry_if=is_lock_contention, target="games")
    async def _select(self, account_id: str, limit: int, offset: int) -> List[aiosqlite.Row]:
        conn = self._ensure_connected()
        query = "SELECT * FROM games WHERE user_id = ? ORDER BY finished_at DESC LIMIT ? OFFSET ?"
        try:
            async with conn.execute(query, (account_id, limit, offset)) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.OperationalError:
            raise
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to list completed games: {e}") from e

    async def delete_for_account(self, account_id: str) -> int:
        """Deletes all of an account's games and returns how many were removed."""
        try:
            return await self._delete(account_id)
        except aiosqlite.OperationalError as e:
            raise PersistenceError(f"Failed to delete completed games: {e}") from e

    @retry_with_backoff(exceptions_to_catch=RETRYABLE_EXCEPTIONS, retry_if=is_lock_contention, target="games")
    async def _delete(self, account_id: str) -> int:
        conn = self._ensure_connected()
        try:
            cursor = await conn.execute("DELETE FROM games WHERE user_id = ?", (account_id,))
            await conn.commit()
        except aiosqlite.OperationalError:
            await conn.rollback()
            raise
        except aiosqlite.Error as e:
            await conn.rollback()
            raise PersistenceError(f"Failed to delete completed games: {e}") from e
        return cursor.rowcount
