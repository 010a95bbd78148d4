# tests/services/test_engine_session.py
import asyncio
import stat
import sys
import textwrap

import pytest

from chessmaster.config.settings import EngineSettings
from chessmaster.exceptions import (
    EngineNotConfiguredError,
    EnginePrematureExitError,
    EngineProtocolError,
    EngineSpawnError,
    EngineTimeoutError,
)
from chessmaster.services.engine_session import STDOUT_LIMIT_BYTES, StockfishService
from chessmaster.types import ScoreKind, SearchRequest

FAKE_ENGINE = textwrap.dedent("""\
    #!{python}
    import sys

    MODE = "{mode}"
    FLOOD = {flood}
    LOG = {log!r}

    def emit(*lines):
        for line in lines:
            sys.stdout.write(line + "\\n")
        sys.stdout.flush()

    while True:
        raw = sys.stdin.readline()
        if not raw:
            break
        cmd = raw.strip()
        with open(LOG, "a") as fh:
            fh.write(cmd + "\\n")
        if cmd == "uci":
            emit("id name FakeFish", "uciok")
        elif cmd == "isready":
            emit("readyok")
        elif cmd.startswith("go"):
            if MODE == "hang":
                continue
            if MODE == "crash":
                sys.stderr.write("segfault in search\\n")
                sys.stderr.flush()
                sys.exit(3)
            if MODE == "flood":
                emit("info string " + "x" * FLOOD)
            emit(
                "info depth 3 multipv 1 score cp 42 pv e2e4 e7e5",
                "info depth 3 multipv 2 score mate 4 pv d2d4",
                "bestmove e2e4 ponder e7e5",
            )
        elif cmd == "quit":
            break
""")


def make_engine(tmp_path, mode="ok"):
    """Writes an executable fake UCI engine and returns (path, command log path)."""
    log = tmp_path / f"{mode}.log"
    script = tmp_path / f"fake_engine_{mode}.py"
    script.write_text(FAKE_ENGINE.format(
        python=sys.executable, mode=mode, log=str(log), flood=2 * STDOUT_LIMIT_BYTES
    ))
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script, log


def service_for(path, **overrides):
    return StockfishService(EngineSettings(path=str(path), **overrides))


@pytest.mark.asyncio
async def test_search_returns_structured_result(tmp_path):
    # Arrange
    engine, log = make_engine(tmp_path)
    service = service_for(engine)

    # Act
    result = await service.search(SearchRequest(depth=3))

    # Assert
    assert result.best_move == "e2e4"
    assert result.ponder == "e7e5"
    assert result.depth == 3
    assert result.evaluation.kind is ScoreKind.CENTIPAWNS
    assert result.evaluation.value == 42
    assert result.pv == ["e2e4", "e7e5"]
    assert len(result.lines) == 1

    commands = log.read_text().splitlines()
    assert commands == [
        "uci",
        "setoption name Skill Level value 10",
        "isready",
        "position startpos",
        "go depth 3",
        "quit",
    ]


@pytest.mark.asyncio
async def test_multipv_search_keeps_requested_lines(tmp_path):
    engine, log = make_engine(tmp_path)
    service = service_for(engine)

    result = await service.best_move(moves=["e2e4"], multipv=2, movetime_ms=50, skill_level=5)

    assert [line.index for line in result.lines] == [1, 2]
    assert result.lines[1].evaluation.kind is ScoreKind.MATE
    commands = log.read_text().splitlines()
    assert "setoption name Skill Level value 5" in commands
    assert "setoption name MultiPV value 2" in commands
    assert "position startpos moves e2e4" in commands
    assert "go movetime 50" in commands


@pytest.mark.asyncio
async def test_search_times_out_and_stops_engine(tmp_path):
    engine, log = make_engine(tmp_path, mode="hang")
    service = service_for(engine)

    with pytest.raises(EngineTimeoutError) as excinfo:
        await service.search(SearchRequest(depth=20, timeout_ms=300))

    assert "searching" in str(excinfo.value)
    assert log.read_text().splitlines()[-1] == "quit"


@pytest.mark.asyncio
async def test_premature_exit_surfaces_stderr(tmp_path):
    engine, _ = make_engine(tmp_path, mode="crash")
    service = service_for(engine)

    with pytest.raises(EnginePrematureExitError) as excinfo:
        await service.search(SearchRequest(depth=5))

    assert "exit code 3" in str(excinfo.value)
    assert "segfault in search" in excinfo.value.diagnostics


@pytest.mark.asyncio
async def test_missing_executable_is_not_configured(tmp_path):
    service = service_for(tmp_path / "no-such-engine")

    with pytest.raises(EngineNotConfiguredError):
        await service.search(SearchRequest())


@pytest.mark.asyncio
async def test_unlaunchable_executable_is_a_spawn_failure(tmp_path):
    # Arrange: executable bit set, but not a runnable program.
    bogus = tmp_path / "bogus-engine"
    bogus.write_bytes(b"\x00\x01not an executable")
    bogus.chmod(bogus.stat().st_mode | stat.S_IXUSR)
    service = service_for(bogus)

    # Act / Assert
    with pytest.raises(EngineSpawnError):
        await service.search(SearchRequest())


@pytest.mark.asyncio
async def test_oversized_output_line_is_a_protocol_error(tmp_path):
    # Arrange: the engine answers `go` with one line past the stream limit.
    engine, log = make_engine(tmp_path, mode="flood")
    service = service_for(engine)

    # Act
    with pytest.raises(EngineProtocolError) as excinfo:
        await service.search(SearchRequest(depth=1))

    # Assert
    assert excinfo.value.kind == "protocol-error"
    assert "exceeds" in str(excinfo.value)
    assert log.read_text().splitlines()[-1] in ("go depth 1", "quit")


@pytest.mark.asyncio
async def test_deadline_covers_waiting_for_an_engine_slot(tmp_path):
    # Arrange: a single slot, held by a search that never answers.
    engine, _ = make_engine(tmp_path, mode="hang")
    service = service_for(engine, max_concurrent_searches=1)
    first = asyncio.create_task(service.search(SearchRequest(depth=20, timeout_ms=3000)))
    await asyncio.sleep(0.2)

    # Act
    with pytest.raises(EngineTimeoutError) as excinfo:
        await service.search(SearchRequest(depth=1, timeout_ms=200))

    # Assert
    assert "engine slot" in str(excinfo.value)
    assert not first.done()
    with pytest.raises(EngineTimeoutError):
        await first
