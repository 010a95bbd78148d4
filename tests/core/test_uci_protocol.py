# tests/core/test_uci_protocol.py
import pytest

from chessmaster.core.uci_protocol import (
    SearchStage,
    UciSearchMachine,
    build_go_command,
    build_position_command,
    parse_info_line,
)
from chessmaster.exceptions import EngineProtocolError
from chessmaster.types import Evaluation, ScoreKind, SearchRequest


def drive(machine, lines):
    """Feeds canned engine output, collecting every command the machine emits."""
    sent = list(machine.start())
    for line in lines:
        sent.extend(machine.feed(line))
        if machine.done:
            break
    return sent


HANDSHAKE = ["id name Stockfish 16", "id author the Stockfish developers", "uciok", "readyok"]


def test_parse_info_line_with_centipawns():
    info = parse_info_line("info depth 14 seldepth 20 multipv 2 score cp -23 nodes 123456 pv e2e4 e7e5")
    assert info.multipv == 2
    assert info.depth == 14
    assert info.seldepth == 20
    assert info.evaluation == Evaluation(kind=ScoreKind.CENTIPAWNS, value=-23)
    assert info.pv == ["e2e4", "e7e5"]


def test_parse_info_line_with_mate_and_bound():
    info = parse_info_line("info depth 9 score mate -3 lowerbound pv h5f7")
    assert info.multipv == 1
    assert info.evaluation == Evaluation(kind=ScoreKind.MATE, value=-3)
    assert info.bound == "lowerbound"


def test_parse_info_string_is_ignored():
    info = parse_info_line("info string NNUE evaluation using nn-abc.nnue enabled")
    assert not info.carries_line


def test_build_position_command():
    assert build_position_command(None) == "position startpos"
    assert build_position_command(None, ["e2e4", " ", "e7e5"]) == "position startpos moves e2e4 e7e5"
    fen = "8/8/8/8/8/8/8/K6k w - - 0 1"
    assert build_position_command(fen, []) == f"position fen {fen}"


def test_build_go_command_prefers_depth():
    assert build_go_command(10, 500, 1000) == "go depth 10"
    assert build_go_command(None, 500, 1000) == "go movetime 500"
    assert build_go_command(None, None, 1000) == "go movetime 1000"
    assert build_go_command(0, 0, 750) == "go movetime 750"


def test_stages_advance_only_on_sentinels():
    # Arrange
    machine = UciSearchMachine(SearchRequest(depth=10))

    # Act / Assert
    assert machine.start() == ["uci"]
    assert machine.feed("id name Stockfish") == []
    assert machine.feed("readyok") == []
    assert machine.stage is SearchStage.HANDSHAKE

    assert machine.feed("uciok") == ["setoption name Skill Level value 10", "isready"]
    assert machine.stage is SearchStage.AWAITING_READY

    assert machine.feed("readyok") == ["position startpos", "go depth 10"]
    assert machine.stage is SearchStage.SEARCHING


def test_multipv_option_only_sent_when_above_one():
    machine = UciSearchMachine(SearchRequest(multipv=3, skill_level=25))
    commands = drive(machine, ["uciok"])
    assert commands == [
        "uci",
        "setoption name Skill Level value 20",
        "setoption name MultiPV value 3",
        "isready",
    ]


def test_single_line_search_result():
    # Arrange
    machine = UciSearchMachine(SearchRequest(fen="rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1", depth=10))

    # Act
    drive(machine, HANDSHAKE + [
        "info depth 1 score cp 20 pv e2e4",
        "info depth 8 currmove d2d4 currmovenumber 2",
        "info depth 10 score cp 31 pv e2e4 e7e5 g1f3",
        "bestmove e2e4 ponder e7e5",
    ])
    result = machine.result()

    # Assert
    assert result.best_move == "e2e4"
    assert result.ponder == "e7e5"
    assert result.depth == 10
    assert result.evaluation == Evaluation(kind=ScoreKind.CENTIPAWNS, value=31)
    assert result.pv == ["e2e4", "e7e5", "g1f3"]
    assert len(result.lines) == 1


def test_multipv_lines_are_ordered_and_truncated():
    machine = UciSearchMachine(SearchRequest(multipv=2), max_multipv=10)
    drive(machine, HANDSHAKE + [
        "info depth 5 multipv 3 score cp -40 pv a2a3",
        "info depth 5 multipv 2 score cp 10 pv d2d4",
        "info depth 5 multipv 1 score cp 25 pv e2e4",
        "bestmove e2e4",
    ])
    result = machine.result()

    assert [line.index for line in result.lines] == [1, 2]
    assert result.lines[1].best_move == "d2d4"
    assert result.evaluation.value == 25
    assert result.ponder is None


def test_bestmove_none_means_no_move():
    machine = UciSearchMachine(SearchRequest())
    drive(machine, HANDSHAKE + ["info depth 0 score mate 0", "bestmove (none)"])
    result = machine.result()
    assert result.best_move is None
    assert result.evaluation == Evaluation(kind=ScoreKind.MATE, value=0)


def test_malformed_bestmove_is_a_protocol_error():
    machine = UciSearchMachine(SearchRequest())
    drive(machine, HANDSHAKE)
    with pytest.raises(EngineProtocolError):
        machine.feed("bestmove")


def test_result_before_done_is_a_protocol_error():
    machine = UciSearchMachine(SearchRequest())
    drive(machine, ["uciok"])
    with pytest.raises(EngineProtocolError):
        machine.result()
