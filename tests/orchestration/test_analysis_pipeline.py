# tests/orchestration/test_analysis_pipeline.py
from unittest.mock import AsyncMock, MagicMock

import pytest

from chessmaster.config.settings import AnalysisSettings
from chessmaster.core.rules import RulesEngine
from chessmaster.exceptions import EngineTimeoutError, IllegalMoveError, PgnParsingError
from chessmaster.orchestration.analysis_pipeline import AnalysisOptions, GameAnalysisPipeline
from chessmaster.types import (EngineLine, EngineService, Evaluation, ScoreKind,
                               SearchResult, Severity, Side)

PGN = "1. e4 e5 2. Qh5 *"


def scored(cp, pv=("e2e4",)):
    evaluation = Evaluation(kind=ScoreKind.CENTIPAWNS, value=cp)
    pv = list(pv)
    return SearchResult(
        best_move=pv[0] if pv else None, ponder=None, evaluation=evaluation, depth=12, pv=pv,
        lines=[EngineLine(index=1, depth=12, evaluation=evaluation, pv=pv)],
    )


def make_pipeline(responses, rules=None):
    engine = MagicMock(spec=EngineService)
    engine.search = AsyncMock(side_effect=responses)
    return GameAnalysisPipeline(engine, rules or RulesEngine(), AnalysisSettings()), engine


@pytest.mark.asyncio
async def test_single_blunder_is_flagged():
    # Arrange: plies 1-2 cost nothing; ply 3 swings 300 cp against the mover.
    responses = [
        scored(20), scored(-20),
        scored(20), scored(-20),
        scored(20, pv=("g1f3", "b8c6")), scored(280, pv=("b8c6",)),
    ]
    pipeline, engine = make_pipeline(responses)

    # Act
    analysis = await pipeline.analyze_game(PGN)

    # Assert
    assert analysis.meta.total_plies == 3
    assert analysis.meta.analyzed_plies == 3
    assert analysis.errors == []
    assert len(analysis.annotations) == 1

    annotation = analysis.annotations[0]
    assert annotation.ply == 3
    assert annotation.move_number == 2
    assert annotation.side is Side.WHITE
    assert annotation.san == "Qh5"
    assert annotation.severity is Severity.BLUNDER
    assert annotation.delta_cp == 300
    assert annotation.best_score_cp == 20
    assert annotation.actual_score_cp == -280
    assert annotation.recommended_move == "g1f3"
    assert annotation.recommended_line == ["g1f3", "b8c6"]

    third = analysis.timeline[2]
    assert third.score_cp == 280
    # After White's move Black is to move, so White's view is negated.
    assert third.score_cp_white == -280
    assert engine.search.await_count == 6


@pytest.mark.asyncio
async def test_pre_and_post_searches_use_expected_line_counts():
    pipeline, engine = make_pipeline([scored(0)] * 6)

    await pipeline.analyze_game(PGN, AnalysisOptions(depth=8, multipv=9))

    requests = [c.args[0] for c in engine.search.await_args_list]
    assert [r.multipv for r in requests] == [5, 1, 5, 1, 5, 1]
    assert all(r.depth == 8 for r in requests)
    assert requests[0].fen == "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"


@pytest.mark.asyncio
async def test_default_line_count_is_three():
    pipeline, engine = make_pipeline([scored(0)] * 6)

    await pipeline.analyze_game(PGN)

    assert engine.search.await_args_list[0].args[0].multipv == 3


@pytest.mark.asyncio
async def test_engine_failures_are_recorded_and_analysis_continues():
    responses = [
        scored(20), EngineTimeoutError("timed out"),
        scored(20), scored(-20),
        EngineTimeoutError("timed out again"), scored(-20),
    ]
    pipeline, _ = make_pipeline(responses)

    analysis = await pipeline.analyze_game(PGN)

    assert analysis.meta.analyzed_plies == 3
    assert [(e.ply, e.context) for e in analysis.errors] == [(1, "post-move"), (3, "pre-move")]
    assert analysis.timeline[0].score_cp is None
    assert analysis.timeline[0].evaluation is None
    assert analysis.annotations == []


@pytest.mark.asyncio
async def test_max_plies_caps_the_analysis():
    pipeline, engine = make_pipeline([scored(0)] * 4)

    analysis = await pipeline.analyze_game(PGN, AnalysisOptions(max_plies=2))

    assert analysis.meta.total_plies == 3
    assert analysis.meta.analyzed_plies == 2
    assert engine.search.await_count == 4
    assert analysis.meta.final_fen == "rnbqkbnr/pppp1ppp/8/4p3/4P3/8/PPPP1PPP/RNBQKBNR w KQkq - 0 2"


class RejectingRules(RulesEngine):
    def apply_move(self, board, uci=None, san=None):
        if uci == "e7e5":
            raise IllegalMoveError("rejected", move_spec=uci)
        return super().apply_move(board, uci=uci, san=san)


@pytest.mark.asyncio
async def test_rules_rejection_stops_the_analysis():
    pipeline, engine = make_pipeline([scored(0)] * 6, rules=RejectingRules())

    analysis = await pipeline.analyze_game(PGN)

    assert analysis.meta.analyzed_plies == 1
    assert analysis.errors[-1].context == "apply-move"
    assert analysis.errors[-1].ply == 2
    # Pre-move search of ply 2 ran, its post-move search did not.
    assert engine.search.await_count == 3


@pytest.mark.asyncio
async def test_unparsable_game_is_rejected():
    pipeline, engine = make_pipeline([])

    with pytest.raises(PgnParsingError):
        await pipeline.analyze_game("")
    engine.search.assert_not_awaited()


@pytest.mark.asyncio
async def test_to_dict_is_serializable():
    pipeline, _ = make_pipeline([scored(0)] * 6)

    analysis = await pipeline.analyze_game(PGN)
    data = analysis.to_dict()

    assert data["meta"]["thresholds"] == {"inaccuracy": 50, "mistake": 100, "blunder": 250}
    assert len(data["timeline"]) == 3
