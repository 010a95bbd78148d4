"""
Defines the full-game analysis pipeline.

The pipeline replays a recorded game from its start position and, for every
ply, asks the engine twice: once before the move (with several candidate lines)
for the best achievable score, and once after the move (single line) for the
score the player actually reached. Both are brought onto the mover's centipawn
scale and the difference is classified into a severity tier.

Engine calls are issued strictly one after the other. A failed engine call is
recorded against its ply and the loop carries on; a move the rules engine
rejects ends the analysis early.
"""

from dataclasses import dataclass, field
from typing import List, Optional, TYPE_CHECKING

import structlog

from chessmaster.config.settings import SeverityThresholdsModel
from chessmaster.core.chess_utils import (clamp_int, evaluation_to_centipawns,
                                          white_perspective)
from chessmaster.core.move_classifier import MoveClassifier, compute_delta
from chessmaster.exceptions import EngineError, IllegalMoveError
from chessmaster.tracing import traced
from chessmaster.types import (AnalysisIssue, AnalysisMeta, EngineService,
                               GameAnalysis, MoveAnnotation, PlyEvaluation,
                               SearchRequest, SearchResult)
from chessmaster.utils import metrics

if TYPE_CHECKING:
    from chessmaster.config.settings import AnalysisSettings
    from chessmaster.core.rules import RulesEngine

logger = structlog.get_logger(__name__)


@dataclass
class AnalysisOptions:
    """Caller-supplied knobs for one analysis run."""
    depth: Optional[int] = None
    movetime_ms: Optional[int] = None
    skill_level: Optional[int] = None
    timeout_ms: Optional[int] = None
    multipv: Optional[int] = None
    max_plies: Optional[int] = None
    thresholds: SeverityThresholdsModel = field(default_factory=SeverityThresholdsModel)


class GameAnalysisPipeline:
    """Scores every ply of a recorded game and flags the costly ones."""

    def __init__(self, engine: EngineService, rules: "RulesEngine", settings: "AnalysisSettings"):
        """
        Args:
            engine: Any `EngineService`; used as a pure function.
            rules: The rules engine adapter used to load and replay the game.
            settings: Defaults for line count and severity thresholds.
        """
        self._engine = engine
        self._rules = rules
        self._settings = settings

    def _request(self, fen: str, options: AnalysisOptions, multipv: int) -> SearchRequest:
        return SearchRequest(
            fen=fen, depth=options.depth, movetime_ms=options.movetime_ms,
            skill_level=options.skill_level, timeout_ms=options.timeout_ms, multipv=multipv,
        )

    async def _search_or_record(
        self, request: SearchRequest, ply: int, context: str, errors: List[AnalysisIssue]
    ) -> Optional[SearchResult]:
        try:
            return await self._engine.search(request)
        except EngineError as e:
            logger.warning("Engine call failed during analysis.", ply=ply, context=context, kind=e.kind)
            errors.append(AnalysisIssue(ply=ply, context=context, message=str(e)))
            return None

    @traced("analysis")
    async def analyze_game(self, pgn: str, options: Optional[AnalysisOptions] = None) -> GameAnalysis:
        """
        Runs the analysis over the main line of `pgn`.

        Raises:
            PgnParsingError: If the recorded game cannot be loaded at all.
        """
        options = options or AnalysisOptions(thresholds=self._settings.thresholds)
        recorded = self._rules.load_recorded_game(pgn)
        board = self._rules.new_position(recorded.start_fen)
        classifier = MoveClassifier(options.thresholds)

        multipv = clamp_int(
            options.multipv, 1, self._settings.max_multipv, self._settings.default_multipv
        ) if options.multipv is not None else self._settings.default_multipv

        total_plies = len(recorded.moves)
        limit = total_plies
        if options.max_plies is not None and options.max_plies > 0:
            limit = min(options.max_plies, total_plies)

        logger.info("Starting game analysis.", total_plies=total_plies, analysed_plies=limit, multipv=multipv)

        timeline: List[PlyEvaluation] = []
        annotations: List[MoveAnnotation] = []
        errors: List[AnalysisIssue] = []

        for index, move in enumerate(recorded.moves[:limit]):
            ply = index + 1
            fen_before = self._rules.encode(board)
            move_number = board.fullmove_number

            pre = await self._search_or_record(self._request(fen_before, options, multipv), ply, "pre-move", errors)

            try:
                applied = self._rules.apply_move(board, uci=move.uci())
            except IllegalMoveError:
                errors.append(AnalysisIssue(ply=ply, context="apply-move", message=f"Failed to apply move {move.uci()}"))
                logger.warning("Rules engine rejected recorded move, stopping analysis.", ply=ply, uci=move.uci())
                break

            post = await self._search_or_record(self._request(applied.fen_after, options, 1), ply, "post-move", errors)

            best_score = evaluation_to_centipawns(pre.evaluation) if pre else None
            post_score = evaluation_to_centipawns(post.evaluation) if post else None
            # The post-move score is from the opponent's point of view.
            actual_score = -post_score if post_score is not None else None
            delta = compute_delta(best_score, actual_score)
            severity = classifier.classify_delta(delta)

            timeline.append(PlyEvaluation(
                ply=ply, move_number=move_number, side=applied.side, san=applied.san, uci=applied.uci,
                fen_before=fen_before, fen_after=applied.fen_after,
                depth=post.depth if post else None,
                evaluation=post.evaluation if post else None,
                score_cp=post_score,
                score_cp_white=white_perspective(post_score, applied.side.opponent),
                principal_variation=list(post.pv) if post else [],
            ))
            metrics.ANALYSIS_PLIES_TOTAL.inc()

            if severity is not None:
                top_line = pre.lines[0] if pre.lines else None
                recommended = pre.best_move or (top_line.best_move if top_line else None) or (pre.pv[0] if pre.pv else None)
                annotations.append(MoveAnnotation(
                    ply=ply, move_number=move_number, side=applied.side, san=applied.san,
                    severity=severity, delta_cp=delta, best_score_cp=best_score, actual_score_cp=actual_score,
                    recommended_move=recommended,
                    recommended_line=list(top_line.pv) if top_line else list(pre.pv),
                ))
                metrics.ANALYSIS_ANNOTATIONS_TOTAL.labels(severity=severity.value).inc()
                logger.info("Flagged move.", ply=ply, san=applied.san, severity=severity.value, delta_cp=delta)

        meta = AnalysisMeta(
            total_plies=total_plies,
            analyzed_plies=len(timeline),
            thresholds=options.thresholds.model_dump(),
            depth=options.depth,
            movetime_ms=options.movetime_ms,
            final_fen=self._rules.encode(board),
        )
        logger.info(
            "Game analysis complete.",
            analysed_plies=meta.analyzed_plies, annotations=len(annotations), errors=len(errors),
        )
        return GameAnalysis(meta=meta, timeline=timeline, annotations=annotations, errors=errors)
