# main.py
"""
Command-line entry point for the Chessmaster server.

Subcommands:
    serve           Run the WebSocket lobby server.
    bestmove        Ask the engine for the best move in a position.
    analyze         Analyze a recorded game (PGN file) and print JSON.
    install-engine  Download a Stockfish build into the configured directory.
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import structlog
import uvicorn

from chessmaster.config.settings import Settings, settings as default_settings
from chessmaster.containers import get_container
from chessmaster.exceptions import ChessmasterError
from chessmaster.gateway.websocket_app import create_app
from chessmaster.orchestration.analysis_pipeline import AnalysisOptions, GameAnalysisPipeline
from chessmaster.services.engine_installer import EngineInstaller
from chessmaster.services.engine_session import StockfishService
from chessmaster.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Online chess lobbies and Stockfish-backed analysis.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--log-level", default=None, help="Overrides CHESSMASTER_DEFAULT_LOG_LEVEL.")
    parser.add_argument("--json-logs", action="store_true", help="Render console logs as JSON.")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    serve = subparsers.add_parser("serve", help="Run the WebSocket lobby server")
    serve.add_argument("--host", default=None, help="Bind address (defaults to settings).")
    serve.add_argument("--port", type=int, default=None, help="Bind port (defaults to settings).")

    best = subparsers.add_parser("bestmove", help="Search one position")
    best.add_argument("--fen", default=None, help="Position to search; the start position if omitted.")
    best.add_argument("--moves", nargs="*", default=[], help="Coordinate moves replayed onto the position.")
    best.add_argument("--depth", type=int, default=None)
    best.add_argument("--movetime", type=int, default=None, help="Search time in milliseconds.")
    best.add_argument("--skill", type=int, default=None, help="Skill Level 0-20.")
    best.add_argument("--multipv", type=int, default=1)
    best.add_argument("--timeout", type=int, default=None, help="Call deadline in milliseconds.")

    analyze = subparsers.add_parser("analyze", help="Analyze a PGN file")
    analyze.add_argument("pgn", type=Path, help="Path to the PGN file.")
    analyze.add_argument("--depth", type=int, default=None)
    analyze.add_argument("--movetime", type=int, default=None, help="Per-search time in milliseconds.")
    analyze.add_argument("--multipv", type=int, default=None)
    analyze.add_argument("--max-plies", type=int, default=None)

    subparsers.add_parser("install-engine", help="Download Stockfish for this platform")
    return parser


async def _bestmove(app_settings: Settings, args: argparse.Namespace) -> dict:
    service: StockfishService = get_container(app_settings).resolve(StockfishService)
    result = await service.best_move(
        fen=args.fen, moves=args.moves, depth=args.depth, movetime_ms=args.movetime,
        skill_level=args.skill, multipv=args.multipv, timeout_ms=args.timeout,
    )
    return result.to_dict()


async def _analyze(app_settings: Settings, args: argparse.Namespace) -> dict:
    pipeline: GameAnalysisPipeline = get_container(app_settings).resolve(GameAnalysisPipeline)
    options = AnalysisOptions(
        depth=args.depth, movetime_ms=args.movetime, multipv=args.multipv,
        max_plies=args.max_plies, thresholds=app_settings.analysis.thresholds,
    )
    analysis = await pipeline.analyze_game(args.pgn.read_text(encoding="utf-8"), options)
    return analysis.to_dict()


async def _install(app_settings: Settings) -> dict:
    installer: EngineInstaller = get_container(app_settings).resolve(EngineInstaller)
    return {"installed": str(await installer.install())}


def _serve(app_settings: Settings, args: argparse.Namespace) -> None:
    app = create_app(get_container(app_settings))
    uvicorn.run(
        app,
        host=args.host or app_settings.server.host,
        port=args.port or app_settings.server.port,
        log_config=None,
    )


def main(argv: Optional[List[str]] = None, app_settings: Settings = default_settings) -> int:
    """Parses arguments, configures logging and runs the chosen command."""
    args = build_parser().parse_args(argv)
    setup_logging(
        log_level=args.log_level or app_settings.default_log_level,
        force_json_console=args.json_logs or app_settings.json_logs,
    )

    if args.command == "serve":
        _serve(app_settings, args)
        return 0

    commands = {
        "bestmove": lambda: _bestmove(app_settings, args),
        "analyze": lambda: _analyze(app_settings, args),
        "install-engine": lambda: _install(app_settings),
    }
    try:
        payload = asyncio.run(commands[args.command]())
    except (ChessmasterError, OSError) as e:
        logger.error("Command failed.", command=args.command, error=str(e))
        return 1
    json.dump(payload, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
