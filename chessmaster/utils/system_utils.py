"""
Provides generic, system-level utility functions.
"""
import os
import shutil
from pathlib import Path
from typing import Iterable, List, Optional

from chessmaster.exceptions import EngineNotConfiguredError


def _is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def find_stockfish_executable(
    provided_path: Optional[str] = None, candidates: Iterable[str] = ()
) -> Path:
    """
    Finds a valid engine executable, raising EngineNotConfiguredError if unsuccessful.

    The search is performed in the following order of precedence:
    1. The path provided via the `provided_path` argument. When given, it is
       authoritative: a non-executable file here is an error, not a fallthrough.
    2. The configured candidate locations, in order.
    3. The path specified in the `STOCKFISH_PATH` environment variable.
    4. The system's `PATH` environment variable (using `shutil.which`).

    Returns:
        A `pathlib.Path` object to the resolved executable.
    """
    if provided_path:
        path = Path(provided_path)
        if _is_executable_file(path):
            return path.resolve()
        raise EngineNotConfiguredError(f"Stockfish binary not executable at {path}.")

    tried: List[str] = []
    search_paths = [Path(candidate) for candidate in candidates]
    if os.environ.get('STOCKFISH_PATH'):
        search_paths.append(Path(os.environ['STOCKFISH_PATH']))

    for path in search_paths:
        tried.append(str(path))
        if _is_executable_file(path):
            return path.resolve()

    if system_path := shutil.which('stockfish'):
        return Path(system_path)
    tried.append("stockfish (PATH)")

    raise EngineNotConfiguredError(
        "Stockfish binary path could not be resolved. Set CHESSMASTER_ENGINE__PATH "
        "or STOCKFISH_PATH, or run `install-engine`.\nPaths tried:\n - " + "\n - ".join(tried)
    )
