"""
Structured logging for the lobby server and the one-shot CLI commands.

structlog renders every record, including those from uvicorn, FastAPI and
aiosqlite, which reach the root handler through `ProcessorFormatter`. The
per-call context bound by `chessmaster.tracing` (search and analysis run ids)
and by the gateway (connection and player ids) is merged into every event.
"""

import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import structlog
from structlog.types import Processor

# Third-party loggers that are too chatty at the application's level.
NOISY_LOGGERS: Dict[str, int] = {
    "uvicorn.access": logging.WARNING,
    "aiosqlite": logging.INFO,
    "urllib3": logging.WARNING,
    "asyncio": logging.WARNING,
}


def _shared_processors() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(
    log_level: str = "INFO",
    log_to_console: bool = True,
    log_file: Optional[Path] = None,
    force_json_console: bool = False,
    extra_processors: Optional[List[Processor]] = None,
) -> None:
    """
    Configures structlog and the stdlib root logger once per process.

    Console output is human-readable on a terminal and JSON when
    `force_json_console` is set (e.g. under a log collector). A `log_file`
    always receives JSON lines. CLI commands print their result on stdout,
    so the console handler writes to stderr.
    """
    shared = _shared_processors()

    structlog.configure(
        processors=shared + list(extra_processors or []) + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: List[logging.Handler] = []
    if log_to_console:
        renderer: Processor
        if force_json_console:
            renderer = structlog.processors.JSONRenderer()
        else:
            renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(structlog.stdlib.ProcessorFormatter(foreign_pre_chain=shared, processor=renderer))
        handlers.append(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared, processor=structlog.processors.JSONRenderer(),
        ))
        handlers.append(file_handler)

    level = logging.getLevelName(log_level.upper())
    logging.basicConfig(handlers=handlers, level=level, force=True)
    for name, floor in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(floor, level if isinstance(level, int) else logging.INFO))
