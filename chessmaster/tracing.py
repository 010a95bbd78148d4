# chessmaster/tracing.py

"""
tracing
~~~~~~~

Correlation ids and context-aware logging for out-of-band operations
(engine searches, game analyses).
"""

import functools
import uuid
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)


def new_correlation_id() -> str:
    """A short, human-readable id for a single unit of work."""
    return uuid.uuid4().hex[:12]


def traced(operation: str) -> Callable[[Callable], Callable]:
    """
    A decorator binding a fresh correlation id for the duration of an async call.

    Every log line emitted while the call runs carries `<operation>_id`, so
    the interleaved output of concurrent searches can be told apart.
    """
    key = f"{operation}_id"

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            with structlog.contextvars.bound_contextvars(**{key: new_correlation_id()}):
                logger.debug("Entering operation.", operation=operation)
                result = await func(*args, **kwargs)
                logger.debug("Exiting operation.", operation=operation)
                return result
        return wrapper
    return decorator
