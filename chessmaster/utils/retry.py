"""
Retry support for the two operations allowed to repeat themselves: statements
against the completed-game store while SQLite reports lock contention, and
engine archive downloads.

Everything on the lobby and engine paths fails fast instead; a move or a
search is never silently replayed.
"""
import asyncio
import functools
import random
from typing import Any, Callable, Coroutine, Optional, Tuple, Type

import structlog

from chessmaster.utils import metrics

logger = structlog.get_logger(__name__)

AsyncFn = Callable[..., Coroutine]


def retry_with_backoff(
    attempts: int = 3,
    initial_backoff_s: float = 0.5,
    max_backoff_s: float = 5.0,
    jitter_factor: float = 0.2,
    exceptions_to_catch: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError),
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    target: str = "unknown",
) -> Callable[[AsyncFn], AsyncFn]:
    """
    Retries a coroutine function with exponential backoff and jitter.

    Args:
        attempts: Total tries, the first call included.
        initial_backoff_s: Delay before the second try; doubled after each failure.
        max_backoff_s: Upper bound for a single delay.
        jitter_factor: Fraction of the delay added or subtracted at random.
        exceptions_to_catch: Exception classes eligible for a retry.
        retry_if: Optional predicate narrowing `exceptions_to_catch`; a caught
            error it rejects is re-raised at once.
        target: Label for `TRANSIENT_ERRORS_TOTAL` ("games", "download").
    """
    def decorator(func: AsyncFn) -> AsyncFn:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_backoff_s
            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions_to_catch as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    metrics.TRANSIENT_ERRORS_TOTAL.labels(target=target).inc()

                    if attempt == attempts:
                        logger.error(
                            "Giving up after repeated transient errors.",
                            operation=func.__qualname__, target=target,
                            attempts=attempts, error=str(e),
                        )
                        raise

                    jitter = random.uniform(-delay * jitter_factor, delay * jitter_factor)
                    wait_s = max(0.0, min(max_backoff_s, delay + jitter))
                    logger.warning(
                        "Transient error, retrying.",
                        operation=func.__qualname__, target=target,
                        attempt=attempt, wait_s=round(wait_s, 2), error=str(e),
                    )
                    await asyncio.sleep(wait_s)
                    delay *= 2
        return wrapper
    return decorator
