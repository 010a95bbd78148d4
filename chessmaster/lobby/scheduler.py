"""
Cancelable delayed callbacks keyed by participant id.

The registry never holds timer handles itself; it schedules by key and cancels
by key, and cancelling a key that has nothing pending is a no-op.
"""

import asyncio
from typing import Callable, Dict, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@runtime_checkable
class TaskScheduler(Protocol):
    def schedule(self, key: str, delay_s: float, callback: Callable[[], None]) -> None: ...
    def cancel(self, key: str) -> bool: ...
    def is_pending(self, key: str) -> bool: ...


class AsyncioScheduler(TaskScheduler):
    """A `TaskScheduler` on top of `loop.call_later`."""

    def __init__(self):
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, delay_s: float, callback: Callable[[], None]) -> None:
        """Arms `callback` after `delay_s`, replacing anything pending under `key`."""
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(delay_s, self._fire, key, callback)

    def _fire(self, key: str, callback: Callable[[], None]) -> None:
        self._handles.pop(key, None)
        try:
            callback()
        except Exception:
            logger.exception("Scheduled callback failed.", key=key)

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_pending(self, key: str) -> bool:
        return key in self._handles

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)
