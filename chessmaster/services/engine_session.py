"""
Provides the concrete `EngineService` that talks UCI to a Stockfish subprocess.

Each `search()` call spawns its own engine process, walks it through the
handshake/ready/search stages of `UciSearchMachine`, and returns a structured
`SearchResult`. The process is terminated and reaped on every exit path:
success, timeout, engine failure, or cancellation of the caller.
"""

import asyncio
import time
from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

import structlog

from chessmaster.core.uci_protocol import UciSearchMachine
from chessmaster.exceptions import (EngineError, EnginePrematureExitError,
                                    EngineProtocolError, EngineSpawnError,
                                    EngineTimeoutError)
from chessmaster.tracing import traced
from chessmaster.types import EngineService, FEN, SearchRequest, SearchResult
from chessmaster.utils import metrics
from chessmaster.utils.system_utils import find_stockfish_executable

if TYPE_CHECKING:
    from chessmaster.config.settings import EngineSettings

logger = structlog.get_logger(__name__)

# Time given to the engine to honour `quit` before it is killed.
QUIT_GRACE_S = 0.5

# Longest stdout line accepted from the engine.
STDOUT_LIMIT_BYTES = 1024 * 1024


class _EngineProcess:
    """One spawned engine subprocess plus its stderr collector."""

    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process
        self._stderr_chunks: List[str] = []
        self._stderr_task = asyncio.create_task(self._collect_stderr())

    async def _collect_stderr(self) -> None:
        assert self.process.stderr is not None
        while chunk := await self.process.stderr.read(4096):
            self._stderr_chunks.append(chunk.decode(errors="replace"))

    @property
    def stderr_text(self) -> str:
        return "".join(self._stderr_chunks).strip()

    async def drain_stderr(self) -> str:
        """Waits briefly for stderr to reach EOF and returns everything captured."""
        try:
            await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=QUIT_GRACE_S)
        except asyncio.TimeoutError:
            pass
        return self.stderr_text

    @property
    def stdin_writable(self) -> bool:
        stdin = self.process.stdin
        return stdin is not None and not stdin.is_closing() and self.process.returncode is None

    async def send(self, commands: List[str]) -> None:
        if not commands:
            return
        if not self.stdin_writable:
            raise EnginePrematureExitError("Engine stdin is not writable.", self.stderr_text)
        payload = "".join(f"{command}\n" for command in commands)
        logger.debug("Engine <<", commands=commands)
        try:
            self.process.stdin.write(payload.encode())
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise EnginePrematureExitError("Engine stdin closed unexpectedly.", self.stderr_text) from e

    async def read_line(self) -> Optional[str]:
        """Returns the next stdout line, or None at end of stream."""
        assert self.process.stdout is not None
        try:
            raw = await self.process.stdout.readline()
        except (ValueError, asyncio.LimitOverrunError) as e:
            raise EngineProtocolError(
                f"Engine output line exceeds {STDOUT_LIMIT_BYTES} bytes.", self.stderr_text
            ) from e
        if not raw:
            return None
        return raw.decode(errors="replace")

    async def terminate(self) -> None:
        """Asks the engine to quit, then kills it if needed and reaps it."""
        if self.stdin_writable:
            try:
                self.process.stdin.write(b"quit\n")
                await self.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
        if self.process.stdin is not None and not self.process.stdin.is_closing():
            self.process.stdin.close()

        try:
            await asyncio.wait_for(self.process.wait(), timeout=QUIT_GRACE_S)
        except asyncio.TimeoutError:
            if self.process.returncode is None:
                self.process.kill()
            await self.process.wait()

        # stderr reaches EOF once the process is gone.
        try:
            await asyncio.wait_for(self._stderr_task, timeout=QUIT_GRACE_S)
        except asyncio.TimeoutError:
            self._stderr_task.cancel()


class StockfishService(EngineService):
    """
    A stateless engine adapter: position in, scored move out.

    Calls are independent; an `asyncio.Semaphore` bounds how many engine
    processes may be alive at the same time.
    """

    def __init__(self, settings: "EngineSettings"):
        """
        Initializes the service.

        Args:
            settings: Engine configuration (path, defaults and bounds).
        """
        self._settings = settings
        self._slots = asyncio.Semaphore(settings.max_concurrent_searches)

    def resolve_executable(self) -> Path:
        """Resolves the engine binary, raising `EngineNotConfiguredError` if unusable."""
        return find_stockfish_executable(self._settings.path or None, self._settings.candidates)

    async def _spawn(self, executable: Path) -> _EngineProcess:
        try:
            process = await asyncio.create_subprocess_exec(
                str(executable),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STDOUT_LIMIT_BYTES,
            )
        except OSError as e:
            raise EngineSpawnError(f"Unable to spawn Stockfish binary: {e}") from e
        logger.debug("Engine process spawned.", pid=process.pid, executable=str(executable))
        return _EngineProcess(process)

    async def _converse(self, engine: _EngineProcess, machine: UciSearchMachine) -> SearchResult:
        await engine.send(machine.start())
        while not machine.done:
            line = await engine.read_line()
            if line is None:
                returncode = await engine.process.wait()
                raise EnginePrematureExitError(
                    f"Stockfish exited prematurely (exit code {returncode}) "
                    f"during stage '{machine.stage.value}'.",
                    await engine.drain_stderr(),
                )
            await engine.send(machine.feed(line))
        return machine.result()

    @traced("search")
    async def search(self, request: SearchRequest) -> SearchResult:
        """
        Runs one search to completion.

        Raises:
            EngineNotConfiguredError: No usable executable.
            EngineSpawnError: The process could not be started.
            EngineTimeoutError: No `bestmove` before the deadline.
            EngineProtocolError: Output that does not fit the protocol.
            EnginePrematureExitError: The process died before `bestmove`.
        """
        executable = self.resolve_executable()
        timeout_ms = request.timeout_ms if request.timeout_ms and request.timeout_ms > 0 else self._settings.default_timeout_ms
        machine = UciSearchMachine(
            request,
            default_skill_level=self._settings.default_skill_level,
            default_movetime_ms=self._settings.default_movetime_ms,
            max_multipv=self._settings.max_multipv,
        )

        started = time.perf_counter()
        outcome = "cancelled"
        engine: Optional[_EngineProcess] = None

        async def run_session() -> SearchResult:
            nonlocal engine
            async with self._slots:
                engine = await self._spawn(executable)
                try:
                    return await self._converse(engine, machine)
                finally:
                    await engine.terminate()

        # One deadline covers waiting for a slot, spawning and the conversation.
        try:
            result = await asyncio.wait_for(run_session(), timeout=timeout_ms / 1000)
            outcome = "ok"
        except asyncio.TimeoutError as e:
            outcome = "timeout"
            stage = f"stage '{machine.stage.value}'" if engine is not None else "queue for an engine slot"
            raise EngineTimeoutError(
                f"Stockfish response timed out after {timeout_ms} ms in {stage}.",
                engine.stderr_text if engine is not None else "",
            ) from e
        except EngineError as e:
            outcome = e.kind
            raise
        finally:
            metrics.ENGINE_SEARCHES_TOTAL.labels(outcome=outcome).inc()
            metrics.ENGINE_SEARCH_DURATION_SECONDS.observe(time.perf_counter() - started)

        logger.info(
            "Engine search complete.",
            best_move=result.best_move, depth=result.depth, lines=len(result.lines),
        )
        return result

    async def best_move(
        self,
        fen: Optional[FEN] = None,
        moves: Optional[List[str]] = None,
        depth: Optional[int] = None,
        movetime_ms: Optional[int] = None,
        skill_level: Optional[int] = None,
        multipv: int = 1,
        timeout_ms: Optional[int] = None,
    ) -> SearchResult:
        """Keyword-argument convenience wrapper around `search()`."""
        return await self.search(SearchRequest(
            fen=fen, moves=list(moves or []), depth=depth, movetime_ms=movetime_ms,
            skill_level=skill_level, multipv=multipv, timeout_ms=timeout_ms,
        ))
