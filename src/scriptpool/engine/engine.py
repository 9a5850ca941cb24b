# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
ExecutionEngine - run script files against a pool of interpreter contexts.

Lifecycle:
- UNINITIALIZED --initialize()--> READY
- READY --execute()--> READY (success or failure)
- READY --stop_all()--> STOPPED
- STOPPED --initialize()--> READY (fresh pool)

stop_all() is abrupt: contexts mid-run are killed and those runs fail.
"""

import asyncio
import functools
import logging
import stat
import time
import weakref
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from scriptpool.engine.context import ExecutionContext, OutputCallback, build_command
from scriptpool.engine.errors import (
    RUN_FAILURES,
    NotInitializedError,
    PoolInitializationError,
    ScriptExecutionError,
    ScriptNotFoundError,
    ScriptReadError,
)
from scriptpool.engine.models import EngineConfig, EngineState, RunRequest, RunResult
from scriptpool.engine.pool import ContextFactory, ContextPool

logger = logging.getLogger(__name__)


class ExecutionEngine:
    """Owns a bounded context pool and runs scripts through it.

    The engine is a caller-owned object; create one per application and pass
    it to whoever needs to run scripts.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        context_factory: Optional[ContextFactory] = None,
    ):
        """
        Initialize the engine. No contexts are started until initialize().

        Args:
            config: Pool bounds and interpreter settings (defaults if omitted)
            context_factory: Override how contexts are created (tests)
        """
        self.config = config or EngineConfig()
        self.config.validate()
        self._context_factory = context_factory
        self._pool: Optional[ContextPool] = None
        self._state = EngineState.UNINITIALIZED
        self._init_lock = asyncio.Lock()
        self._finalizer: Optional[weakref.finalize] = None
        # Bumped by stop_all so an initialize() in flight can see it was cancelled
        self._stop_count = 0

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def pool(self) -> Optional[ContextPool]:
        """The live pool, or None when not initialized."""
        return self._pool

    @property
    def context_count(self) -> int:
        """Live contexts in the pool (0 when not initialized)."""
        return self._pool.size if self._pool is not None else 0

    async def initialize(self) -> None:
        """Build and open the context pool. No-op when already ready.

        Raises:
            PoolInitializationError: If the pool cannot be constructed
                (the engine is left UNINITIALIZED), or stop_all() was called
                while it was opening (the engine is left STOPPED).
        """
        if self._state is EngineState.READY:
            return

        async with self._init_lock:
            if self._state is EngineState.READY:
                return

            stop_count = self._stop_count
            self._state = EngineState.INITIALIZING
            pool = ContextPool(
                self._make_factory(),
                min_contexts=self.config.min_contexts,
                max_contexts=self.config.max_contexts,
            )
            try:
                await pool.open()
            except BaseException as e:
                pool.dispose()
                if self._stop_count == stop_count:
                    self._state = EngineState.UNINITIALIZED
                if isinstance(e, Exception):
                    raise PoolInitializationError(f"Failed to open context pool: {e}") from e
                raise

            if self._stop_count != stop_count:
                pool.dispose()
                raise PoolInitializationError("Engine was stopped while the context pool was opening")

            self._pool = pool
            self._finalizer = weakref.finalize(self, pool.dispose)
            self._state = EngineState.READY
            logger.info(
                f"Engine ready ({self.config.min_contexts}-{self.config.max_contexts} contexts, "
                f"unrestricted={self.config.allow_unrestricted_execution})"
            )

    async def execute(
        self,
        script_path: Union[str, Path],
        parameters: Optional[Mapping[str, Any]] = None,
        on_output: Optional[OutputCallback] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """
        Run a script file in a pooled context.

        Args:
            script_path: Path to the script file
            parameters: Name -> value mapping bound to the script's main()
            on_output: Called with each output line as the script writes it
            run_id: Correlation id for the run (generated if omitted)

        Returns:
            Successful RunResult with captured output

        Raises:
            NotInitializedError: Engine is not READY
            ScriptNotFoundError: script_path does not exist
            ScriptReadError: script_path exists but cannot be read
            ScriptExecutionError: The script reported one or more error records
        """
        if self._state is not EngineState.READY or self._pool is None:
            raise NotInitializedError()

        request = self._make_request(script_path, parameters, run_id)
        path = request.script_path
        try:
            mode = path.stat().st_mode
        except (FileNotFoundError, NotADirectoryError) as e:
            raise ScriptNotFoundError(path) from e
        except OSError as e:
            raise ScriptReadError(path, str(e)) from e
        if not stat.S_ISREG(mode):
            raise ScriptNotFoundError(path)

        try:
            source = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ScriptReadError(path, str(e)) from e

        pool = self._pool
        start = time.monotonic()
        context = await pool.acquire()
        logger.debug(f"Run {request.run_id}: {path.name} on context {context.pid}")
        try:
            outcome = await context.run(request, source, on_output=on_output)
        finally:
            pool.release(context)

        duration_ms = int((time.monotonic() - start) * 1000)
        if outcome.had_errors:
            logger.debug(f"Run {request.run_id} reported {len(outcome.records)} error record(s)")
            raise ScriptExecutionError(outcome.records, outcome.output)

        return RunResult(
            run_id=request.run_id,
            script_path=path,
            success=True,
            output=outcome.output,
            duration_ms=duration_ms,
        )

    async def run(
        self,
        script_path: Union[str, Path],
        parameters: Optional[Mapping[str, Any]] = None,
        on_output: Optional[OutputCallback] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """Like execute(), but run failures come back as a failed RunResult.

        Unexpected faults (dead contexts, a disposed pool, bad parameter
        values) still raise.
        """
        if self._state is not EngineState.READY:
            request = self._make_request(script_path, None, run_id)
            return RunResult.from_error(request, NotInitializedError())

        request = self._make_request(script_path, parameters, run_id)
        start = time.monotonic()
        try:
            return await self.execute(
                request.script_path,
                request.parameters,
                on_output=on_output,
                run_id=request.run_id,
            )
        except RUN_FAILURES as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            return RunResult.from_error(request, e, duration_ms=duration_ms)

    def stop_all(self) -> None:
        """Dispose the pool and every context. No-op if not running."""
        self._stop_count += 1
        if self._finalizer is not None:
            # Runs pool.dispose() at most once
            self._finalizer()
            self._finalizer = None

        if self._state is EngineState.READY:
            logger.info("Engine stopped")
        if self._state is not EngineState.UNINITIALIZED:
            self._state = EngineState.STOPPED
        self._pool = None

    async def shutdown(self) -> None:
        """stop_all(), then wait for every context process to exit."""
        pool = self._pool
        self.stop_all()
        if pool is not None:
            await pool.wait_closed()

    async def __aenter__(self) -> "ExecutionEngine":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    def __enter__(self) -> "ExecutionEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop_all()

    def _make_factory(self) -> ContextFactory:
        if self._context_factory is not None:
            return self._context_factory
        return functools.partial(
            ExecutionContext.start,
            build_command(self.config),
            self.config.startup_timeout,
        )

    @staticmethod
    def _make_request(
        script_path: Union[str, Path],
        parameters: Optional[Mapping[str, Any]],
        run_id: Optional[str],
    ) -> RunRequest:
        if run_id is None:
            return RunRequest(Path(script_path), parameters or {})
        return RunRequest(Path(script_path), parameters or {}, run_id=run_id)
