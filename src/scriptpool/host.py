# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Script host: drives an engine and records what happened.

The host is the engine's caller. It initializes the engine, runs scripts,
stops the engine, and writes lifecycle and run events to the event log.
Failures are returned to the caller as RunResult values or raised; the
event log is a record, not a substitute.
"""

import asyncio
import hashlib
import json
import logging
import uuid
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Union

from scriptpool.config import AppConfig
from scriptpool.engine import (
    EngineConfig,
    ExecutionEngine,
    RunResult,
)
from scriptpool.engine.context import OutputCallback
from scriptpool.event_client import EventClient

logger = logging.getLogger(__name__)


def _hash_params(parameters: Mapping[str, Any]) -> str:
    """Create a SHA256 hash of the parameter mapping (order-independent)."""
    encoded = json.dumps(dict(parameters), sort_keys=True, default=repr)
    return hashlib.sha256(encoded.encode()).hexdigest()


def _redact_params(parameters: Mapping[str, Any]) -> List[str]:
    """Keep parameter names only, dropping values.

    Example: {"token": "secret", "dry_run": True} -> ["dry_run", "token"]
    """
    return sorted(parameters)


def _error_tail(result: RunResult, lines: int = 10) -> str:
    """Last few lines of the failure message."""
    message_lines = (result.message or "").strip().split("\n")
    return "\n".join(message_lines[-lines:])


def _get_event_client(config: AppConfig) -> EventClient:
    """Get the event client for the configured log path."""
    return EventClient(config.events_path)


class ScriptHost:
    """Owns an ExecutionEngine and logs its lifecycle and runs."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        event_client: Optional[EventClient] = None,
        engine: Optional[ExecutionEngine] = None,
    ):
        self.config = config or AppConfig()
        self.events = event_client or _get_event_client(self.config)
        self.engine = engine or ExecutionEngine(self.config.engine)
        self.session_id = str(uuid.uuid4())

    async def start(self) -> None:
        """Initialize the engine.

        Raises:
            PoolInitializationError: If the pool cannot be constructed.
        """
        engine_config: EngineConfig = self.engine.config
        try:
            await self.engine.initialize()
        except Exception as e:
            self.events.log_event(
                event_type="engine.failed",
                correlation_id=self.session_id,
                status="failed",
                error_message=str(e),
            )
            raise

        self.events.log_event(
            event_type="engine.initialized",
            correlation_id=self.session_id,
            status="ready",
            payload={
                "min_contexts": engine_config.min_contexts,
                "max_contexts": engine_config.max_contexts,
                "allow_unrestricted_execution": engine_config.allow_unrestricted_execution,
            },
        )

    async def run_script(
        self,
        script_path: Union[str, Path],
        parameters: Optional[Mapping[str, Any]] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> RunResult:
        """Run one script and log started/completed/failed events.

        Returns:
            RunResult; run failures are not raised.
        """
        parameters = parameters or {}
        run_id = str(uuid.uuid4())
        path = Path(script_path)

        self.events.log_event(
            event_type="run.started",
            correlation_id=run_id,
            status="running",
            payload={
                "session_id": self.session_id,
                "script": path.name,
                "script_path": str(path),
                "params_hash": _hash_params(parameters),
                "params_redacted": _redact_params(parameters),
            },
        )

        try:
            result = await self.engine.run(path, parameters, on_output=on_output, run_id=run_id)
        except Exception as e:
            self.events.log_event(
                event_type="run.failed",
                correlation_id=run_id,
                status="faulted",
                payload={"script": path.name, "error_type": type(e).__name__},
                error_message=str(e),
            )
            raise

        if result.success:
            self.events.log_event(
                event_type="run.completed",
                correlation_id=run_id,
                status="succeeded",
                payload={
                    "script": path.name,
                    "duration_ms": result.duration_ms,
                    "output_lines": len(result.output),
                },
            )
        else:
            logger.info(f"Run {run_id} ({path.name}) failed: {result.failure.value}")
            self.events.log_event(
                event_type="run.failed",
                correlation_id=run_id,
                status="failed",
                payload={
                    "script": path.name,
                    "failure": result.failure.value,
                    "duration_ms": result.duration_ms,
                    "error_tail": _error_tail(result),
                },
                error_message=f"Script run failed: {result.failure.value}",
            )
        return result

    def stop(self) -> None:
        """Stop the engine abruptly. Safe to call more than once."""
        was_running = self.engine.pool is not None
        self.engine.stop_all()
        if was_running:
            self._log_stopped()

    async def close(self) -> None:
        """Stop the engine and wait for its interpreter processes to exit."""
        was_running = self.engine.pool is not None
        await self.engine.shutdown()
        if was_running:
            self._log_stopped()

    def _log_stopped(self) -> None:
        self.events.log_event(
            event_type="engine.stopped",
            correlation_id=self.session_id,
            status="stopped",
        )


async def run_once(
    config: AppConfig,
    script_path: Union[str, Path],
    parameters: Optional[Mapping[str, Any]] = None,
    on_output: Optional[OutputCallback] = None,
    event_client: Optional[EventClient] = None,
) -> RunResult:
    """Initialize, run one script, and tear down.

    Raises:
        PoolInitializationError: If the engine cannot start.
    """
    host = ScriptHost(config, event_client=event_client)
    try:
        await host.start()
        return await host.run_script(script_path, parameters, on_output=on_output)
    finally:
        await host.close()


async def run_many(
    config: AppConfig,
    script_paths: Sequence[Union[str, Path]],
    parameters: Optional[Mapping[str, Any]] = None,
    on_output: Optional[OutputCallback] = None,
    event_client: Optional[EventClient] = None,
) -> List[RunResult]:
    """Run several scripts concurrently through one engine.

    Returns:
        One RunResult per script, in the order given.
    """
    host = ScriptHost(config, event_client=event_client)
    try:
        await host.start()
        results = await asyncio.gather(
            *(host.run_script(path, parameters, on_output=on_output) for path in script_paths)
        )
    finally:
        await host.close()
    return list(results)
