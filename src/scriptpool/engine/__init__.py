# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Execution engine: a bounded pool of interpreter contexts that runs scripts.

Typical use:

    engine = ExecutionEngine(EngineConfig(min_contexts=2, max_contexts=10))
    await engine.initialize()
    result = await engine.run("hello.py", {"name": "world"})
    engine.stop_all()
"""

from scriptpool.engine.context import ExecutionContext, build_command
from scriptpool.engine.engine import ExecutionEngine
from scriptpool.engine.errors import (
    ContextError,
    NotInitializedError,
    PoolClosedError,
    PoolInitializationError,
    ScriptExecutionError,
    ScriptNotFoundError,
    ScriptPoolError,
    ScriptReadError,
)
from scriptpool.engine.models import (
    ConfigError,
    EngineConfig,
    EngineState,
    ErrorRecord,
    FailureKind,
    OutputLine,
    RunOutcome,
    RunRequest,
    RunResult,
)
from scriptpool.engine.pool import ContextPool

__all__ = [
    "ExecutionEngine",
    "ContextPool",
    "ExecutionContext",
    "build_command",
    "EngineConfig",
    "EngineState",
    "RunRequest",
    "RunResult",
    "RunOutcome",
    "ErrorRecord",
    "OutputLine",
    "FailureKind",
    "ScriptPoolError",
    "NotInitializedError",
    "ScriptNotFoundError",
    "ScriptReadError",
    "ScriptExecutionError",
    "PoolInitializationError",
    "PoolClosedError",
    "ContextError",
    "ConfigError",
]
