# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Error types raised by the execution engine."""

from pathlib import Path
from typing import Optional, Sequence

from scriptpool.engine.models import ErrorRecord, FailureKind, OutputLine


class ScriptPoolError(Exception):
    """Base class for engine errors."""

    kind: Optional[FailureKind] = None


class NotInitializedError(ScriptPoolError):
    """Raised when execute() is called before a successful initialize()."""

    kind = FailureKind.NOT_INITIALIZED

    def __init__(self, message: str = "ExecutionEngine is not initialized."):
        super().__init__(message)


class ScriptNotFoundError(ScriptPoolError):
    """Raised when the script path does not exist at request time."""

    kind = FailureKind.SCRIPT_NOT_FOUND

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Script not found: {path}")


class ScriptReadError(ScriptPoolError):
    """Raised when the script exists but its content cannot be read."""

    kind = FailureKind.SCRIPT_READ_ERROR

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read script {path}: {reason}")


class ScriptExecutionError(ScriptPoolError):
    """Raised when a run reported one or more error records.

    The message is every record joined by newlines.
    """

    kind = FailureKind.SCRIPT_EXECUTION_ERROR

    def __init__(
        self,
        records: Sequence[ErrorRecord],
        output: Sequence[OutputLine] = (),
    ):
        self.records = tuple(records)
        self.output = tuple(output)
        self.message = "\n".join(str(record) for record in self.records)
        super().__init__(self.message)


class PoolInitializationError(ScriptPoolError):
    """Raised when the context pool cannot be constructed."""

    pass


class PoolClosedError(ScriptPoolError):
    """Raised when acquiring from a pool that has been disposed."""

    pass


class ContextError(ScriptPoolError):
    """Raised when a context fails to start, dies, or breaks protocol."""

    pass


# Failures that belong to a run and are folded into RunResult by run()
RUN_FAILURES = (
    NotInitializedError,
    ScriptNotFoundError,
    ScriptReadError,
    ScriptExecutionError,
)
