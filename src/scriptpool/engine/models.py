# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Engine configuration and run schemas.

RunRequest → context → RunOutcome → RunResult
- RunRequest is immutable and created per execute() call
- RunOutcome is what a context reports back (records + output)
- RunResult is the tagged success/failure handed to callers
"""

import sys
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple


class ConfigError(Exception):
    """Raised when engine or application configuration is invalid."""

    pass


class EngineState(Enum):
    """Engine lifecycle states."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    STOPPED = "stopped"


class FailureKind(Enum):
    """Ways a single run can fail, as reported in RunResult."""

    NOT_INITIALIZED = "not_initialized"
    SCRIPT_NOT_FOUND = "script_not_found"
    SCRIPT_READ_ERROR = "script_read_error"
    SCRIPT_EXECUTION_ERROR = "script_execution_error"


@dataclass(frozen=True)
class EngineConfig:
    """Pool bounds and interpreter settings, fixed at engine construction.

    Fields:
    - min_contexts: Contexts started eagerly by initialize()
    - max_contexts: Upper bound on live contexts (and concurrent runs)
    - allow_unrestricted_execution: False starts interpreters in isolated mode
    - python_executable: Interpreter used for every context
    - startup_timeout: Seconds to wait for a context handshake
    """

    min_contexts: int = 2
    max_contexts: int = 10
    allow_unrestricted_execution: bool = True
    python_executable: str = sys.executable
    startup_timeout: float = 30.0

    def validate(self) -> None:
        """Validate bounds.

        Raises:
            ConfigError: If validation fails.
        """
        if self.max_contexts < 1:
            raise ConfigError(f"max_contexts must be at least 1, got: {self.max_contexts}")
        if self.min_contexts < 0:
            raise ConfigError(f"min_contexts cannot be negative, got: {self.min_contexts}")
        if self.min_contexts > self.max_contexts:
            raise ConfigError(
                f"min_contexts ({self.min_contexts}) cannot exceed "
                f"max_contexts ({self.max_contexts})"
            )
        if self.startup_timeout <= 0:
            raise ConfigError(
                f"startup_timeout must be positive, got: {self.startup_timeout}"
            )
        if not self.python_executable:
            raise ConfigError("python_executable is required")


@dataclass(frozen=True)
class RunRequest:
    """One script run: path, parameters and a correlation id."""

    script_path: Path
    parameters: Mapping[str, Any] = field(default_factory=dict)
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        for key in self.parameters:
            if not isinstance(key, str):
                raise TypeError(f"parameter names must be strings, got: {key!r}")
        # Frozen copy so later mutation by the caller cannot leak into the run
        object.__setattr__(self, "script_path", Path(self.script_path))
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))


@dataclass(frozen=True)
class ErrorRecord:
    """A diagnostic record emitted by the interpreter during a run."""

    message: str
    category: str = "error"  # "error", "log", "exception", "exit"
    detail: Optional[str] = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class OutputLine:
    """A single line written by a script."""

    stream: str  # "stdout" or "stderr"
    text: str


@dataclass(frozen=True)
class RunOutcome:
    """What a context reports once a script finishes."""

    records: Tuple[ErrorRecord, ...] = ()
    output: Tuple[OutputLine, ...] = ()

    @property
    def had_errors(self) -> bool:
        return bool(self.records)


@dataclass(frozen=True)
class RunResult:
    """Result of a run: wholly a success or one specific failure."""

    run_id: str
    script_path: Path
    success: bool
    failure: Optional[FailureKind] = None
    message: Optional[str] = None
    records: Tuple[ErrorRecord, ...] = ()
    output: Tuple[OutputLine, ...] = ()
    duration_ms: int = 0

    @property
    def stdout(self) -> str:
        """Captured stdout lines joined with newlines."""
        return "\n".join(line.text for line in self.output if line.stream == "stdout")

    @classmethod
    def from_error(cls, request: RunRequest, error: Exception, duration_ms: int = 0) -> "RunResult":
        """Build a failed result from one of the typed run errors."""
        return cls(
            run_id=request.run_id,
            script_path=request.script_path,
            success=False,
            failure=error.kind,
            message=str(error),
            records=getattr(error, "records", ()),
            output=getattr(error, "output", ()),
            duration_ms=duration_ms,
        )
