# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Execution context: one long-lived interpreter process.

A context runs one script at a time and is reused by the pool between runs.
It talks to ``worker.py`` over JSON lines on the child's stdin/stdout.
"""

import asyncio
import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from scriptpool.engine.errors import ContextError
from scriptpool.engine.models import (
    EngineConfig,
    ErrorRecord,
    OutputLine,
    RunOutcome,
    RunRequest,
)

logger = logging.getLogger(__name__)

WORKER_PATH = Path(__file__).with_name("worker.py")

# Readline limit for protocol messages; a single output line or the script
# source may be large.
STREAM_LIMIT = 16 * 1024 * 1024

OutputCallback = Callable[[OutputLine], None]


def build_command(config: EngineConfig) -> List[str]:
    """Build the interpreter command line for a context.

    Unrestricted contexts run a normal interpreter. Restricted contexts use
    isolated mode (-I): PYTHON* environment variables and the user
    site-packages directory are ignored.
    """
    command = [config.python_executable]
    if not config.allow_unrestricted_execution:
        command.append("-I")
    command.append(str(WORKER_PATH))
    return command


class ExecutionContext:
    """Handle on one interpreter process owned by the pool."""

    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process
        self._busy = False
        self._broken = False
        self._terminated = False
        self._stderr_tail: deque = deque(maxlen=20)
        self._loop = asyncio.get_running_loop()
        self._stderr_task = self._loop.create_task(self._drain_stderr())

    @classmethod
    async def start(cls, command: Sequence[str], startup_timeout: float = 30.0) -> "ExecutionContext":
        """Spawn an interpreter and wait for its ready handshake.

        Raises:
            ContextError: If the process cannot start or never reports ready.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ContextError(f"Cannot start interpreter {command[0]}: {e}") from e

        context = cls(process)
        try:
            message = await asyncio.wait_for(context._read_message(), startup_timeout)
        except asyncio.TimeoutError as e:
            context.terminate()
            raise ContextError(
                f"Context {process.pid} did not become ready within {startup_timeout}s"
            ) from e
        except BaseException:
            context.terminate()
            raise

        if message.get("type") != "ready":
            context.terminate()
            raise ContextError(f"Context {process.pid} sent {message!r} instead of ready")

        logger.debug(f"Context {process.pid} ready (isolated={message.get('isolated')})")
        return context

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def alive(self) -> bool:
        """True while the context can accept another run."""
        return (
            self._process.returncode is None
            and not self._broken
            and not self._terminated
        )

    @property
    def busy(self) -> bool:
        return self._busy

    async def run(
        self,
        request: RunRequest,
        source: str,
        on_output: Optional[OutputCallback] = None,
    ) -> RunOutcome:
        """Run a script in this context and collect its records and output.

        Raises:
            ContextError: If the process dies or the protocol breaks mid-run.
            TypeError: If a parameter value is not JSON-serializable.
        """
        if self._busy:
            raise ContextError(f"Context {self.pid} is already running a script")
        if not self.alive:
            raise ContextError(f"Context {self.pid} is no longer usable")

        payload = json.dumps({
            "op": "run",
            "id": request.run_id,
            "path": str(request.script_path),
            "source": source,
            "parameters": dict(request.parameters),
        })

        self._busy = True
        try:
            self._process.stdin.write(payload.encode("utf-8") + b"\n")
            await self._process.stdin.drain()

            output: List[OutputLine] = []
            while True:
                message = await self._read_message()
                if message.get("id") != request.run_id:
                    logger.warning(f"Context {self.pid} sent unexpected message: {message!r}")
                    continue

                if message.get("type") == "output":
                    line = OutputLine(stream=message.get("stream", "stdout"), text=message.get("text", ""))
                    output.append(line)
                    if on_output is not None:
                        on_output(line)
                elif message.get("type") == "done":
                    records = tuple(_to_record(item) for item in message.get("errors", []))
                    return RunOutcome(records=records, output=tuple(output))
        except (BrokenPipeError, ConnectionResetError) as e:
            self._broken = True
            raise ContextError(f"Context {self.pid} closed its input: {e}") from e
        except BaseException:
            # Interrupted mid-run; the child's state is unknown
            self._broken = True
            raise
        finally:
            self._busy = False

    def terminate(self) -> None:
        """Kill the process. Safe to call more than once."""
        self._terminated = True
        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        if not self._stderr_task.done() and not self._loop.is_closed():
            self._stderr_task.cancel()

    async def wait_closed(self) -> None:
        """Wait for the process to exit."""
        await self._process.wait()

    async def _read_message(self) -> Dict[str, Any]:
        line = await self._process.stdout.readline()
        if not line:
            self._broken = True
            tail = "\n".join(self._stderr_tail)
            detail = f"\n{tail}" if tail else ""
            raise ContextError(
                f"Context {self.pid} exited unexpectedly "
                f"(code {self._process.returncode}){detail}"
            )
        try:
            return json.loads(line)
        except json.JSONDecodeError as e:
            self._broken = True
            raise ContextError(f"Context {self.pid} sent invalid message: {line[:200]!r}") from e

    async def _drain_stderr(self) -> None:
        while True:
            line = await self._process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip("\n")
            self._stderr_tail.append(text)
            logger.debug(f"[context {self.pid}] {text}")


def _to_record(item: Dict[str, Any]) -> ErrorRecord:
    return ErrorRecord(
        message=str(item.get("message", "")),
        category=item.get("category", "error"),
        detail=item.get("detail"),
    )
