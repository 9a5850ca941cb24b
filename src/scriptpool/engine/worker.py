# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Interpreter loop for one pooled execution context.

Started by ExecutionContext as ``python [-I] worker.py``. It is launched by
file path so it must only import the standard library.

Protocol (one JSON object per line):
- child → parent: {"type": "ready"}, {"type": "output"}, {"type": "done"}
- parent → child: {"op": "run"}, {"op": "shutdown"}

Descriptors 0 and 1 are duplicated for the protocol at startup, then
pointed at /dev/null and stderr so scripts cannot read or corrupt it.
"""

import builtins
import contextlib
import io
import json
import logging
import os
import sys
import traceback

# Not "__main__", so scripts guarded by `if __name__ == "__main__": main()`
# do not call main a second time after the worker binds parameters to it.
SCRIPT_MODULE_NAME = "__scriptpool__"


class _Channel:
    """Writes protocol messages to the parent."""

    def __init__(self, stream):
        self._stream = stream

    def send(self, **message) -> None:
        self._stream.write(json.dumps(message, default=repr) + "\n")
        self._stream.flush()


class _LineForwarder(io.TextIOBase):
    """Text stream that forwards each complete line as an output message."""

    def __init__(self, channel: _Channel, run_id: str, stream: str):
        self._channel = channel
        self._run_id = run_id
        self._stream = stream
        self._buffer = ""

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._emit(line)
        return len(text)

    def finish(self) -> None:
        if self._buffer:
            self._emit(self._buffer)
            self._buffer = ""

    def _emit(self, line: str) -> None:
        self._channel.send(type="output", id=self._run_id, stream=self._stream, text=line)


class _ErrorRecordHandler(logging.Handler):
    """Turns ERROR-level log records emitted by a script into error records."""

    def __init__(self, records: list):
        super().__init__(level=logging.ERROR)
        self._records = records

    def emit(self, record: logging.LogRecord) -> None:
        self._records.append({"category": "log", "message": self.format(record)})


def _exception_record(exc: BaseException) -> dict:
    summary = "".join(traceback.format_exception_only(type(exc), exc)).strip()
    return {
        "category": "exception",
        "message": summary,
        "detail": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


def _exit_record(code) -> dict:
    if isinstance(code, int):
        message = f"Script exited with code {code}"
    else:
        message = f"Script exited: {code}"
    return {"category": "exit", "message": message}


def run_script(channel: _Channel, request: dict) -> None:
    """Run one script and report its error records.

    The body always runs. Parameters bind to a top-level ``main`` function
    when the script defines one; otherwise they are only visible through
    ``params``.
    """
    run_id = request["id"]
    path = request["path"]
    parameters = request.get("parameters") or {}
    records = []

    def write_error(message, category="error"):
        records.append({"category": category, "message": str(message)})

    namespace = {
        "__name__": SCRIPT_MODULE_NAME,
        "__file__": path,
        "__builtins__": builtins,
        "params": dict(parameters),
        "write_error": write_error,
    }

    stdout = _LineForwarder(channel, run_id, "stdout")
    stderr = _LineForwarder(channel, run_id, "stderr")
    handler = _ErrorRecordHandler(records)
    root = logging.getLogger()
    root.addHandler(handler)
    script_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, script_dir)

    try:
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            try:
                code = compile(request["source"], path, "exec")
                exec(code, namespace)
                entry = namespace.get("main")
                if callable(entry):
                    entry(**parameters)
            except SystemExit as exc:
                if exc.code not in (None, 0):
                    records.append(_exit_record(exc.code))
            except BaseException as exc:
                # Includes KeyboardInterrupt raised by the script itself
                records.append(_exception_record(exc))
    finally:
        stdout.finish()
        stderr.finish()
        root.removeHandler(handler)
        with contextlib.suppress(ValueError):
            sys.path.remove(script_dir)

    channel.send(type="done", id=run_id, errors=records)


def main() -> int:
    requests = os.fdopen(os.dup(0), "r", encoding="utf-8")
    replies = os.fdopen(os.dup(1), "w", encoding="utf-8")

    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)
    os.dup2(2, 1)

    channel = _Channel(replies)
    channel.send(type="ready", pid=os.getpid(), isolated=bool(sys.flags.isolated))

    while True:
        line = requests.readline()
        if not line:
            break
        line = line.strip()
        if not line:
            continue

        request = json.loads(line)
        op = request.get("op")
        if op == "run":
            run_script(channel, request)
        elif op == "shutdown":
            break
        else:
            channel.send(type="error", message=f"Unknown op: {op}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
