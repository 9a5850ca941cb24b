"""Tests for ExecutionEngine lifecycle and runs."""

import asyncio
import gc
import time
from pathlib import Path

import pytest

from scriptpool.engine import (
    ConfigError,
    ContextError,
    EngineConfig,
    EngineState,
    ExecutionEngine,
    FailureKind,
    NotInitializedError,
    PoolClosedError,
    PoolInitializationError,
    ScriptExecutionError,
    ScriptNotFoundError,
    ScriptReadError,
)


@pytest.fixture
def engine():
    """Engine with a small pool; stopped after the test."""
    engine = ExecutionEngine(EngineConfig(min_contexts=1, max_contexts=2))
    yield engine
    engine.stop_all()


async def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestNotInitialized:
    """Tests for calls made before initialize()."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["hello.py", "missing.py"])
    async def test_execute_before_initialize(self, engine, hello_script, name):
        """Should raise NotInitializedError for any input."""
        path = hello_script.parent / name

        with pytest.raises(NotInitializedError):
            await engine.execute(path, {"a": 1})

    @pytest.mark.asyncio
    async def test_run_before_initialize(self, engine, hello_script):
        """Should return a NOT_INITIALIZED failure."""
        result = await engine.run(hello_script)

        assert not result.success
        assert result.failure is FailureKind.NOT_INITIALIZED

    @pytest.mark.asyncio
    async def test_run_before_initialize_ignores_bad_parameters(self, engine, hello_script):
        """Should report NOT_INITIALIZED before looking at parameter names."""
        result = await engine.run(hello_script, {1: "x"}, run_id="early")

        assert result.failure is FailureKind.NOT_INITIALIZED
        assert result.run_id == "early"
        assert result.script_path == hello_script

    def test_initial_state(self, engine):
        """Should start uninitialized with no pool."""
        assert engine.state is EngineState.UNINITIALIZED
        assert engine.pool is None
        assert engine.context_count == 0

    def test_stop_all_before_initialize_is_noop(self, engine):
        """Should leave a never-initialized engine alone."""
        engine.stop_all()

        assert engine.state is EngineState.UNINITIALIZED


class TestInitialize:
    """Tests for initialize()."""

    @pytest.mark.asyncio
    async def test_initialize_opens_min_contexts(self, engine):
        """Should be READY with min_contexts started."""
        await engine.initialize()

        assert engine.state is EngineState.READY
        assert engine.context_count == 1
        assert engine.pool.available == 1

    @pytest.mark.asyncio
    async def test_initialize_twice_keeps_one_pool(self, engine):
        """Should not rebuild the pool on a second call."""
        await engine.initialize()
        pool = engine.pool

        await engine.initialize()

        assert engine.pool is pool
        assert engine.context_count <= engine.config.max_contexts
        assert engine.context_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_initialize_builds_one_pool(self, factory):
        """Should construct exactly one pool under concurrent calls."""
        engine = ExecutionEngine(EngineConfig(min_contexts=2, max_contexts=4), context_factory=factory)

        await asyncio.gather(*(engine.initialize() for _ in range(5)))

        assert engine.state is EngineState.READY
        assert len(factory.created) == 2
        engine.stop_all()

    @pytest.mark.asyncio
    async def test_initialize_failure_leaves_uninitialized(self, factory):
        """Should raise PoolInitializationError and stay UNINITIALIZED."""
        factory.fail_on = {2}
        engine = ExecutionEngine(EngineConfig(min_contexts=2, max_contexts=4), context_factory=factory)

        with pytest.raises(PoolInitializationError, match="fake start failure") as exc_info:
            await engine.initialize()

        assert isinstance(exc_info.value.__cause__, ContextError)
        assert engine.state is EngineState.UNINITIALIZED
        assert engine.pool is None
        assert all(context.terminated for context in factory.created)

        await engine.initialize()
        assert engine.state is EngineState.READY
        engine.stop_all()

    @pytest.mark.asyncio
    async def test_stop_all_during_initialize_wins(self, factory):
        """Should stay STOPPED and kill new contexts when stopped mid-initialize."""
        factory.delay = 0.2
        engine = ExecutionEngine(EngineConfig(min_contexts=2, max_contexts=2), context_factory=factory)

        task = asyncio.create_task(engine.initialize())
        await asyncio.sleep(0.05)
        assert engine.state is EngineState.INITIALIZING
        engine.stop_all()

        with pytest.raises(PoolInitializationError, match="stopped while"):
            await task

        assert engine.state is EngineState.STOPPED
        assert engine.pool is None
        assert engine.context_count == 0
        assert len(factory.created) == 2
        assert all(context.terminated for context in factory.created)

    @pytest.mark.asyncio
    async def test_initialize_after_interrupted_initialize(self, factory):
        """Should build a fresh pool once the stopped initialize has finished."""
        factory.delay = 0.1
        engine = ExecutionEngine(EngineConfig(min_contexts=1, max_contexts=1), context_factory=factory)
        task = asyncio.create_task(engine.initialize())
        await asyncio.sleep(0.02)
        engine.stop_all()
        with pytest.raises(PoolInitializationError):
            await task

        await engine.initialize()

        assert engine.state is EngineState.READY
        assert engine.context_count == 1
        engine.stop_all()

    @pytest.mark.asyncio
    async def test_initialize_with_bad_interpreter(self):
        """Should surface a missing interpreter as PoolInitializationError."""
        engine = ExecutionEngine(EngineConfig(min_contexts=1, python_executable="/nonexistent/python3"))

        with pytest.raises(PoolInitializationError, match="Cannot start interpreter"):
            await engine.initialize()

        assert engine.state is EngineState.UNINITIALIZED

    def test_invalid_config_rejected(self):
        """Should validate bounds at construction."""
        with pytest.raises(ConfigError):
            ExecutionEngine(EngineConfig(min_contexts=5, max_contexts=2))


class TestExecute:
    """Tests for execute() and run()."""

    @pytest.mark.asyncio
    async def test_hello_scenario(self, engine, hello_script):
        """Should succeed, then fail on a missing script, then stop to zero contexts."""
        await engine.initialize()

        result = await engine.execute(hello_script, {})
        assert result.success
        assert result.stdout == "hello"

        missing = await engine.run(hello_script.parent / "missing.py", {})
        assert not missing.success
        assert missing.failure is FailureKind.SCRIPT_NOT_FOUND

        pool = engine.pool
        engine.stop_all()
        assert pool.size == 0
        assert engine.context_count == 0
        assert engine.state is EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_missing_script_acquires_no_context(self, engine, tmp_path):
        """Should fail with ScriptNotFoundError without touching the pool."""
        await engine.initialize()
        available = engine.pool.available

        with pytest.raises(ScriptNotFoundError) as exc_info:
            await engine.execute(tmp_path / "missing.py")

        assert exc_info.value.path == tmp_path / "missing.py"
        assert engine.pool.available == available
        assert engine.pool.in_use == 0

    @pytest.mark.asyncio
    async def test_directory_is_not_a_script(self, engine, tmp_path):
        """Should treat a directory path as not found."""
        await engine.initialize()

        with pytest.raises(ScriptNotFoundError):
            await engine.execute(tmp_path)

    @pytest.mark.asyncio
    async def test_permission_denied_is_read_error(self, engine, hello_script, monkeypatch):
        """Should report a script that cannot be stat'ed as unreadable, not missing."""
        await engine.initialize()
        real_stat = Path.stat

        def denied_stat(self, *args, **kwargs):
            if self == hello_script:
                raise PermissionError(13, "Permission denied", str(self))
            return real_stat(self, *args, **kwargs)

        monkeypatch.setattr(Path, "stat", denied_stat)

        with pytest.raises(ScriptReadError, match="Permission denied"):
            await engine.execute(hello_script)

        result = await engine.run(hello_script)
        assert result.failure is FailureKind.SCRIPT_READ_ERROR
        assert engine.pool.in_use == 0

    @pytest.mark.asyncio
    async def test_unreadable_script(self, engine, tmp_path):
        """Should raise ScriptReadError for content that cannot be decoded."""
        script = tmp_path / "binary.py"
        script.write_bytes(b"\xff\xfe\x00bad")
        await engine.initialize()

        with pytest.raises(ScriptReadError):
            await engine.execute(script)

        result = await engine.run(script)
        assert result.failure is FailureKind.SCRIPT_READ_ERROR

    @pytest.mark.asyncio
    async def test_error_records_fail_the_run(self, engine, write_script):
        """Should raise ScriptExecutionError with records joined by newlines."""
        script = write_script("errors.py", """
            write_error("first")
            write_error("second")
            print("still ran")
        """)
        await engine.initialize()

        with pytest.raises(ScriptExecutionError) as exc_info:
            await engine.execute(script)

        assert exc_info.value.message == "first\nsecond"
        assert [r.message for r in exc_info.value.records] == ["first", "second"]
        assert any(line.text == "still ran" for line in exc_info.value.output)

    @pytest.mark.asyncio
    async def test_run_returns_execution_failure(self, engine, write_script):
        """Should fold error records into a failed RunResult."""
        script = write_script("raises.py", 'raise ValueError("boom")\n')
        await engine.initialize()

        result = await engine.run(script)

        assert not result.success
        assert result.failure is FailureKind.SCRIPT_EXECUTION_ERROR
        assert result.message == "ValueError: boom"
        assert result.records[0].category == "exception"

    @pytest.mark.asyncio
    async def test_logged_error_fails_the_run(self, engine, write_script):
        """Should fail a run whose only problem is an ERROR log record."""
        script = write_script("logs.py", """
            import logging
            logging.getLogger("job").error("quota exceeded")
        """)
        await engine.initialize()

        result = await engine.run(script)

        assert result.failure is FailureKind.SCRIPT_EXECUTION_ERROR
        assert "quota exceeded" in result.message

    @pytest.mark.asyncio
    async def test_parameters_bind_to_main(self, engine, write_script):
        """Should pass parameters by name to main()."""
        script = write_script("greet.py", """
            def main(name, punctuation="."):
                print(f"Hello, {name}{punctuation}")
        """)
        await engine.initialize()

        result = await engine.execute(script, {"name": "World", "punctuation": "!"})

        assert result.stdout == "Hello, World!"

    @pytest.mark.asyncio
    async def test_unknown_parameter_fails_in_interpreter(self, engine, write_script):
        """Should let the interpreter reject names main() does not declare."""
        script = write_script("greet.py", """
            def main(name):
                print(name)
        """)
        await engine.initialize()

        result = await engine.run(script, {"nmae": "typo"})

        assert result.failure is FailureKind.SCRIPT_EXECUTION_ERROR
        assert "unexpected keyword argument" in result.message

    @pytest.mark.asyncio
    async def test_output_callback(self, engine, write_script):
        """Should deliver each output line to the callback."""
        script = write_script("lines.py", 'for i in range(3):\n    print(f"line {i}")\n')
        await engine.initialize()
        seen = []

        await engine.execute(script, on_output=lambda line: seen.append(line.text))

        assert seen == ["line 0", "line 1", "line 2"]

    @pytest.mark.asyncio
    async def test_run_id_is_kept(self, engine, hello_script):
        """Should use the caller's run id on the result."""
        await engine.initialize()

        result = await engine.run(hello_script, run_id="abc-123")

        assert result.run_id == "abc-123"

    @pytest.mark.asyncio
    async def test_context_is_reused(self, write_script):
        """Should run sequential scripts in the same interpreter."""
        script = write_script("pid.py", "import os\nprint(os.getpid())\n")
        engine = ExecutionEngine(EngineConfig(min_contexts=1, max_contexts=1))
        await engine.initialize()
        try:
            first = await engine.execute(script)
            second = await engine.execute(script)
        finally:
            await engine.shutdown()

        assert first.stdout == second.stdout

    @pytest.mark.asyncio
    async def test_non_serializable_parameter_releases_context(self, engine, hello_script):
        """Should propagate TypeError after returning the context."""
        await engine.initialize()

        with pytest.raises(TypeError):
            await engine.run(hello_script, {"handle": object()})

        assert engine.pool.in_use == 0
        assert engine.pool.available == 1

    @pytest.mark.asyncio
    async def test_keyboard_interrupt_is_execution_error(self, write_script):
        """Should report a script's KeyboardInterrupt as a record and keep the context."""
        script = write_script("interrupt.py", 'raise KeyboardInterrupt("stop")\n')
        pid_script = write_script("pid.py", "import os\nprint(os.getpid())\n")
        engine = ExecutionEngine(EngineConfig(min_contexts=1, max_contexts=1))
        await engine.initialize()
        try:
            before = await engine.execute(pid_script)
            with pytest.raises(ScriptExecutionError, match="KeyboardInterrupt: stop"):
                await engine.execute(script)
            after = await engine.execute(pid_script)
        finally:
            await engine.shutdown()

        assert before.stdout == after.stdout

    @pytest.mark.asyncio
    async def test_dead_context_is_replaced(self, engine, write_script, hello_script):
        """Should propagate the fault, discard the context and keep serving."""
        crash = write_script("crash.py", "import os\nos._exit(7)\n")
        await engine.initialize()

        with pytest.raises(ContextError):
            await engine.execute(crash)

        assert engine.pool.in_use == 0
        result = await engine.execute(hello_script)
        assert result.success
        assert engine.context_count <= engine.config.max_contexts

    @pytest.mark.asyncio
    async def test_restricted_contexts_run_isolated(self, write_script):
        """Should start interpreters in isolated mode when restricted."""
        script = write_script("flags.py", "import sys\nprint(sys.flags.isolated)\n")
        engine = ExecutionEngine(
            EngineConfig(min_contexts=1, max_contexts=1, allow_unrestricted_execution=False)
        )
        async with engine:
            result = await engine.execute(script)

        assert result.stdout == "1"
        assert engine.state is EngineState.STOPPED


class TestConcurrency:
    """Tests for bounded concurrent runs."""

    @pytest.mark.asyncio
    async def test_runs_bounded_by_max_contexts(self, write_script):
        """Should run at most max_contexts scripts at once and finish them all."""
        script = write_script("sleep.py", "import time\ntime.sleep(0.3)\n")
        engine = ExecutionEngine(EngineConfig(min_contexts=2, max_contexts=2))
        await engine.initialize()
        peak = 0
        stop = asyncio.Event()

        async def monitor():
            nonlocal peak
            while not stop.is_set():
                peak = max(peak, engine.pool.in_use)
                assert engine.context_count <= 2
                await asyncio.sleep(0.005)

        watcher = asyncio.create_task(monitor())
        started = time.monotonic()
        try:
            results = await asyncio.gather(*(engine.execute(script) for _ in range(3)))
        finally:
            stop.set()
            await watcher
            await engine.shutdown()
        elapsed = time.monotonic() - started

        assert len(results) == 3
        assert all(result.success for result in results)
        assert 1 <= peak <= 2
        # The third run had to queue behind one of the first two
        assert elapsed >= 0.6


class TestStop:
    """Tests for stop_all() and re-initialization."""

    @pytest.mark.asyncio
    async def test_execute_after_stop(self, engine, hello_script):
        """Should raise NotInitializedError after stop_all."""
        await engine.initialize()
        engine.stop_all()

        with pytest.raises(NotInitializedError):
            await engine.execute(hello_script)

    @pytest.mark.asyncio
    async def test_reinitialize_after_stop(self, engine, hello_script):
        """Should rebuild a fresh pool after stop_all."""
        await engine.initialize()
        old_pool = engine.pool
        engine.stop_all()

        await engine.initialize()

        assert engine.state is EngineState.READY
        assert engine.pool is not old_pool
        assert old_pool.closed
        result = await engine.execute(hello_script)
        assert result.success

    @pytest.mark.asyncio
    async def test_stop_all_is_idempotent(self, engine):
        """Should tolerate repeated stop_all calls."""
        await engine.initialize()

        engine.stop_all()
        engine.stop_all()

        assert engine.state is EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_all_kills_in_flight_run(self, engine, write_script):
        """Should abruptly fail a run that is still executing."""
        script = write_script("slow.py", "import time\ntime.sleep(30)\n")
        await engine.initialize()
        pool = engine.pool

        task = asyncio.create_task(engine.execute(script))
        await _wait_for(lambda: pool.in_use == 1)
        engine.stop_all()

        with pytest.raises((ContextError, PoolClosedError)):
            await asyncio.wait_for(task, timeout=10)
        assert pool.size == 0

    @pytest.mark.asyncio
    async def test_async_context_manager(self, hello_script):
        """Should initialize on enter and stop on exit."""
        async with ExecutionEngine(EngineConfig(min_contexts=1, max_contexts=1)) as engine:
            assert engine.state is EngineState.READY
            result = await engine.execute(hello_script)
            assert result.success

        assert engine.state is EngineState.STOPPED
        assert engine.context_count == 0

    @pytest.mark.asyncio
    async def test_sync_context_manager_stops(self):
        """Should stop the engine when a with block exits."""
        with ExecutionEngine(EngineConfig(min_contexts=1, max_contexts=1)) as engine:
            await engine.initialize()
            pool = engine.pool

        assert engine.state is EngineState.STOPPED
        assert pool.closed

    @pytest.mark.asyncio
    async def test_discarded_engine_disposes_pool(self):
        """Should dispose the pool when the engine is garbage-collected."""
        engine = ExecutionEngine(EngineConfig(min_contexts=1, max_contexts=1))
        await engine.initialize()
        pool = engine.pool

        del engine
        gc.collect()

        assert pool.closed
        assert pool.size == 0
