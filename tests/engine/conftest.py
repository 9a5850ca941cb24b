"""Fake contexts for pool and lifecycle tests that need no interpreter."""

import asyncio
import itertools

import pytest

from scriptpool.engine import ContextError


class FakeContext:
    """Stands in for ExecutionContext inside the pool."""

    _pids = itertools.count(1000)

    def __init__(self):
        self.pid = next(self._pids)
        self.alive = True
        self.terminated = False

    def terminate(self):
        self.alive = False
        self.terminated = True

    async def wait_closed(self):
        return None


class FakeFactory:
    """Async context factory that records what it created."""

    def __init__(self):
        self.created = []
        self.calls = 0
        self.fail_on = set()
        self.delay = 0

    async def __call__(self):
        self.calls += 1
        call = self.calls
        await asyncio.sleep(self.delay)
        if call in self.fail_on:
            raise ContextError(f"fake start failure #{call}")
        context = FakeContext()
        self.created.append(context)
        return context


@pytest.fixture
def factory():
    return FakeFactory()
