# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Bounded pool of execution contexts.

Contexts are created lazily up to max_contexts and reused once released.
Acquisition blocks when every slot is taken; that is the only admission
control point for runs.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, List, Set

from scriptpool.engine.context import ExecutionContext
from scriptpool.engine.errors import PoolClosedError

logger = logging.getLogger(__name__)

ContextFactory = Callable[[], Awaitable[ExecutionContext]]


class ContextPool:
    """Bounded, lazily growing pool of execution contexts.

    Invariant: idle contexts + slot holders <= max_contexts. A slot holder is
    either a busy context or a context being created.
    """

    def __init__(self, factory: ContextFactory, min_contexts: int = 2, max_contexts: int = 10):
        self._factory = factory
        self.min_contexts = min_contexts
        self.max_contexts = max_contexts
        self._slots = asyncio.Semaphore(max_contexts)
        self._idle: deque = deque()
        self._busy: Set[ExecutionContext] = set()
        self._retired: List[ExecutionContext] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def available(self) -> int:
        """Idle contexts ready to be handed out."""
        return len(self._idle)

    @property
    def in_use(self) -> int:
        """Contexts currently checked out."""
        return len(self._busy)

    @property
    def size(self) -> int:
        """Live contexts, idle or busy."""
        return len(self._idle) + len(self._busy)

    async def open(self) -> None:
        """Start min_contexts contexts eagerly.

        If any fails to start, the ones that did are terminated and the first
        error is raised.
        """
        if self._closed:
            raise PoolClosedError("Cannot open a disposed pool")

        results = await asyncio.gather(
            *(self._factory() for _ in range(self.min_contexts)),
            return_exceptions=True,
        )
        started = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            for context in started:
                context.terminate()
            raise failures[0]

        self._idle.extend(started)
        logger.debug(f"Pool opened with {len(started)} contexts (max {self.max_contexts})")

    async def acquire(self) -> ExecutionContext:
        """Check out a context, waiting for a free slot if necessary.

        Raises:
            PoolClosedError: If the pool is disposed before or while waiting.
        """
        if self._closed:
            raise PoolClosedError("Context pool has been disposed")

        await self._slots.acquire()
        if self._closed:
            # Pass the wake-up along to the next waiter
            self._slots.release()
            raise PoolClosedError("Context pool has been disposed")

        try:
            while self._idle:
                context = self._idle.pop()
                if context.alive:
                    self._busy.add(context)
                    return context
                logger.debug("Discarding dead idle context")
                context.terminate()

            context = await self._factory()
        except BaseException:
            self._slots.release()
            raise

        if self._closed:
            context.terminate()
            self._retired.append(context)
            self._slots.release()
            raise PoolClosedError("Context pool was disposed while a context was starting")

        self._busy.add(context)
        logger.debug(f"Pool grew to {self.size} contexts")
        return context

    def release(self, context: ExecutionContext) -> None:
        """Return a context. Dead contexts are discarded, not reused."""
        if context not in self._busy:
            if not self._closed:
                logger.warning("Release of a context this pool does not own")
            return

        self._busy.discard(context)
        if not context.alive:
            logger.debug("Discarding dead context")
            context.terminate()
        else:
            self._idle.append(context)
        self._slots.release()

    def dispose(self) -> None:
        """Kill every context, busy ones included. Idempotent."""
        if self._closed:
            return
        self._closed = True

        contexts = list(self._idle) + list(self._busy)
        self._idle.clear()
        self._busy.clear()
        for context in contexts:
            context.terminate()
        self._retired.extend(contexts)

        # Waiters wake one at a time; each re-releases on seeing the pool closed
        self._slots.release()
        logger.debug(f"Pool disposed ({len(contexts)} contexts terminated)")

    async def wait_closed(self) -> None:
        """Wait for every terminated context process to exit."""
        retired, self._retired = self._retired, []
        await asyncio.gather(*(context.wait_closed() for context in retired))
