"""
Bounded-parallelism admission control.

A ConcurrencyGate admits at most `limit` tasks of one resource class at a time.
Excess tasks wait in FIFO order for admission; completion order is whatever the
tasks themselves produce. The gate lives on a single asyncio event loop, so the
active counter and waiter queue are only touched from loop callbacks and need no
lock.

Cancellation:
- A task cancelled while still queued is removed from the queue and never runs.
- A task cancelled while running releases its slot like any other completion.
"""

import asyncio
import functools
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LIMIT = 10


class GateStats(BaseModel):
    """Point-in-time counters for one gate."""

    name: str
    limit: int
    active_count: int
    queued_count: int
    peak_active: int
    completed: int
    failed: int


class ConcurrencyGate:
    """Admission control for one named class of subprocess-backed work."""

    def __init__(self, name: str, limit: int = DEFAULT_LIMIT):
        if limit < 1:
            raise ValueError(f"Gate limit must be at least 1, got {limit}")
        self.name = name
        self.limit = limit
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._peak_active = 0
        self._completed = 0
        self._failed = 0

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queued_count(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def stats(self) -> GateStats:
        return GateStats(
            name=self.name,
            limit=self.limit,
            active_count=self._active,
            queued_count=self.queued_count,
            peak_active=self._peak_active,
            completed=self._completed,
            failed=self._failed,
        )

    async def _acquire(self) -> None:
        if self._active < self.limit and not self.queued_count:
            self._take_slot()
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation; pass it on
                self._release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _take_slot(self) -> None:
        self._active += 1
        if self._active > self._peak_active:
            self._peak_active = self._active

    def _release(self) -> None:
        # Hand the slot straight to the next live waiter so nobody can jump the queue
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._active -= 1

    async def submit(self, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run `task` once admitted and return its result.

        Args:
            task: Zero-argument callable returning an awaitable

        Returns:
            Whatever the task returns. Errors propagate only to this caller.
        """
        await self._acquire()
        try:
            result = await task()
        except BaseException:
            self._failed += 1
            raise
        finally:
            self._release()
        self._completed += 1
        return result

    def limited(self, fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Wrap an async function so every call is admitted through this gate."""

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.submit(lambda: fn(*args, **kwargs))

        return wrapper


class GateRegistry:
    """
    One ConcurrencyGate per resource class, created on first use.

    Args:
        default_limit: Limit for classes without an explicit entry in `limits`
        limits: Per-class limits, e.g. {"git": 10}
    """

    def __init__(self, default_limit: int = DEFAULT_LIMIT, limits: Optional[Dict[str, int]] = None):
        self.default_limit = default_limit
        self._limits = dict(limits or {})
        self._gates: Dict[str, ConcurrencyGate] = {}

    def gate(self, resource_class: str) -> ConcurrencyGate:
        gate = self._gates.get(resource_class)
        if gate is None:
            limit = self._limits.get(resource_class, self.default_limit)
            gate = ConcurrencyGate(resource_class, limit)
            self._gates[resource_class] = gate
            logger.debug(f"Created gate '{resource_class}' (limit={limit})")
        return gate

    async def submit(self, resource_class: str, task: Callable[[], Awaitable[T]]) -> T:
        return await self.gate(resource_class).submit(task)

    def stats(self) -> Dict[str, GateStats]:
        return {name: gate.stats() for name, gate in self._gates.items()}
