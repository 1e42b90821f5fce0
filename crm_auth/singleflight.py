"""
Single-flight execution keyed by an identity.

The first caller for a key starts the operation; callers arriving while it is
in flight await the same result (or exception) instead of starting their own.
The operation runs as a task owned by the flight, so a caller that is
cancelled only stops waiting.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Generic, TypeVar


T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Deduplicates concurrent calls per key within one event loop."""

    def __init__(self) -> None:
        self._in_flight: Dict[str, "asyncio.Future[T]"] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` for ``key`` unless a call is already in flight."""
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        # shield: cancelling one caller must not cancel the shared call
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Future[T]") -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # mark retrieved so a failure nobody awaited is not reported as lost
            task.exception()
