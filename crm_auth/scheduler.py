"""
Debounced delayed-task scheduler keyed by entity id.

Each submission returns an awaitable. A submission that arrives for the same
key before the previous one has started replaces it; the replaced
submission's awaitable resolves with the outcome of its replacement.
Failed calls are retried with exponential backoff.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional


logger = logging.getLogger("crm_auth")


@dataclass
class _Pending:
    waiters: List["asyncio.Future[Any]"]
    task: Optional["asyncio.Task[None]"] = None
    started: bool = False
    attempts: int = field(default=0)


class DebouncedScheduler:
    """Coalesces bursts of updates per key into a single delayed call."""

    def __init__(
        self,
        delay: float = 0.5,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._delay = delay
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._pending: Dict[str, _Pending] = {}

    def submit(self, key: str, fn: Callable[[], Awaitable[Any]]) -> "asyncio.Future[Any]":
        """Schedule ``fn`` for ``key`` after the debounce delay."""
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Any]" = loop.create_future()
        waiters = [future]

        existing = self._pending.get(key)
        if existing is not None and not existing.started:
            if existing.task is not None:
                existing.task.cancel()
            waiters = existing.waiters + waiters

        entry = _Pending(waiters=waiters)
        entry.task = loop.create_task(self._run(key, entry, fn))
        self._pending[key] = entry
        return future

    def cancel(self, key: str) -> bool:
        """Cancel the pending submission for ``key`` and its waiters."""
        entry = self._pending.pop(key, None)
        if entry is None:
            return False
        if entry.task is not None:
            entry.task.cancel()
        for waiter in entry.waiters:
            waiter.cancel()
        return True

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    async def aclose(self) -> None:
        """Cancel everything still scheduled."""
        for key in list(self._pending):
            self.cancel(key)

    async def _run(self, key: str, entry: _Pending, fn: Callable[[], Awaitable[Any]]) -> None:
        try:
            await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            return

        entry.started = True
        try:
            result = await self._call_with_retries(entry, fn)
        except asyncio.CancelledError:
            for waiter in entry.waiters:
                waiter.cancel()
            raise
        except Exception as exc:
            logger.warning(f"Scheduled task for {key} failed after {entry.attempts} attempt(s): {exc}")
            for waiter in entry.waiters:
                if not waiter.done():
                    waiter.set_exception(exc)
        else:
            for waiter in entry.waiters:
                if not waiter.done():
                    waiter.set_result(result)
        finally:
            if self._pending.get(key) is entry:
                del self._pending[key]

    async def _call_with_retries(self, entry: _Pending, fn: Callable[[], Awaitable[Any]]) -> Any:
        while True:
            entry.attempts += 1
            try:
                return await fn()
            except Exception:
                if entry.attempts >= self._max_attempts:
                    raise
                await asyncio.sleep(self._retry_delay * (2 ** (entry.attempts - 1)))
