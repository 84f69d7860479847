"""
Per-key single-flight coordination for asyncio.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Run at most one operation per key at a time.

    The first caller for a key starts the operation as a task; callers that
    arrive while it is running attach to the same task and receive the same
    result or exception. Waiters await the task through ``asyncio.shield``,
    so a cancelled waiter never cancels the shared operation.
    """

    def __init__(self):
        self._inflight: Dict[str, "asyncio.Task[T]"] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def do(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` for ``key`` or join the run already in flight."""
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(operation())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the outcome as retrieved even if every waiter went away
        if not task.cancelled():
            task.exception()

    async def cancel_all(self) -> None:
        """Cancel every in-flight operation and wait for them to finish."""
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
