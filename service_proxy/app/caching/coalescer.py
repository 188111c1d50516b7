"""
In-flight request coalescing.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict

from shared.logging import get_logger


class RequestCoalescer:
    """Shares one pending computation between concurrent callers of a key.

    The first caller for a key starts ``factory()``; callers arriving while it
    is still running await the same task and receive the same result or
    exception. Nothing is remembered once the task settles; that is the cache's
    job.
    """

    def __init__(self):
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}
        self.logger = get_logger("proxy.coalescer")

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        pending = self._inflight.get(key)
        if pending is not None:
            self.logger.debug("Joined in-flight request", key=key)
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(factory())
        self._inflight[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Future[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved when every waiter went away.
        if not task.cancelled():
            task.exception()

    def inflight(self) -> int:
        return len(self._inflight)
