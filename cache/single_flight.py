"""
Request collapsing: one in-flight computation per key, shared by all callers.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Tuple

logger = logging.getLogger(__name__)


class _Call:
    """One in-flight computation and the number of callers awaiting it."""

    def __init__(self, task: "asyncio.Task[Any]"):
        self.task = task
        self.waiters = 0


class SingleFlight:
    """
    Coalesce concurrent calls for the same key into a single execution.

    The latch for a key is removed as soon as its computation finishes,
    fails, or is abandoned by every waiter, so it never outlives the build.
    """

    def __init__(self):
        self._calls: Dict[str, _Call] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """
        Run ``fn`` once per key among concurrent callers.

        Args:
            key: Coalescing key (the query fingerprint)
            fn: Zero-argument coroutine factory performing the build

        Returns:
            Tuple of (result, shared) where shared is True for callers that
            joined an existing computation
        """
        call = self._calls.get(key)
        shared = call is not None
        if call is None:
            call = _Call(asyncio.ensure_future(fn()))
            self._calls[key] = call
            call.task.add_done_callback(lambda _task, k=key, c=call: self._forget(k, c))
        else:
            logger.debug(f"Joining in-flight build for key {key[:12]}")

        call.waiters += 1
        try:
            # Shielded so one caller's cancellation does not kill the shared build
            result = await asyncio.shield(call.task)
        finally:
            call.waiters -= 1
            if call.waiters == 0 and not call.task.done():
                # Every waiter is gone: abandon the build and free the latch now
                self._forget(key, call)
                call.task.cancel()
        return result, shared

    def _forget(self, key: str, call: _Call):
        if self._calls.get(key) is call:
            del self._calls[key]
