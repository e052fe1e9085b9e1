"""Coalescing of rapid writes to the same settings object."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Hashable, Optional

logger = logging.getLogger(__name__)

WriteFn = Callable[[Hashable, Any], Awaitable[None]]


class DebouncedWriter:
    """
    Collapses bursts of writes per key into one delayed write.

    Each ``schedule`` replaces the pending payload for its key and restarts
    the quiet period. When the quiet period passes untouched, the latest
    payload is written once. Writes for the same key never overlap, so they
    reach the store in the order they were fired.
    """

    def __init__(self, write: WriteFn, quiet_period: float = 1.0):
        """
        Initialize writer.

        Args:
            write: Coroutine function called with (key, payload)
            quiet_period: Seconds without new calls before a write fires
        """
        self._write = write
        self.quiet_period = quiet_period
        self._pending: dict[Hashable, Any] = {}
        self._timers: dict[Hashable, asyncio.Task] = {}
        self._writing: dict[Hashable, asyncio.Task] = {}
        self._flushes: set[asyncio.Task] = set()

    def schedule(self, key: Hashable, payload: Any):
        """Replace any pending write for key and restart its quiet period."""
        self._pending[key] = payload
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._timers[key] = asyncio.create_task(self._fire_later(key))
        logger.debug(f"Scheduled write for {key}")

    def pending_keys(self, predicate: Optional[Callable[[Hashable], bool]] = None) -> list:
        return [key for key in self._pending if predicate is None or predicate(key)]

    def has_pending(self, predicate: Optional[Callable[[Hashable], bool]] = None) -> bool:
        return bool(self.pending_keys(predicate))

    def flush(self, key: Hashable) -> Optional[asyncio.Task]:
        """
        Fire the pending write for key now instead of after the quiet period.

        Returns:
            The task performing the write, or None if nothing was pending
        """
        if key not in self._pending:
            return None
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        task = asyncio.create_task(self._fire(key))
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)
        return task

    def cancel(self, key: Hashable) -> Optional[asyncio.Task]:
        """Stop waiting on key. The pending write is flushed, never dropped."""
        return self.flush(key)

    def discard(self, key: Hashable) -> bool:
        """
        Forget the pending write for key, e.g. because its item was deleted.

        Returns:
            True if a write was pending
        """
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        return self._pending.pop(key, None) is not None

    async def flush_all(self, predicate: Optional[Callable[[Hashable], bool]] = None):
        """Flush every pending write (matching predicate) and wait for them."""
        tasks = [self.flush(key) for key in self.pending_keys(predicate)]
        tasks = [task for task in tasks if task is not None]
        if tasks:
            logger.debug(f"Flushing {len(tasks)} pending writes")
            await asyncio.gather(*tasks)

    def abort(self) -> int:
        """
        Drop every pending write without sending it.

        Only for when writes can no longer succeed, e.g. lost credentials.

        Returns:
            Number of writes dropped
        """
        dropped = len(self._pending)
        current = asyncio.current_task()
        for task in [*self._timers.values(), *self._flushes]:
            if task is not current:
                task.cancel()
        self._timers.clear()
        self._flushes.clear()
        self._writing.clear()
        self._pending.clear()
        if dropped:
            logger.warning(f"Dropped {dropped} pending writes")
        return dropped

    def tasks(self) -> list[asyncio.Task]:
        """Outstanding timer, flush and write tasks."""
        return [*self._timers.values(), *self._flushes, *self._writing.values()]

    async def _fire_later(self, key: Hashable):
        await asyncio.sleep(self.quiet_period)
        current = asyncio.current_task()
        self._timers.pop(key, None)
        self._flushes.add(current)
        current.add_done_callback(self._flushes.discard)
        await self._fire(key)

    async def _fire(self, key: Hashable):
        current = asyncio.current_task()
        previous = self._writing.get(key)
        while previous is not None and previous is not current:
            await asyncio.wait([previous])
            previous = self._writing.get(key)

        if key not in self._pending:
            return
        payload = self._pending.pop(key)

        self._writing[key] = current
        try:
            await self._write(key, payload)
        finally:
            if self._writing.get(key) is current:
                del self._writing[key]
