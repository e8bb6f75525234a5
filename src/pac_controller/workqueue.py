"""Keyed work queue for reconcile workers.

A key is a resource identity (``namespace/name``). The queue holds each key
at most once, and a key being processed is never handed to a second worker:
adding it meanwhile marks it dirty, and it is queued again on ``done()``.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class WorkQueue:
    """Asyncio work queue with de-duplication and delayed adds."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        # Keys waiting to be processed, queued or not
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        """Add ``key`` once ``delay`` seconds have passed.

        Only the earliest pending delayed add of a key is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        pending = self._timers.get(key)
        if pending is not None:
            if pending.when() <= when:
                return
            pending.cancel()
        self._timers[key] = loop.call_at(when, self._fire, key)

    async def get(self) -> str | None:
        """Next key to process, or None once the queue is shut down."""
        key = await self._queue.get()
        if key is None or self._shutting_down:
            # Wake the next waiting worker too
            self._queue.put_nowait(None)
            return None
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        logger.debug("Work queue shutting down", extra={"queue": self.name})
        self._queue.put_nowait(None)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)
