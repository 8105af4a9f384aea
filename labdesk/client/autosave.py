import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Set

from loguru import logger

from labdesk.core.config import settings
from labdesk.core.exceptions import BaseCustomException, BusinessLogicError


class FieldAutosaver:
    """Debounced, per-key serialized saves.

    At most one save per key is in flight. Edits arriving while a save is
    running are coalesced: when it finishes, one more save runs and picks up
    whatever the latest local value is at that moment. Keys never wait on
    each other.
    """

    def __init__(
        self,
        save: Callable[[Hashable], Awaitable[Any]],
        debounce_ms: Optional[int] = None
    ):
        self._save = save
        self.debounce = (debounce_ms if debounce_ms is not None else settings.AUTOSAVE_DEBOUNCE_MS) / 1000
        self._timers: Dict[Hashable, asyncio.Task] = {}
        self._in_flight: Dict[Hashable, asyncio.Task] = {}
        self._rerun: Set[Hashable] = set()
        self._failed: Set[Hashable] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def is_pending(self, key: Hashable) -> bool:
        return key in self._timers or key in self._in_flight

    def has_failed(self, key: Hashable) -> bool:
        return key in self._failed

    def schedule(self, key: Hashable) -> None:
        """(Re)start the debounce window for a key"""
        if self._closed:
            raise BusinessLogicError(message="Autosaver is closed")

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._timers[key] = asyncio.create_task(self._fire_after_debounce(key))

    async def _fire_after_debounce(self, key: Hashable) -> None:
        await asyncio.sleep(self.debounce)
        self._timers.pop(key, None)
        self._start(key)

    def _start(self, key: Hashable) -> None:
        if key in self._in_flight:
            self._rerun.add(key)
            return
        self._in_flight[key] = asyncio.create_task(self._save_loop(key))

    async def _save_loop(self, key: Hashable) -> None:
        try:
            while True:
                self._rerun.discard(key)
                try:
                    await self._save(key)
                    self._failed.discard(key)
                except BaseCustomException as e:
                    # The saver keeps the failed edit; the next edit or flush retries
                    self._failed.add(key)
                    logger.warning(f"Autosave of {key} failed: {e.message}")
                if key not in self._rerun:
                    break
        finally:
            self._in_flight.pop(key, None)

    def cancel(self, key: Hashable) -> None:
        """Drop a scheduled save; a save already in flight still completes"""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._rerun.discard(key)
        self._failed.discard(key)

    async def flush(self, key: Hashable) -> None:
        """Run any scheduled or previously failed save for the key now and wait for it to land"""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if timer is not None or (key in self._failed and key not in self._in_flight):
            self._start(key)

        task = self._in_flight.get(key)
        if task is not None:
            await task

    async def save_now(self, key: Hashable) -> None:
        """Save the key immediately, after any save of it already in flight"""
        if self._closed:
            raise BusinessLogicError(message="Autosaver is closed")
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._start(key)
        await self._in_flight[key]

    async def flush_all(self) -> None:
        keys = set(self._timers) | set(self._in_flight) | set(self._failed)
        for key in keys:
            await self.flush(key)

    async def close(self) -> None:
        """Flush everything and refuse further scheduling"""
        await self.flush_all()
        self._closed = True
