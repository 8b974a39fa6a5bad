from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any


class Debouncer:
    """Run ``callback`` only after ``delay`` seconds without another trigger."""

    def __init__(self, delay: float, callback: Callable[[], Any], *, name: str | None = None) -> None:
        self.delay = max(0.0, delay)
        self._callback = callback
        self._name = name or getattr(callback, "__name__", repr(callback))
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def flush(self) -> None:
        """Run a pending call immediately and wait for it to finish."""

        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            await self._run()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.get_running_loop().create_task(self._run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self) -> None:
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logging.exception("Debounced callback %s failed", self._name)
