"""Disposable interval timer owned by a single ResponseGate."""

from __future__ import annotations

import asyncio
from typing import Callable

from loguru import logger


class DecayTimer:
    """Calls ``callback`` every ``interval_ms`` until stopped.

    Runs as an asyncio task on the current loop. Errors raised by the
    callback are logged and the timer keeps ticking.
    """

    def __init__(self, interval_ms: int, callback: Callable[[], None], name: str = "decay") -> None:
        self._interval = interval_ms / 1000
        self._callback = callback
        self._name = name
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking. No-op when already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"timer:{self._name}")

    def stop(self) -> None:
        """Cancel the timer task. Safe to call repeatedly."""
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                self.ticks += 1
                self._callback()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Timer {self._name}: tick failed: {e}")
