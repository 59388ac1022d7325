# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Local self-trigger for development.

In production sweeps are started by an external scheduler calling the
cron route (or ``portmail sweep`` from system cron). During local
development there is no such scheduler, so the server runs a
:class:`SelfTrigger` that calls the same sweep on a fixed interval.

Example:
    Running a sweep every minute::

        trigger = SelfTrigger(lambda: service.run_sweep(trigger="self"), interval=60)
        await trigger.start()
        ...
        await trigger.stop()
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from typing import Any

from .config_loader import DEFAULT_SELF_TRIGGER_INTERVAL
from .logger import get_logger


class SelfTrigger:
    """Background task that invokes a sweep callback periodically.

    Attributes:
        interval: Seconds between two sweeps.
        runs: Number of sweeps started so far.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[Any]],
        interval: float = DEFAULT_SELF_TRIGGER_INTERVAL,
        *,
        run_immediately: bool = True,
        logger=None,
    ):
        self._callback = callback
        self.interval = float(interval)
        self._run_immediately = run_immediately
        self.logger = logger or get_logger("SelfTrigger")
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Spawn the trigger loop. Calling start twice has no effect."""
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="portmail-self-trigger")
        self.logger.info("Self-trigger started, sweeping every %ss", self.interval)

    async def stop(self) -> None:
        """Signal the loop to end and wait for the current sweep to finish."""
        self._stop.set()
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self.logger.debug("Self-trigger stopped")

    async def _loop(self) -> None:
        if not self._run_immediately:
            await self._wait(self.interval)
        while not self._stop.is_set():
            self.runs += 1
            try:
                await self._callback()
            except Exception as exc:
                self.logger.error("Self-triggered sweep failed: %s", exc)
            await self._wait(self.interval)

    async def _wait(self, timeout: float) -> None:
        """Sleep until ``timeout`` elapses or stop() is called."""
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._stop.wait()
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return
