"""Single-flight guard: at most one run per sync type, extra triggers rejected."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger("pms.scheduling.single_flight")


class SingleFlight:
    """
    Usage:
        async with guard.acquire() as acquired:
            if not acquired:
                return already_running_result
            ...

    The flag is checked and set without an intervening await, so it is safe
    across tasks on one event loop. It is cleared on exit no matter how the
    body ends.
    """

    def __init__(self, name: str):
        self.name = name
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[bool]:
        if self._running:
            logger.warning(f"{self.name} is already running, rejecting trigger")
            yield False
            return

        self._running = True
        try:
            yield True
        finally:
            self._running = False
