"""
Periodic expiry sweep.

Reads never return expired or exhausted secrets whether or not the sweep has
run; the sweeper only reclaims storage. It is safe to run any number of
sweepers next to live traffic.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .errors import StorageError
from .manager import SecretManager, SweepResult

logger = logging.getLogger("envelope_secrets.sweeper")


class ExpirySweeper:
    """
    Calls ``SecretManager.delete_expired`` every ``interval`` seconds.

    Usage::

        async with ExpirySweeper(manager, interval=1.0):
            ...  # serve requests
    """

    def __init__(self, manager: SecretManager, interval: Optional[float] = None) -> None:
        self._manager = manager
        self._interval = (
            interval if interval is not None else manager.config.sweep_interval_seconds
        )
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> Optional[SweepResult]:
        """Run one sweep. Storage failures are logged and reported as None."""
        try:
            result = await self._manager.delete_expired()
        except StorageError as e:
            self.failures += 1
            logger.error("Expiry sweep failed: %s", e)
            return None
        finally:
            self.runs += 1
        return result

    async def _run(self) -> None:
        while True:
            await self.sweep_once()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Expiry sweeper started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")

    async def __aenter__(self) -> ExpirySweeper:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
