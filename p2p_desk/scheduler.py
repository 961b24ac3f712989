"""
Trade Desk - Expiration Sweeper.

Runs OperationLifecycle.expiration_sweep on a single fixed
cadence in a background task. A failing sweep is logged and the
loop keeps going.
"""

import asyncio
import logging
from typing import Optional

from .config import SweepConfig
from .lifecycle import OperationLifecycle


logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Background task around the expiration sweep."""

    def __init__(
        self,
        lifecycle: OperationLifecycle,
        config: Optional[SweepConfig] = None,
    ):
        self._lifecycle = lifecycle
        self._config = config or SweepConfig()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._runs = 0
        self._failures = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        return {"runs": self._runs, "failures": self._failures}

    async def start(self) -> None:
        """Start the sweep loop."""
        if self._running:
            return

        logger.info(
            f"Starting expiration sweeper (every {self._config.interval_seconds}s)"
        )
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the sweep loop."""
        if not self._running:
            return

        logger.info("Stopping expiration sweeper...")
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Expiration sweeper stopped")

    async def run_once(self) -> int:
        """Run one sweep now; returns the number of offers cancelled."""
        self._runs += 1
        return await self._lifecycle.expiration_sweep(
            retract=self._config.retract_expired,
        )

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failures += 1
                logger.error(f"Expiration sweep error: {e}", exc_info=True)

            await asyncio.sleep(self._config.interval_seconds)
