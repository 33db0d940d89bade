from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from civicauth.logging import get_logger
from civicauth.service.revocation import RevocationLedger
from civicauth.storage.ephemeral import EphemeralStore

logger = get_logger(__name__)


class CleanupScheduler:
    """Hourly expiry sweep over the ledger and the TTL store.

    Sweeps once on start and then every ``interval_seconds``. A failing sweep
    is logged and retried on the next tick; the loop itself never raises.
    """

    def __init__(
        self,
        ledger: RevocationLedger,
        cache: EphemeralStore,
        *,
        interval_seconds: float = 3600,
    ) -> None:
        self.ledger = ledger
        self.cache = cache
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict:
        """Run one sweep; returns counts, or an ``error`` entry on failure."""
        self.runs += 1
        try:
            revoked_removed = await self.ledger.cleanup_expired()
            ephemeral_removed = await self.cache.purge_expired()
        except Exception as exc:
            self.failures += 1
            logger.error(
                "cleanup_sweep_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                failures=self.failures,
            )
            return {"error": str(exc)}
        counts = {"revocation": revoked_removed, "ephemeral": ephemeral_removed}
        logger.info("cleanup_sweep_complete", **counts)
        return counts

    async def _loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("cleanup_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("cleanup_scheduler_stopped")
