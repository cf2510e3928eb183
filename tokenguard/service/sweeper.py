"""Background task that bounds the in-process revocation and cache tiers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from tokenguard.logging import get_logger

if TYPE_CHECKING:
    from tokenguard.service.lockout import LockoutGuard
    from tokenguard.service.revocation import RevocationStore
    from tokenguard.storage.local_cache import LocalCache

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 60 * 60
DEFAULT_HIGH_WATER = 10_000
DEFAULT_TARGET_SIZE = 5_000


@dataclass
class SweepReport:
    expired_removed: int = 0
    evicted: int = 0
    cache_expired: int = 0
    locks_expired: int = 0
    size: int = 0


class CleanupSweeper:
    """Periodically trims the fast set and purges expired local entries.

    Entries evicted from the fast set are still answered by the cache and
    durable tiers.
    """

    def __init__(
        self,
        revocation: "RevocationStore",
        *,
        lockout: Optional["LockoutGuard"] = None,
        local_cache: Optional["LocalCache"] = None,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        high_water: int = DEFAULT_HIGH_WATER,
        target_size: int = DEFAULT_TARGET_SIZE,
    ) -> None:
        if target_size >= high_water:
            raise ValueError("target_size must be below high_water")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.revocation = revocation
        self.lockout = lockout
        self.local_cache = local_cache
        self.interval_seconds = interval_seconds
        self.high_water = high_water
        self.target_size = target_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def sweep_once(self) -> SweepReport:
        fast_set = self.revocation.fast_set
        report = SweepReport()
        report.expired_removed = fast_set.purge_expired()
        if len(fast_set) > self.high_water:
            report.evicted = fast_set.shrink_to(self.target_size)
        if self.local_cache is not None:
            report.cache_expired = self.local_cache.purge_expired()
        if self.lockout is not None:
            report.locks_expired = self.lockout.local_locks.purge_expired()
        report.size = len(fast_set)
        if any((report.evicted, report.expired_removed, report.cache_expired, report.locks_expired)):
            logger.info(
                "cleanup_sweep_completed",
                expired_removed=report.expired_removed,
                evicted=report.evicted,
                cache_expired=report.cache_expired,
                locks_expired=report.locks_expired,
                size=report.size,
            )
        else:
            logger.debug("cleanup_sweep_noop", size=report.size)
        return report

    async def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._running:
            logger.warning("cleanup_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "cleanup_sweeper_started",
            interval_seconds=self.interval_seconds,
            high_water=self.high_water,
            target_size=self.target_size,
        )

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("cleanup_sweeper_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.sweep_once()
            except Exception as exc:
                logger.error(
                    "cleanup_sweep_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
