from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID

from src.sermon_api.config import settings
from src.sermon_api.infra.cache.ingestion_cache import IngestionCache, ingestion_cache
from src.sermon_api.services.audio_stream.lifecycle import SessionLifecycleService, lifecycle_service

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    evicted: List[UUID] = field(default_factory=list)
    refreshed: List[UUID] = field(default_factory=list)


class CacheSweeper:
    """Background task that evicts expired ingestion entries.

    Each pass also refreshes long-running streams against the session store so
    a status change made elsewhere (another process, a direct database edit)
    eventually closes the stream.
    """

    def __init__(
        self,
        *,
        cache: Optional[IngestionCache] = None,
        lifecycle: Optional[SessionLifecycleService] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self._cache = cache if cache is not None else ingestion_cache
        self._lifecycle = lifecycle if lifecycle is not None else lifecycle_service
        self._interval = interval_seconds if interval_seconds is not None else settings.cache_sweep_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> SweepReport:
        evicted = self._cache.sweep_expired()
        for session_id in evicted:
            self._lifecycle.release(session_id)
        refreshed = self._lifecycle.refresh_active_sessions()
        if evicted or refreshed:
            logger.info("Cache sweep evicted %d and refreshed %d entries", len(evicted), len(refreshed))
        return SweepReport(evicted=evicted, refreshed=refreshed)

    def start(self) -> None:
        """Start the sweep loop on the running event loop (call once at startup)."""

        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="ingestion-cache-sweeper")
        logger.info("Ingestion cache sweeper started (interval %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Ingestion cache sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                # Refresh may hit a blocking store; keep it off the event loop.
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("Ingestion cache sweep failed")


cache_sweeper = CacheSweeper()
