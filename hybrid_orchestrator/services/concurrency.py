"""
Concurrency governance for jobs and provider calls.

A global counting semaphore bounds simultaneously running jobs and one
semaphore per provider bounds simultaneous model calls to that provider
regardless of how many jobs share it. Callers over the cap wait for capacity;
they never fail because of it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional

from ..utils.logger import get_logger


class ConcurrencyLimiter:
    """Global job cap plus per-provider call caps."""

    def __init__(
        self,
        max_concurrent_jobs: int = 10,
        max_calls_per_provider: int = 4,
        provider_limits: Optional[Dict[str, int]] = None
    ):
        self.max_concurrent_jobs = max_concurrent_jobs
        self.max_calls_per_provider = max_calls_per_provider
        self.provider_limits = dict(provider_limits or {})

        self._job_semaphore = asyncio.Semaphore(max_concurrent_jobs)
        self._provider_semaphores: Dict[str, asyncio.Semaphore] = {}

        self._running_jobs = 0
        self._waiting_jobs = 0
        self._active_calls: Dict[str, int] = {}
        self._peak_calls: Dict[str, int] = {}

        self.logger = get_logger(__name__)

    def _provider_semaphore(self, provider_id: str) -> asyncio.Semaphore:
        # Created without an intervening await, so two tasks cannot race to create it
        semaphore = self._provider_semaphores.get(provider_id)
        if semaphore is None:
            limit = self.provider_limits.get(provider_id, self.max_calls_per_provider)
            semaphore = asyncio.Semaphore(limit)
            self._provider_semaphores[provider_id] = semaphore
        return semaphore

    @asynccontextmanager
    async def job_slot(self):
        """Hold one of the global job slots."""
        self._waiting_jobs += 1
        try:
            await self._job_semaphore.acquire()
        finally:
            self._waiting_jobs -= 1
        self._running_jobs += 1
        try:
            yield
        finally:
            self._running_jobs -= 1
            self._job_semaphore.release()

    @asynccontextmanager
    async def provider_slot(self, provider_id: str):
        """Hold one call slot for ``provider_id``."""
        semaphore = self._provider_semaphore(provider_id)
        await semaphore.acquire()
        active = self._active_calls.get(provider_id, 0) + 1
        self._active_calls[provider_id] = active
        self._peak_calls[provider_id] = max(self._peak_calls.get(provider_id, 0), active)
        try:
            yield
        finally:
            self._active_calls[provider_id] -= 1
            semaphore.release()

    def active_calls(self, provider_id: str) -> int:
        return self._active_calls.get(provider_id, 0)

    def peak_calls(self, provider_id: str) -> int:
        return self._peak_calls.get(provider_id, 0)

    def get_statistics(self) -> Dict[str, Any]:
        """Get current slot usage."""
        return {
            "running_jobs": self._running_jobs,
            "waiting_jobs": self._waiting_jobs,
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "active_calls": {p: n for p, n in self._active_calls.items() if n},
            "peak_calls": dict(self._peak_calls),
            "provider_limits": {
                provider_id: self.provider_limits.get(provider_id, self.max_calls_per_provider)
                for provider_id in self._provider_semaphores
            },
        }
