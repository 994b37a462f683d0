"""
Persistence contracts consumed by the orchestrator and the vault.

JobStore keeps durable job snapshots (a write-through cache for recovery and
listing, never the source of truth for in-flight control). CredentialStore
keeps encrypted credential records unique per (user_id, provider_id).
In-memory implementations serve tests and single-process deployments; the
PostgreSQL implementation lives in ``utils.database``.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from ..models.job import Job, JobStatus, TERMINAL_STATUSES
from ..models.credential import CredentialRecord


class JobStore(ABC):
    """Durable persistence of job snapshots."""

    @abstractmethod
    async def upsert_job(self, job: Job) -> None:
        """Insert or replace the snapshot for ``job.job_id``; a terminal snapshot is final."""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 100
    ) -> List[Job]:
        """Most recent jobs first."""
        pass


class CredentialStore(ABC):
    """Persistence for encrypted credential records."""

    @abstractmethod
    async def upsert_credential(self, record: CredentialRecord) -> None:
        pass

    @abstractmethod
    async def get_credential(self, user_id: str, provider_id: str) -> Optional[CredentialRecord]:
        pass

    @abstractmethod
    async def delete_credential(self, user_id: str, provider_id: str) -> bool:
        """Returns True if a record was removed."""
        pass


class InMemoryJobStore(JobStore):
    """Job snapshots held as serialized dicts."""

    def __init__(self):
        self._snapshots: Dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def upsert_job(self, job: Job) -> None:
        snapshot = job.to_dict()
        async with self._lock:
            existing = self._snapshots.get(job.job_id)
            if existing and JobStatus(existing["status"]) in TERMINAL_STATUSES:
                return
            self._snapshots[job.job_id] = snapshot

    async def get_job(self, job_id: str) -> Optional[Job]:
        snapshot = self._snapshots.get(job_id)
        return Job.from_dict(copy.deepcopy(snapshot)) if snapshot else None

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 100
    ) -> List[Job]:
        jobs = [Job.from_dict(copy.deepcopy(snapshot)) for snapshot in self._snapshots.values()]
        if user_id is not None:
            jobs = [job for job in jobs if job.user_id == user_id]
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]


class InMemoryCredentialStore(CredentialStore):
    """Encrypted records keyed by (user_id, provider_id)."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], CredentialRecord] = {}

    async def upsert_credential(self, record: CredentialRecord) -> None:
        existing = self._records.get((record.user_id, record.provider_id))
        if existing is not None:
            # Upsert keeps the original row identity
            record.id = existing.id
            record.created_at = existing.created_at
        self._records[(record.user_id, record.provider_id)] = copy.copy(record)

    async def get_credential(self, user_id: str, provider_id: str) -> Optional[CredentialRecord]:
        record = self._records.get((user_id, provider_id))
        return copy.copy(record) if record else None

    async def delete_credential(self, user_id: str, provider_id: str) -> bool:
        return self._records.pop((user_id, provider_id), None) is not None
