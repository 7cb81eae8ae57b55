"""Bookkeeping for indexing jobs."""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime
from typing import Any, List, Optional

from .models import IndexJob, JobPhase, JobStatus

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class JobStore(ABC):
    """Abstract store for :class:`IndexJob` records."""

    @abstractmethod
    def create(self, path: str) -> IndexJob:
        """Register a new running job for *path*."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[IndexJob]:
        """Snapshot of a job, or ``None`` if unknown."""

    @abstractmethod
    def get_all(self) -> List[IndexJob]:
        """Snapshots of every retained job, oldest first."""

    @abstractmethod
    def update(self, job_id: str, **changes: Any) -> Optional[IndexJob]:
        """Apply field changes to a job; unknown ids are ignored."""

    def increment(self, job_id: str, field_name: str = "files_processed", amount: int = 1) -> None:
        job = self.get(job_id)
        if job is not None:
            self.update(job_id, **{field_name: getattr(job, field_name) + amount})


class InMemoryJobStore(JobStore):
    """Jobs kept in process memory.

    History is bounded to ``max_jobs`` entries: when the limit is exceeded the
    oldest finished jobs are evicted. Running jobs are never evicted.
    """

    def __init__(self, max_jobs: int = 100) -> None:
        self.max_jobs = max_jobs
        self._jobs: "OrderedDict[str, IndexJob]" = OrderedDict()

    def create(self, path: str) -> IndexJob:
        job = IndexJob(id=new_job_id(), path=path)
        self._jobs[job.id] = job
        self._evict()
        return replace(job)

    def get(self, job_id: str) -> Optional[IndexJob]:
        job = self._jobs.get(job_id)
        return replace(job) if job is not None else None

    def get_all(self) -> List[IndexJob]:
        return [replace(job) for job in self._jobs.values()]

    def update(self, job_id: str, **changes: Any) -> Optional[IndexJob]:
        job = self._jobs.get(job_id)
        if job is None:
            logger.debug("Update for unknown job %s ignored", job_id)
            return None
        for field_name, value in changes.items():
            if not hasattr(job, field_name):
                raise AttributeError(f"IndexJob has no field {field_name!r}")
            setattr(job, field_name, value)
        if job.status is not JobStatus.RUNNING and job.completed_at is None:
            job.completed_at = datetime.now()
        return replace(job)

    def increment(self, job_id: str, field_name: str = "files_processed", amount: int = 1) -> None:
        job = self._jobs.get(job_id)
        if job is not None:
            setattr(job, field_name, getattr(job, field_name) + amount)

    def _evict(self) -> None:
        overflow = len(self._jobs) - self.max_jobs
        if overflow <= 0:
            return
        for job_id in [jid for jid, job in self._jobs.items() if job.finished][:overflow]:
            del self._jobs[job_id]


def finish(store: JobStore, job_id: str, error: Optional[str] = None) -> Optional[IndexJob]:
    """Move a job to its terminal state."""
    if error is None:
        return store.update(job_id, status=JobStatus.COMPLETED, phase=JobPhase.COMPLETED)
    return store.update(job_id, status=JobStatus.FAILED, phase=JobPhase.FAILED, error=error)
