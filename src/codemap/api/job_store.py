"""
In-memory job store for codemap generation jobs.

Responsibilities
----------------
- **Create**: generate UUIDs for new requests and mark them PENDING.
- **Read**: retrieve current status, phase and result by job id.
- **Update**: transition jobs PROCESSING -> COMPLETED / FAILED / CANCELLED.
- **Cancel**: keep a handle on each running pipeline so it can be signalled.

This is a volatile store: if the server restarts, all jobs are lost. Saved
codemaps carry their own checkpoint, so nothing is needed to resume work.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, ClassVar

from codemap.api.schemas import FINISHED_STATUSES, JobInfo, JobStatus
from codemap.core.contracts.codemap import Codemap

if TYPE_CHECKING:
    from codemap.pipelines.codemap_generation import CodemapPipeline


class JobStore:
    """
    A dictionary-backed store for :class:`JobInfo` objects.
    """

    _instance: ClassVar[JobStore | None] = None

    def __init__(self) -> None:
        self._jobs: dict[str, JobInfo] = {}
        self._pipelines: dict[str, CodemapPipeline] = {}

    @classmethod
    def get_instance(cls) -> JobStore:
        """Accessor for the global singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def clear(self) -> None:
        """Forget every job (used by tests and on shutdown)."""
        self._jobs.clear()
        self._pipelines.clear()

    def create_job(self, query: str = "") -> str:
        """
        Register a new job id and initialize its state to PENDING.

        Returns
        -------
        str
            The generated UUID4 string for the new job.
        """
        job_id = str(uuid.uuid4())
        self._jobs[job_id] = JobInfo(
            job_id=job_id,
            status=JobStatus.PENDING,
            created_at=datetime.now(UTC),
            query=query,
        )
        return job_id

    def get_job(self, job_id: str) -> JobInfo | None:
        """Retrieve job metadata, or None if not found."""
        return self._jobs.get(job_id)

    def attach_pipeline(self, job_id: str, pipeline: CodemapPipeline) -> None:
        self._pipelines[job_id] = pipeline

    def cancel(self, job_id: str) -> bool:
        """Signal the job's pipeline; ``False`` if the job already finished."""
        job = self._jobs.get(job_id)
        if job is None or job.status in FINISHED_STATUSES:
            return False
        pipeline = self._pipelines.get(job_id)
        if pipeline is None:
            # Not started yet: the worker sees the status and skips the run.
            job.status = JobStatus.CANCELLED
        else:
            pipeline.cancel()
        return True

    def mark_processing(self, job_id: str) -> None:
        """Transition a job to PROCESSING state."""
        if job := self._jobs.get(job_id):
            job.status = JobStatus.PROCESSING

    def mark_phase(self, job_id: str, phase: str) -> None:
        if job := self._jobs.get(job_id):
            job.phase = phase

    def mark_completed(self, job_id: str, result: Codemap) -> None:
        """Transition a job to COMPLETED and attach the codemap."""
        if job := self._jobs.get(job_id):
            job.status = JobStatus.COMPLETED
            job.result = result
        self._pipelines.pop(job_id, None)

    def mark_failed(self, job_id: str, error: str, partial: Codemap | None = None) -> None:
        """Transition a job to FAILED, keeping any partial codemap."""
        if job := self._jobs.get(job_id):
            job.status = JobStatus.FAILED
            job.error = error
            job.result = partial
        self._pipelines.pop(job_id, None)

    def mark_cancelled(self, job_id: str) -> None:
        if job := self._jobs.get(job_id):
            job.status = JobStatus.CANCELLED
        self._pipelines.pop(job_id, None)


def get_job_store() -> JobStore:
    return JobStore.get_instance()


__all__ = ["JobStore", "get_job_store"]
