"""Background calculation jobs.

Jobs run as asyncio tasks bounded by a semaphore (``WORKER_POOL_SIZE``).
Each job opens its own session. A batch has at most one job in flight.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payroll_batch.calculators.data_sources import DataSources
from payroll_batch.calculators.types import BatchRunSummary
from payroll_batch.config import Settings, get_settings
from payroll_batch.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    PayrollBatchError,
    StateError,
)
from payroll_batch.models.base import utcnow
from payroll_batch.services.batch_service import BatchService
from payroll_batch.services.recalculation import RecalculationCoordinator
from payroll_batch.services.state_machine import BatchStatus

logger = logging.getLogger(__name__)

DataSourcesFactory = Callable[[AsyncSession], DataSources]


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    CALCULATE = "calculate"
    RESUME = "resume"
    RECALCULATE = "recalculate"


@dataclass
class CalculationJob:
    """Progress and outcome of one background calculation."""

    job_id: UUID
    batch_id: UUID
    kind: JobKind
    actor_id: UUID | None = None
    state: JobState = JobState.QUEUED
    processed: int = 0
    total: int = 0
    error: str | None = None
    summary: BatchRunSummary | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def percentage(self) -> float:
        if not self.total:
            return 100.0 if self.state == JobState.SUCCEEDED else 0.0
        return round(100.0 * self.processed / self.total, 1)

    @property
    def is_active(self) -> bool:
        return self.state in (JobState.QUEUED, JobState.RUNNING)


class CalculationJobRunner:
    """Runs batch calculations in the background.

    Usage:
        runner = CalculationJobRunner(session_factory)
        job = runner.submit_calculation(batch_id, actor_id)
        await runner.wait(job.job_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        data_sources_factory: DataSourcesFactory | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.data_sources_factory = data_sources_factory
        self._semaphore = asyncio.Semaphore(self.settings.worker_pool_size)
        self._jobs: dict[UUID, CalculationJob] = {}
        self._active: dict[UUID, UUID] = {}  # batch_id -> job_id

    def submit_calculation(self, batch_id: UUID, actor_id: UUID | None = None) -> CalculationJob:
        """Calculate a draft batch in the background."""
        return self._submit(batch_id, JobKind.CALCULATE, actor_id)

    def submit_resume(self, batch_id: UUID, actor_id: UUID | None = None) -> CalculationJob:
        """Resume an incomplete batch in the background."""
        return self._submit(batch_id, JobKind.RESUME, actor_id)

    def submit_recalculation(self, batch_id: UUID, actor_id: UUID) -> CalculationJob:
        """Recalculate a batch holding a granted request in the background."""
        return self._submit(batch_id, JobKind.RECALCULATE, actor_id)

    def get_job(self, job_id: UUID) -> CalculationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("Calculation job", job_id)
        return job

    def list_jobs(self, batch_id: UUID | None = None) -> list[CalculationJob]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
        if batch_id is not None:
            jobs = [j for j in jobs if j.batch_id == batch_id]
        return jobs

    async def wait(self, job_id: UUID, timeout: float | None = None) -> CalculationJob:
        """Wait for a job to finish (or the timeout to elapse) and return it."""
        job = self.get_job(job_id)
        if job.task is not None and not job.task.done():
            await asyncio.wait({job.task}, timeout=timeout)
        return job

    def cancel(self, job_id: UUID) -> bool:
        """Request cancellation. Records already persisted are kept."""
        job = self.get_job(job_id)
        if job.task is None or job.task.done():
            return False
        job.task.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel every job still in flight and wait for them to settle."""
        tasks = [j.task for j in self._jobs.values() if j.task is not None and not j.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _submit(self, batch_id: UUID, kind: JobKind, actor_id: UUID | None) -> CalculationJob:
        active_id = self._active.get(batch_id)
        if active_id is not None and self._jobs[active_id].is_active:
            raise ConcurrencyConflict(
                batch_id, "no job in flight", f"job {active_id} is already running"
            )

        job = CalculationJob(job_id=uuid4(), batch_id=batch_id, kind=kind, actor_id=actor_id)
        self._jobs[job.job_id] = job
        self._active[batch_id] = job.job_id
        job.task = asyncio.create_task(self._run(job))
        logger.info("Queued %s job %s for batch %s", kind.value, job.job_id, batch_id)
        return job

    async def _run(self, job: CalculationJob) -> None:
        try:
            async with self._semaphore:
                job.state = JobState.RUNNING
                job.started_at = utcnow()
                async with self.session_factory() as session:
                    job.summary = await self._execute(session, job)
        except asyncio.CancelledError:
            job.state = JobState.CANCELLED
            job.error = "cancelled"
            logger.warning("Job %s for batch %s cancelled", job.job_id, job.batch_id)
            await self._mark_incomplete(job.batch_id, "calculation cancelled")
            raise
        except Exception as e:
            logger.exception("Job %s for batch %s failed", job.job_id, job.batch_id)
            job.state = JobState.FAILED
            job.error = str(e)
            await self._mark_incomplete(job.batch_id, str(e))
        else:
            job.state = JobState.SUCCEEDED
            logger.info(
                "Job %s for batch %s succeeded (%d/%d)",
                job.job_id,
                job.batch_id,
                job.processed,
                job.total,
            )
        finally:
            job.finished_at = utcnow()
            if self._active.get(job.batch_id) == job.job_id:
                del self._active[job.batch_id]

    async def _execute(self, session: AsyncSession, job: CalculationJob) -> BatchRunSummary:
        data_sources = (
            self.data_sources_factory(session) if self.data_sources_factory is not None else None
        )
        batch_service = BatchService(session, self.settings, data_sources=data_sources)

        def progress(processed: int, total: int) -> None:
            job.processed = processed
            job.total = total

        if job.kind == JobKind.RECALCULATE:
            coordinator = RecalculationCoordinator(session, batch_service, settings=self.settings)
            return await coordinator.recalculate(job.batch_id, job.actor_id, progress)

        if job.kind == JobKind.RESUME:
            batch = await batch_service.get_batch(job.batch_id)
            if batch.status != BatchStatus.INCOMPLETE:
                raise StateError(batch.status, "resume")
        return await batch_service.run_calculation(job.batch_id, job.actor_id, progress)

    async def _mark_incomplete(self, batch_id: UUID, reason: str) -> None:
        try:
            async with self.session_factory() as session:
                await BatchService(session, self.settings).mark_incomplete(batch_id, reason)
                await session.commit()
        except (SQLAlchemyError, PayrollBatchError):
            logger.exception("Could not mark batch %s incomplete", batch_id)
