"""
Durable job store.

Every status change is a conditional UPDATE on the expected source status, so
the table itself is the lock: a job moves pending -> running for exactly one
caller, and a transition from the wrong state writes nothing.
"""
from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from bookforge.models.job import Job, JobStatus, JobType, job_type_name
from bookforge.models.types import utc_now
from bookforge.schemas.jobs import QueueStats
from bookforge.shared_kernel.exceptions import EntityNotFoundError, InvalidStateTransitionError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


def _earlier_active_job_exists(target_id_column, before_id):
    """True when a job for the same target with a smaller id is still pending or running."""
    earlier = aliased(Job)
    return exists(
        select(earlier.id)
        .where(
            earlier.target_id == target_id_column,
            earlier.id < before_id,
            earlier.status.in_(ACTIVE_STATUSES),
        )
        .correlate(Job)
    )


class JobStore:
    """Job persistence for one session. Methods commit their own transitions."""

    def __init__(self, db: AsyncSession, clock: Clock = utc_now) -> None:
        self.db = db
        self._clock = clock

    async def create_job(
        self,
        job_type: Union[JobType, str],
        target_id: UUID,
        *,
        commit: bool = True,
    ) -> int:
        job = Job(
            type=job_type_name(job_type),
            target_id=target_id,
            status=JobStatus.PENDING,
            attempts=0,
            created_at=self._clock(),
        )
        self.db.add(job)
        await self.db.flush()
        job_id = job.id
        if commit:
            await self.db.commit()
        logger.info("Created job %s (%s) for target %s", job_id, job.type, target_id)
        return job_id

    async def get_job(self, job_id: int) -> Job:
        job = await self.db.get(Job, job_id, populate_existing=True)
        if job is None:
            raise EntityNotFoundError(f"Job {job_id} not found", details={"job_id": job_id})
        return job

    async def get_jobs_for_target(self, target_id: UUID) -> List[Job]:
        result = await self.db.scalars(
            select(Job)
            .where(Job.target_id == target_id)
            .order_by(Job.id)
            .execution_options(populate_existing=True)
        )
        return list(result.all())

    async def claim_next(
        self,
        job_types: Optional[List[str]] = None,
        batch_size: int = 20,
    ) -> Optional[Job]:
        """Claim the oldest eligible pending job, or return None.

        Eligible: pending, due (no backoff pending), and no earlier job for the
        same target still pending or running.
        """
        now = self._clock()
        stmt = (
            select(Job.id)
            .where(
                Job.status == JobStatus.PENDING,
                or_(Job.available_at.is_(None), Job.available_at <= now),
                ~_earlier_active_job_exists(Job.target_id, Job.id),
            )
            .order_by(Job.id)
            .limit(batch_size)
        )
        if job_types:
            stmt = stmt.where(Job.type.in_([job_type_name(t) for t in job_types]))
        candidate_ids = list((await self.db.scalars(stmt)).all())
        await self.db.commit()

        for job_id in candidate_ids:
            if await self._try_claim(job_id, now):
                return await self.get_job(job_id)
            logger.debug("Job %s was claimed elsewhere or became blocked", job_id)
        return None

    async def _try_claim(self, job_id: int, now: datetime) -> bool:
        result = await self.db.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.PENDING,
                ~_earlier_active_job_exists(Job.target_id, job_id),
            )
            .values(status=JobStatus.RUNNING, started_at=now, heartbeat_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_completed(self, job_id: int) -> Job:
        await self._transition(
            job_id,
            JobStatus.RUNNING,
            status=JobStatus.COMPLETED,
            completed_at=self._clock(),
            available_at=None,
        )
        return await self.get_job(job_id)

    async def release(self, job_id: int, error: Optional[str] = None) -> Job:
        """Return a running job to pending without spending an attempt."""
        await self._transition(
            job_id,
            JobStatus.RUNNING,
            status=JobStatus.PENDING,
            error=error,
            started_at=None,
            heartbeat_at=None,
            available_at=None,
        )
        return await self.get_job(job_id)

    async def record_failure(
        self,
        job_id: int,
        error: str,
        max_attempts: int,
        backoff: Callable[[int], float],
    ) -> Job:
        """Spend one attempt; requeue with backoff or fail permanently at the limit."""
        job = await self.get_job(job_id)
        if job.status != JobStatus.RUNNING:
            exc = InvalidStateTransitionError(
                f"Job {job_id} is {job.status.value}, expected running",
                details={"job_id": job_id, "status": job.status.value},
            )
            await self.db.rollback()
            raise exc
        attempts = job.attempts + 1
        now = self._clock()
        values: Dict[str, Any] = {"attempts": attempts, "error": error}
        if attempts < max_attempts:
            values.update(
                status=JobStatus.PENDING,
                started_at=None,
                heartbeat_at=None,
                available_at=now + timedelta(seconds=backoff(attempts)),
            )
        else:
            values.update(status=JobStatus.FAILED, completed_at=now, available_at=None)
        await self._transition(job_id, JobStatus.RUNNING, Job.attempts == job.attempts, **values)
        return await self.get_job(job_id)

    async def fail(self, job_id: int, error: str) -> Job:
        """Fail a running job at once; used for errors no retry can fix."""
        await self._transition(
            job_id,
            JobStatus.RUNNING,
            status=JobStatus.FAILED,
            error=error,
            completed_at=self._clock(),
            available_at=None,
        )
        return await self.get_job(job_id)

    async def heartbeat(self, job_id: int) -> bool:
        """Extend the lease of a running job. False once the job is no longer running."""
        result = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.RUNNING)
            .values(heartbeat_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def requeue_stale(self, lease_seconds: float) -> int:
        """Return running jobs whose lease lapsed (the worker died mid-job) to pending.

        A live worker refreshes ``heartbeat_at`` while its handler runs, so a
        long provider call never looks stale.
        """
        cutoff = self._clock() - timedelta(seconds=lease_seconds)
        result = await self.db.execute(
            update(Job)
            .where(
                Job.status == JobStatus.RUNNING,
                func.coalesce(Job.heartbeat_at, Job.started_at) < cutoff,
            )
            .values(
                status=JobStatus.PENDING,
                started_at=None,
                heartbeat_at=None,
                error="Requeued after worker interruption",
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.warning("Requeued %d stale running job(s)", result.rowcount)
        return result.rowcount

    async def queue_stats(self) -> QueueStats:
        rows = await self.db.execute(select(Job.status, func.count(Job.id)).group_by(Job.status))
        counts = {status.value: count for status, count in rows.all()}
        await self.db.commit()
        return QueueStats(
            pending=counts.get("pending", 0),
            running=counts.get("running", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0),
            total=sum(counts.values()),
        )

    async def _transition(self, job_id: int, expected: JobStatus, *conditions, **values: Any) -> None:
        result = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == expected, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidStateTransitionError(
                f"Job {job_id} is not {expected.value}",
                details={"job_id": job_id, "expected": expected.value},
            )
        await self.db.commit()
