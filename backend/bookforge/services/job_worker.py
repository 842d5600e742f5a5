"""
Background job worker.

Polls the job store, runs the handler registered for each job type and applies
the retry policy:

- handler returns: job completed
- TransientProviderError (rate limit): job back to pending with its attempt
  unspent, and every pickup pauses until the provider's reset time
- FatalPreconditionError or unknown job type: job failed at once
- anything else: one attempt spent, requeued with exponential backoff until
  the attempt limit, then failed
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from functools import partial
import time
from typing import Awaitable, Callable, Dict, Mapping, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookforge.core.config import Settings
from bookforge.infrastructure.event_bus import EventBus
from bookforge.infrastructure.observability.metrics import JOB_DURATION, JOBS_PROCESSED_TOTAL, WORKER_PAUSED
from bookforge.infrastructure.rate_limit import RateLimitState
from bookforge.infrastructure.resilience import backoff_delay
from bookforge.models.job import Job, JobStatus, JobType, job_type_name
from bookforge.models.types import utc_now
from bookforge.services.job_store import JobStore
from bookforge.shared_kernel.domain_events import DomainEvent, JobCompletedEvent, JobFailedEvent
from bookforge.shared_kernel.exceptions import FatalPreconditionError, TransientProviderError

JobHandler = Callable[[Job], Awaitable[None]]


def describe_error(exc: BaseException) -> str:
    message = str(exc) or exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"


class JobWorker:
    """Executes queued jobs. Safe to run in several processes at once."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rate_limit: RateLimitState,
        handlers: Optional[Mapping[Union[JobType, str], JobHandler]] = None,
        *,
        event_bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if settings is None:
            from bookforge.core.config import settings as default_settings

            settings = default_settings
        self.session_factory = session_factory
        self.rate_limit = rate_limit
        self.event_bus = event_bus
        self.settings = settings
        self._clock = clock
        self._handlers: Dict[str, JobHandler] = {}
        for job_type, handler in (handlers or {}).items():
            self.register(job_type, handler)
        self.max_attempts = settings.JOB_MAX_ATTEMPTS
        self.poll_interval = settings.JOB_POLL_INTERVAL_SECONDS
        self.heartbeat_interval = settings.JOB_HEARTBEAT_INTERVAL_SECONDS
        self._backoff = partial(
            backoff_delay,
            base=settings.JOB_BACKOFF_BASE_SECONDS,
            cap=settings.JOB_BACKOFF_MAX_SECONDS,
        )
        self._log = structlog.get_logger(__name__)

    def register(self, job_type: Union[JobType, str], handler: JobHandler) -> None:
        self._handlers[job_type_name(job_type)] = handler

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    async def run_once(self) -> bool:
        """Claim and execute one job. Returns False when paused or idle."""
        if await self.rate_limit.is_limited():
            WORKER_PAUSED.set(1)
            return False
        WORKER_PAUSED.set(0)

        async with self.session_factory() as session:
            store = JobStore(session, self._clock)
            job = await store.claim_next(batch_size=self.settings.JOB_CLAIM_BATCH_SIZE)
            if job is None:
                return False
            await self._execute(store, job)
        return True

    async def run_until_idle(self, max_jobs: Optional[int] = None) -> int:
        """Drain eligible jobs; stops when idle, paused, or after ``max_jobs``."""
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if not await self.run_once():
                break
            processed += 1
        return processed

    async def recover_stale_jobs(self) -> int:
        async with self.session_factory() as session:
            return await JobStore(session, self._clock).requeue_stale(self.settings.JOB_STALE_AFTER_SECONDS)

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set. Sleeps through rate-limit pauses."""
        self._log.info("worker_started", job_types=self.job_types, poll_interval=self.poll_interval)
        await self.recover_stale_jobs()
        while not stop_event.is_set():
            try:
                processed = await self.run_once()
            except Exception:
                self._log.exception("worker_loop_error")
                processed = False
            if processed:
                continue
            wait_for = await self.rate_limit.seconds_until_reset()
            if wait_for > 0:
                self._log.info("worker_paused", seconds=round(wait_for, 1))
            await self._sleep(stop_event, wait_for or self.poll_interval)
        self._log.info("worker_stopped")

    @staticmethod
    async def _sleep(stop_event: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return

    async def _execute(self, store: JobStore, job: Job) -> None:
        # A failed transition rolls the session back and expires ``job``
        job_id, job_type = job.id, job.type
        log = self._log.bind(
            job_id=job_id,
            job_type=job_type,
            target_id=str(job.target_id),
            attempt=job.attempts + 1,
        )
        handler = self._handlers.get(job_type)
        if handler is None:
            log.error("job_type_unknown")
            failed = await store.fail(job_id, f"No handler registered for job type '{job_type}'")
            JOBS_PROCESSED_TOTAL.labels(job_type=job_type, outcome="failed").inc()
            await self._publish(self._failed_event(failed), log)
            return

        log.info("job_started")
        started = time.monotonic()
        heartbeat_stop = asyncio.Event()
        heartbeat = asyncio.create_task(self._heartbeat(job_id, heartbeat_stop))
        try:
            try:
                await handler(job)
            finally:
                heartbeat_stop.set()
                await heartbeat
        except TransientProviderError as exc:
            reset_at = exc.reset_at or self._clock() + timedelta(
                seconds=self.settings.RATE_LIMIT_DEFAULT_PAUSE_SECONDS
            )
            # Pause before releasing so no other coroutine grabs the job in between
            effective = await self.rate_limit.pause_until(reset_at)
            await store.release(job_id, describe_error(exc))
            WORKER_PAUSED.set(1)
            outcome = "rate_limited"
            log.warning("job_rate_limited", reset_at=effective.isoformat())
        except FatalPreconditionError as exc:
            failed = await store.fail(job_id, describe_error(exc))
            outcome = "failed"
            log.error("job_precondition_failed", error=str(exc))
            await self._publish(self._failed_event(failed), log)
        except Exception as exc:
            updated = await store.record_failure(job_id, describe_error(exc), self.max_attempts, self._backoff)
            if updated.status == JobStatus.FAILED:
                outcome = "failed"
                log.error("job_failed", attempts=updated.attempts, error=str(exc))
                await self._publish(self._failed_event(updated), log)
            else:
                outcome = "retry"
                log.warning(
                    "job_retry_scheduled",
                    attempts=updated.attempts,
                    available_at=updated.available_at.isoformat() if updated.available_at else None,
                    error=str(exc),
                )
        else:
            done = await store.mark_completed(job_id)
            outcome = "completed"
            log.info("job_completed")
            await self._publish(
                JobCompletedEvent(job_id=done.id, job_type=done.type, target_id=done.target_id, attempts=done.attempts),
                log,
            )
        finally:
            JOB_DURATION.labels(job_type=job_type).observe(time.monotonic() - started)
        JOBS_PROCESSED_TOTAL.labels(job_type=job_type, outcome=outcome).inc()

    async def _heartbeat(self, job_id: int, stop_event: asyncio.Event) -> None:
        """Refresh the job's lease until the handler returns."""
        while True:
            await self._sleep(stop_event, self.heartbeat_interval)
            if stop_event.is_set():
                return
            try:
                async with self.session_factory() as session:
                    alive = await JobStore(session, self._clock).heartbeat(job_id)
            except Exception:
                self._log.exception("job_heartbeat_failed", job_id=job_id)
                continue
            if not alive:
                self._log.warning("job_lease_lost", job_id=job_id)
                return

    @staticmethod
    def _failed_event(job: Job) -> JobFailedEvent:
        return JobFailedEvent(
            job_id=job.id,
            job_type=job.type,
            target_id=job.target_id,
            attempts=job.attempts,
            error=job.error or "",
        )

    async def _publish(self, event: DomainEvent, log) -> None:
        if self.event_bus is None:
            return
        try:
            await self.event_bus.publish(event)
        except Exception:
            # Job state is already committed; a subscriber failure must not undo it
            log.exception("event_publish_failed", event_type=type(event).__name__)
