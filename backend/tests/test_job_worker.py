import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from bookforge.infrastructure.event_bus import InMemoryEventBus
from bookforge.infrastructure.rate_limit import InMemoryRateLimitState
from bookforge.models.job import JobStatus, JobType
from bookforge.services.job_store import JobStore
from bookforge.services.job_worker import JobWorker, describe_error
from bookforge.shared_kernel.domain_events import JobCompletedEvent, JobFailedEvent
from bookforge.shared_kernel.exceptions import EntityNotFoundError, RateLimitError


def build_worker(session_factory, settings, clock, handlers):
    bus = InMemoryEventBus(keep_history=True)
    worker = JobWorker(
        session_factory,
        InMemoryRateLimitState(clock),
        handlers,
        event_bus=bus,
        settings=settings,
        clock=clock,
    )
    return worker, bus


async def create_job(session_factory, clock, job_type, target_id=None):
    async with session_factory() as session:
        return await JobStore(session, clock).create_job(job_type, target_id or uuid4())


async def load_job(session_factory, clock, job_id):
    async with session_factory() as session:
        return await JobStore(session, clock).get_job(job_id)


@pytest.mark.asyncio
async def test_successful_job_completes_and_publishes(session_factory, settings, clock):
    seen = []

    async def handler(job):
        seen.append(job.id)

    worker, bus = build_worker(session_factory, settings, clock, {JobType.GENERATE_CHAPTER: handler})
    job_id = await create_job(session_factory, clock, JobType.GENERATE_CHAPTER)

    assert await worker.run_once() is True
    assert await worker.run_once() is False

    job = await load_job(session_factory, clock, job_id)
    assert seen == [job_id]
    assert job.status == JobStatus.COMPLETED
    assert job.completed_at == clock()
    assert [type(event) for event in bus.published] == [JobCompletedEvent]
    assert bus.published[0].job_type == "generate_chapter"


@pytest.mark.asyncio
async def test_rate_limit_pauses_worker_without_spending_attempt(session_factory, settings, clock):
    calls = {"count": 0}

    async def handler(job):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RateLimitError("slow down", reset_at=clock() + timedelta(seconds=120))

    worker, bus = build_worker(session_factory, settings, clock, {JobType.GENERATE_CHAPTER: handler})
    job_id = await create_job(session_factory, clock, JobType.GENERATE_CHAPTER)

    assert await worker.run_once() is True
    job = await load_job(session_factory, clock, job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert await worker.rate_limit.is_limited()
    assert await worker.rate_limit.seconds_until_reset() == pytest.approx(120)

    # Paused: nothing is picked up, the job stays queued
    assert await worker.run_once() is False
    assert calls["count"] == 1

    clock.advance(121)
    assert await worker.run_once() is True
    job = await load_job(session_factory, clock, job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 0
    assert bus.published and isinstance(bus.published[-1], JobCompletedEvent)


@pytest.mark.asyncio
async def test_rate_limit_without_reset_uses_default_pause(session_factory, settings, clock):
    async def handler(job):
        raise RateLimitError("slow down")

    worker, _ = build_worker(session_factory, settings, clock, {JobType.GENERATE_CHAPTER: handler})
    await create_job(session_factory, clock, JobType.GENERATE_CHAPTER)

    await worker.run_once()

    assert await worker.rate_limit.reset_at() == clock() + timedelta(
        seconds=settings.RATE_LIMIT_DEFAULT_PAUSE_SECONDS
    )


@pytest.mark.asyncio
async def test_generic_failure_retries_with_backoff_then_fails(session_factory, settings, clock):
    async def handler(job):
        raise RuntimeError("provider exploded")

    worker, bus = build_worker(session_factory, settings, clock, {JobType.GENERATE_SUMMARY: handler})
    job_id = await create_job(session_factory, clock, JobType.GENERATE_SUMMARY)
    base = settings.JOB_BACKOFF_BASE_SECONDS

    assert await worker.run_once() is True
    job = await load_job(session_factory, clock, job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.available_at == clock() + timedelta(seconds=base)
    assert job.error == "RuntimeError: provider exploded"

    assert await worker.run_once() is False
    clock.advance(base)
    assert await worker.run_once() is True
    job = await load_job(session_factory, clock, job_id)
    assert job.attempts == 2
    assert job.available_at == clock() + timedelta(seconds=base * 2)

    clock.advance(base * 2)
    assert await worker.run_once() is True
    job = await load_job(session_factory, clock, job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == settings.JOB_MAX_ATTEMPTS
    assert [type(event) for event in bus.published] == [JobFailedEvent]
    assert bus.published[0].attempts == 3


@pytest.mark.asyncio
async def test_fatal_precondition_fails_without_retry(session_factory, settings, clock):
    async def handler(job):
        raise EntityNotFoundError("Chapter missing")

    worker, bus = build_worker(session_factory, settings, clock, {JobType.GENERATE_CHAPTER: handler})
    job_id = await create_job(session_factory, clock, JobType.GENERATE_CHAPTER)

    await worker.run_once()

    job = await load_job(session_factory, clock, job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 0
    assert "Chapter missing" in job.error
    assert isinstance(bus.published[0], JobFailedEvent)


@pytest.mark.asyncio
async def test_unknown_job_type_fails(session_factory, settings, clock):
    worker, bus = build_worker(session_factory, settings, clock, {})
    job_id = await create_job(session_factory, clock, JobType.ORIGINALITY_CHECK)

    await worker.run_once()

    job = await load_job(session_factory, clock, job_id)
    assert job.status == JobStatus.FAILED
    assert "No handler registered" in job.error
    assert bus.published[0].job_type == "originality_check"


@pytest.mark.asyncio
async def test_jobs_for_one_target_run_in_order(session_factory, settings, clock):
    order = []

    def recorder(name):
        async def handler(job):
            order.append((name, job.target_id))
        return handler

    handlers = {job_type: recorder(job_type.value) for job_type in JobType}
    worker, _ = build_worker(session_factory, settings, clock, handlers)
    chapter_a, chapter_b = uuid4(), uuid4()
    for target in (chapter_a, chapter_b):
        for job_type in (JobType.GENERATE_CHAPTER, JobType.GENERATE_SUMMARY, JobType.UPDATE_STATES):
            await create_job(session_factory, clock, job_type, target)

    assert await worker.run_until_idle() == 6

    for target in (chapter_a, chapter_b):
        assert [name for name, job_target in order if job_target == target] == [
            "generate_chapter",
            "generate_summary",
            "update_states",
        ]


@pytest.mark.asyncio
async def test_run_until_idle_honours_max_jobs(session_factory, settings, clock):
    async def handler(job):
        return None

    worker, _ = build_worker(session_factory, settings, clock, {JobType.GENERATE_CHAPTER: handler})
    for _ in range(3):
        await create_job(session_factory, clock, JobType.GENERATE_CHAPTER)

    assert await worker.run_until_idle(max_jobs=2) == 2
    assert await worker.run_until_idle() == 1


@pytest.mark.asyncio
async def test_publish_failure_does_not_undo_completion(session_factory, settings, clock):
    async def handler(job):
        return None

    async def broken_subscriber(event):
        raise RuntimeError("subscriber down")

    worker, bus = build_worker(session_factory, settings, clock, {JobType.GENERATE_CHAPTER: handler})
    bus.subscribe(JobCompletedEvent, broken_subscriber)
    job_id = await create_job(session_factory, clock, JobType.GENERATE_CHAPTER)

    await worker.run_once()

    assert (await load_job(session_factory, clock, job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_forever_recovers_stale_jobs_and_stops(session_factory, settings, clock):
    async with session_factory() as session:
        store = JobStore(session, clock)
        job_id = await store.create_job(JobType.GENERATE_CHAPTER, uuid4())
        await store.claim_next()
    clock.advance(settings.JOB_STALE_AFTER_SECONDS + 1)

    worker, _ = build_worker(session_factory, settings, clock, {})
    stop_event = asyncio.Event()
    stop_event.set()
    await worker.run_forever(stop_event)

    assert (await load_job(session_factory, clock, job_id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_long_running_job_keeps_its_lease(session_factory, settings, clock):
    fast_beats = settings.model_copy(update={"JOB_HEARTBEAT_INTERVAL_SECONDS": 0.01})
    started = asyncio.Event()
    release = asyncio.Event()
    runs = []

    async def slow_handler(job):
        runs.append(job.id)
        started.set()
        await release.wait()

    handlers = {JobType.GENERATE_CHAPTER: slow_handler}
    worker_a, _ = build_worker(session_factory, fast_beats, clock, handlers)
    worker_b, _ = build_worker(session_factory, fast_beats, clock, handlers)
    job_id = await create_job(session_factory, clock, JobType.GENERATE_CHAPTER)

    running = asyncio.create_task(worker_a.run_once())
    await started.wait()
    clock.advance(fast_beats.JOB_STALE_AFTER_SECONDS + 1)
    for _ in range(300):
        job = await load_job(session_factory, clock, job_id)
        if job.heartbeat_at == clock():
            break
        await asyncio.sleep(0.01)
    assert job.heartbeat_at == clock()

    # A second worker sees a live lease: nothing to recover, nothing to claim
    assert await worker_b.recover_stale_jobs() == 0
    assert await worker_b.run_once() is False

    release.set()
    assert await running is True
    assert runs == [job_id]
    job = await load_job(session_factory, clock, job_id)
    assert job.status == JobStatus.COMPLETED


def test_worker_registers_plain_and_enum_types(settings, clock):
    async def handler(job):
        return None

    worker, _ = build_worker(None, settings, clock, {"generate_summary": handler})
    worker.register(JobType.GENERATE_CHAPTER, handler)

    assert worker.job_types == ["generate_chapter", "generate_summary"]


def test_describe_error_includes_class_name():
    assert describe_error(ValueError("bad")) == "ValueError: bad"
    assert describe_error(RuntimeError()) == "RuntimeError: RuntimeError"
