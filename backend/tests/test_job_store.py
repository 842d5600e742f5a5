import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from bookforge.models.job import JobStatus, JobType
from bookforge.services.job_store import JobStore
from bookforge.shared_kernel.exceptions import EntityNotFoundError, InvalidStateTransitionError


def fixed_backoff(seconds):
    return lambda attempt: seconds


@pytest.mark.asyncio
async def test_claim_respects_per_target_order(db, clock):
    store = JobStore(db, clock)
    chapter_a, chapter_b = uuid4(), uuid4()
    first = await store.create_job(JobType.GENERATE_CHAPTER, chapter_a)
    second = await store.create_job(JobType.GENERATE_SUMMARY, chapter_a)
    other = await store.create_job(JobType.GENERATE_CHAPTER, chapter_b)

    claimed = await store.claim_next()
    assert claimed.id == first
    assert claimed.status == JobStatus.RUNNING
    assert claimed.started_at == clock()

    # The summary waits for the chapter; the other target is free
    claimed = await store.claim_next()
    assert claimed.id == other
    assert await store.claim_next() is None

    await store.mark_completed(first)
    claimed = await store.claim_next()
    assert claimed.id == second


@pytest.mark.asyncio
async def test_retry_backoff_keeps_successor_blocked(db, clock):
    store = JobStore(db, clock)
    target = uuid4()
    first = await store.create_job(JobType.GENERATE_CHAPTER, target)
    await store.create_job(JobType.GENERATE_SUMMARY, target)

    await store.claim_next()
    job = await store.record_failure(first, "RuntimeError: boom", max_attempts=3, backoff=fixed_backoff(30))
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.error == "RuntimeError: boom"
    assert job.started_at is None

    # First job is not due yet and the second still waits behind it
    assert await store.claim_next() is None

    clock.advance(31)
    claimed = await store.claim_next()
    assert claimed.id == first
    assert claimed.attempts == 1


@pytest.mark.asyncio
async def test_record_failure_fails_at_max_attempts_and_unblocks_successor(db, clock):
    store = JobStore(db, clock)
    target = uuid4()
    first = await store.create_job(JobType.GENERATE_CHAPTER, target)
    second = await store.create_job(JobType.GENERATE_SUMMARY, target)

    for _ in range(2):
        await store.claim_next()
        await store.record_failure(first, "boom", max_attempts=3, backoff=fixed_backoff(0))
    await store.claim_next()
    failed = await store.record_failure(first, "boom", max_attempts=3, backoff=fixed_backoff(0))

    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 3
    assert failed.completed_at == clock()

    claimed = await store.claim_next()
    assert claimed.id == second


@pytest.mark.asyncio
async def test_release_returns_job_without_spending_attempt(db, clock):
    store = JobStore(db, clock)
    job_id = await store.create_job(JobType.GENERATE_CHAPTER, uuid4())
    await store.claim_next()

    job = await store.release(job_id, "RateLimitError: slow down")

    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert (await store.claim_next()).id == job_id


@pytest.mark.asyncio
async def test_transition_from_wrong_state_is_rejected(db, clock):
    store = JobStore(db, clock)
    job_id = await store.create_job(JobType.GENERATE_CHAPTER, uuid4())

    with pytest.raises(InvalidStateTransitionError):
        await store.mark_completed(job_id)
    with pytest.raises(InvalidStateTransitionError, match="is pending, expected running"):
        await store.record_failure(job_id, "boom", max_attempts=3, backoff=fixed_backoff(1))

    job = await store.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_get_job_missing_raises(db, clock):
    with pytest.raises(EntityNotFoundError):
        await JobStore(db, clock).get_job(999)


@pytest.mark.asyncio
async def test_concurrent_claims_hand_out_job_once(session_factory, clock):
    async with session_factory() as session:
        job_id = await JobStore(session, clock).create_job(JobType.GENERATE_CHAPTER, uuid4())

    async def claim():
        async with session_factory() as session:
            job = await JobStore(session, clock).claim_next()
            return job.id if job else None

    results = await asyncio.gather(claim(), claim(), claim())

    assert sorted(results, key=lambda value: value is None) == [job_id, None, None]


@pytest.mark.asyncio
async def test_claim_filters_by_job_type(db, clock):
    store = JobStore(db, clock)
    await store.create_job(JobType.GENERATE_CHAPTER, uuid4())
    analyse = await store.create_job(JobType.ANALYZE_BOOK, uuid4())

    claimed = await store.claim_next(job_types=[JobType.ANALYZE_BOOK])

    assert claimed.id == analyse


@pytest.mark.asyncio
async def test_requeue_stale_running_jobs(db, clock):
    store = JobStore(db, clock)
    job_id = await store.create_job(JobType.GENERATE_CHAPTER, uuid4())
    await store.claim_next()

    assert await store.requeue_stale(3600) == 0
    clock.advance(3601)
    assert await store.requeue_stale(3600) == 1

    job = await store.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_heartbeat_extends_lease_of_running_job(db, clock):
    store = JobStore(db, clock)
    job_id = await store.create_job(JobType.GENERATE_CHAPTER, uuid4())
    await store.claim_next()

    clock.advance(3000)
    assert await store.heartbeat(job_id) is True
    clock.advance(1000)

    # Started 4000s ago but beat 1000s ago
    assert await store.requeue_stale(3600) == 0
    job = await store.get_job(job_id)
    assert job.status == JobStatus.RUNNING
    assert job.heartbeat_at == clock() - timedelta(seconds=1000)


@pytest.mark.asyncio
async def test_heartbeat_reports_lost_lease(db, clock):
    store = JobStore(db, clock)
    job_id = await store.create_job(JobType.GENERATE_CHAPTER, uuid4())

    assert await store.heartbeat(job_id) is False

    await store.claim_next()
    await store.mark_completed(job_id)
    assert await store.heartbeat(job_id) is False


@pytest.mark.asyncio
async def test_queue_stats_counts_by_status(db, clock):
    store = JobStore(db, clock)
    done = await store.create_job(JobType.GENERATE_CHAPTER, uuid4())
    await store.create_job(JobType.GENERATE_CHAPTER, uuid4())
    await store.claim_next()
    await store.mark_completed(done)

    stats = await store.queue_stats()

    assert stats.pending == 1
    assert stats.completed == 1
    assert stats.running == 0
    assert stats.total == 2


@pytest.mark.asyncio
async def test_get_jobs_for_target_in_creation_order(db, clock):
    store = JobStore(db, clock)
    target = uuid4()
    ids = [await store.create_job(job_type, target) for job_type in (JobType.GENERATE_CHAPTER, JobType.UPDATE_STATES)]

    jobs = await store.get_jobs_for_target(target)

    assert [job.id for job in jobs] == ids
    assert [job.type for job in jobs] == ["generate_chapter", "update_states"]
