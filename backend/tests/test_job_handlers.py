import json
from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy import update

from bookforge.models import Chapter, ChapterStatus, Project
from bookforge.models.completion import AnalyticsStatus
from bookforge.models.job import JobType
from bookforge.services.completion_detection import CompletionDetector
from bookforge.services.job_handlers import ChapterJobHandlers, merge_character_states
from bookforge.services.job_store import JobStore
from bookforge.shared_kernel.exceptions import (
    EntityNotFoundError,
    FatalPreconditionError,
    RateLimitError,
    RetryableHandlerError,
)

from conftest import FakeLLMClient, make_text


def job_for(target_id, job_type=JobType.GENERATE_CHAPTER):
    return SimpleNamespace(id=1, type=job_type.value, target_id=target_id, attempts=0)


async def load_chapter(session_factory, chapter_id):
    async with session_factory() as session:
        return await session.get(Chapter, chapter_id)


@pytest.mark.asyncio
async def test_generate_chapter_stores_content(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(0, 0), written=False)
    llm = FakeLLMClient([make_text(42)])
    handlers = ChapterJobHandlers(session_factory, llm, settings=settings)

    await handlers.generate_chapter(job_for(seeded.chapters[0].id))

    chapter = await load_chapter(session_factory, seeded.chapters[0].id)
    assert chapter.status == ChapterStatus.COMPLETED
    assert chapter.word_count == 42
    call = llm.calls[0]
    assert call["max_tokens"] == settings.CHAPTER_MAX_TOKENS
    prompt = call["messages"][-1]["content"]
    assert "Chapter 1: Chapter 1" in prompt
    assert "1. Scene for chapter 1" in prompt
    assert "Coastal empire" in prompt
    async with session_factory() as session:
        assert await CompletionDetector(session).get_completion_record(seeded.book.id) is None


@pytest.mark.asyncio
async def test_last_chapter_completes_the_book(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(0, 0), written=False)
    handlers = ChapterJobHandlers(session_factory, FakeLLMClient([make_text(10), make_text(12)]), settings=settings)

    for chapter in seeded.chapters:
        await handlers.generate_chapter(job_for(chapter.id))

    async with session_factory() as session:
        record = await CompletionDetector(session).get_completion_record(seeded.book.id)
        assert record.total_word_count == 22
        assert record.analytics_status == AnalyticsStatus.PROCESSING
        jobs = await JobStore(session).get_jobs_for_target(seeded.book.id)
        assert [job.type for job in jobs] == ["analyze_book"]


@pytest.mark.asyncio
async def test_generate_chapter_includes_recent_summaries(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(0, 0), written=False)
    async with session_factory() as session:
        await session.execute(
            update(Chapter).where(Chapter.id == seeded.chapters[0].id).values(summary="Mara leaves the harbour.")
        )
        await session.commit()
    llm = FakeLLMClient([make_text(5)])

    await ChapterJobHandlers(session_factory, llm, settings=settings).generate_chapter(job_for(seeded.chapters[1].id))

    assert "Previously:\nChapter 1: Mara leaves the harbour." in llm.calls[0]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_empty_chapter_output_is_retryable(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(0,), written=False)
    handlers = ChapterJobHandlers(session_factory, FakeLLMClient(["   "]), settings=settings)

    with pytest.raises(RetryableHandlerError):
        await handlers.generate_chapter(job_for(seeded.chapters[0].id))

    chapter = await load_chapter(session_factory, seeded.chapters[0].id)
    assert chapter.status == ChapterStatus.PENDING
    assert chapter.content is None


@pytest.mark.asyncio
async def test_provider_error_resets_chapter_and_propagates(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(0,), written=False)
    handlers = ChapterJobHandlers(session_factory, FakeLLMClient([RateLimitError("slow down")]), settings=settings)

    with pytest.raises(RateLimitError):
        await handlers.generate_chapter(job_for(seeded.chapters[0].id))

    assert (await load_chapter(session_factory, seeded.chapters[0].id)).status == ChapterStatus.PENDING


@pytest.mark.asyncio
async def test_missing_chapter_is_fatal(session_factory, settings):
    handlers = ChapterJobHandlers(session_factory, FakeLLMClient(), settings=settings)

    with pytest.raises(EntityNotFoundError):
        await handlers.generate_summary(job_for(uuid4(), JobType.GENERATE_SUMMARY))


@pytest.mark.asyncio
async def test_generate_summary(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(300,))
    llm = FakeLLMClient(["  Mara crosses the salt flats.  "])

    await ChapterJobHandlers(session_factory, llm, settings=settings).generate_summary(
        job_for(seeded.chapters[0].id, JobType.GENERATE_SUMMARY)
    )

    assert (await load_chapter(session_factory, seeded.chapters[0].id)).summary == "Mara crosses the salt flats."
    assert f"at most {settings.SUMMARY_MAX_WORDS} words" in llm.calls[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_generate_summary_requires_content(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(0,), written=False)
    llm = FakeLLMClient()

    with pytest.raises(FatalPreconditionError):
        await ChapterJobHandlers(session_factory, llm, settings=settings).generate_summary(
            job_for(seeded.chapters[0].id, JobType.GENERATE_SUMMARY)
        )
    assert llm.calls == []


@pytest.mark.asyncio
async def test_update_states_merges_characters(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(200,))
    reply = json.dumps({"characters": [{"name": "Mara", "status": "wounded", "location": "Saltgate", "notes": ""}]})
    llm = FakeLLMClient([f"Here you go:\n{reply}"])

    await ChapterJobHandlers(session_factory, llm, settings=settings).update_states(
        job_for(seeded.chapters[0].id, JobType.UPDATE_STATES)
    )

    async with session_factory() as session:
        project = await session.get(Project, seeded.project.id)
        assert project.story_bible["world"] == "Coastal empire"
        assert project.story_bible["character_states"]["Mara"] == {
            "status": "wounded",
            "location": "Saltgate",
            "last_seen_chapter": 1,
        }
    assert llm.calls[0]["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_update_states_skips_malformed_reply(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(200,))
    llm = FakeLLMClient(["no json here"])

    await ChapterJobHandlers(session_factory, llm, settings=settings).update_states(
        job_for(seeded.chapters[0].id, JobType.UPDATE_STATES)
    )

    async with session_factory() as session:
        project = await session.get(Project, seeded.project.id)
        assert project.story_bible == {"world": "Coastal empire"}


@pytest.mark.asyncio
async def test_analyze_book_caches_analytics(session_factory, settings, seed_book):
    seeded = await seed_book()
    async with session_factory() as session:
        detector = CompletionDetector(session)
        await detector.mark_book_complete(seeded.book.id)
        await detector.trigger_auto_analysis(seeded.book.id)

    await ChapterJobHandlers(session_factory, FakeLLMClient(), settings=settings).analyze_book(
        job_for(seeded.book.id, JobType.ANALYZE_BOOK)
    )

    async with session_factory() as session:
        record = await CompletionDetector(session).get_completion_record(seeded.book.id)
        assert record.analytics_status == AnalyticsStatus.COMPLETED
        analytics = record.cached_analytics
        assert analytics.chapter_count == 3
        assert analytics.total_word_count == 1800
        assert analytics.average_chapter_words == 600.0
        assert (analytics.shortest_chapter_number, analytics.shortest_chapter_words) == (1, 500)
        assert (analytics.longest_chapter_number, analytics.longest_chapter_words) == (3, 700)


@pytest.mark.asyncio
async def test_analyze_book_without_chapters_is_fatal(session_factory, settings, seed_book):
    seeded = await seed_book(word_counts=(0,), written=False)

    with pytest.raises(FatalPreconditionError):
        await ChapterJobHandlers(session_factory, FakeLLMClient(), settings=settings).analyze_book(
            job_for(seeded.book.id, JobType.ANALYZE_BOOK)
        )


def test_handlers_cover_chapter_and_analysis_jobs(settings):
    handlers = ChapterJobHandlers(None, FakeLLMClient(), settings=settings).handlers()

    assert set(handlers) == {
        JobType.GENERATE_CHAPTER,
        JobType.GENERATE_SUMMARY,
        JobType.UPDATE_STATES,
        JobType.ANALYZE_BOOK,
    }


def test_merge_character_states_ignores_unnamed_entries():
    bible = {"character_states": {"Ilya": {"status": "alive", "last_seen_chapter": 1}}}

    merged = merge_character_states(bible, [{"name": "Ilya", "location": "Dock"}, {"status": "lost"}, "junk"], 4)

    assert merged["character_states"] == {"Ilya": {"status": "alive", "location": "Dock", "last_seen_chapter": 4}}
