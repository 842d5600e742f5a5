"""Handlers executed by the job worker for each job type."""
from __future__ import annotations

from datetime import datetime
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookforge.core.config import Settings
from bookforge.infrastructure.event_bus import EventBus
from bookforge.models.chapter import Chapter, ChapterStatus
from bookforge.models.job import Job, JobType
from bookforge.models.project import Book, Project
from bookforge.models.types import utc_now
from bookforge.schemas.completion import ManuscriptAnalytics
from bookforge.services.chapter_scope import chapters_in_version, current_chapters
from bookforge.services.completion_detection import CompletionDetector
from bookforge.services.condenser import extract_json_object
from bookforge.services.llm_client import LLMClient
from bookforge.shared_kernel.exceptions import (
    EntityNotFoundError,
    FatalPreconditionError,
    MalformedResponseError,
    RetryableHandlerError,
)
from bookforge.shared_kernel.value_objects import WordCount

logger = logging.getLogger(__name__)

RECENT_SUMMARIES = 3


def _scene_card_lines(scene_cards: Optional[List[Any]]) -> List[str]:
    lines = []
    for index, card in enumerate(scene_cards or [], start=1):
        if isinstance(card, dict):
            text = card.get("summary") or card.get("description") or json.dumps(card, ensure_ascii=False)
        else:
            text = str(card)
        lines.append(f"{index}. {text}")
    return lines


def merge_character_states(story_bible: Dict[str, Any], characters: List[Any], chapter_number: int) -> Dict[str, Any]:
    """Merge character updates into ``story_bible['character_states']`` keyed by name."""
    states = dict(story_bible.get("character_states") or {})
    for item in characters:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        name = str(item["name"]).strip()
        current = dict(states.get(name) or {})
        current.update({key: value for key, value in item.items() if key != "name" and value not in (None, "")})
        current["last_seen_chapter"] = chapter_number
        states[name] = current
    story_bible["character_states"] = states
    return story_bible


class ChapterJobHandlers:
    """Chapter generation and book analysis handlers.

    Each handler opens its own session; the worker's session only tracks the
    job row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        llm_client: LLMClient,
        event_bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        if settings is None:
            from bookforge.core.config import settings as default_settings

            settings = default_settings
        self.session_factory = session_factory
        self.llm_client = llm_client
        self.event_bus = event_bus
        self.settings = settings

    def handlers(self) -> Dict[JobType, Any]:
        return {
            JobType.GENERATE_CHAPTER: self.generate_chapter,
            JobType.GENERATE_SUMMARY: self.generate_summary,
            JobType.UPDATE_STATES: self.update_states,
            JobType.ANALYZE_BOOK: self.analyze_book,
        }

    async def generate_chapter(self, job: Job) -> None:
        async with self.session_factory() as session:
            chapter = await self._get_chapter(session, job.target_id)
            book = await session.get(Book, chapter.book_id)
            project = await session.get(Project, book.project_id) if book else None
            messages = await self._chapter_prompt(session, chapter, book, project)

            await self._set_chapter(session, chapter.id, status=ChapterStatus.WRITING)
            try:
                draft = await self.llm_client.chat(
                    messages=messages,
                    temperature=0.8,
                    max_tokens=self.settings.CHAPTER_MAX_TOKENS,
                )
            except Exception:
                await self._set_chapter(session, chapter.id, status=ChapterStatus.PENDING)
                raise
            content = (draft or "").strip()
            if not content:
                await self._set_chapter(session, chapter.id, status=ChapterStatus.PENDING)
                raise RetryableHandlerError("Model returned an empty chapter", details={"chapter_id": str(chapter.id)})

            word_count = WordCount.of(content).value
            await self._set_chapter(
                session,
                chapter.id,
                content=content,
                word_count=word_count,
                status=ChapterStatus.COMPLETED,
            )
            logger.info("Chapter %s generated: %d words", chapter.id, word_count)
            await CompletionDetector(session, self.event_bus).check_and_trigger_completion(chapter.id)

    async def generate_summary(self, job: Job) -> None:
        async with self.session_factory() as session:
            chapter = await self._get_chapter(session, job.target_id)
            if not (chapter.content or "").strip():
                raise FatalPreconditionError(
                    "Chapter has no content to summarise",
                    details={"chapter_id": str(chapter.id)},
                )
            max_words = self.settings.SUMMARY_MAX_WORDS
            summary = await self.llm_client.chat(
                messages=[
                    {
                        "role": "system",
                        "content": (
                            f"Summarise the chapter in at most {max_words} words. Keep the plot events, "
                            "who did what, and any open threads. Plain prose only."
                        ),
                    },
                    {"role": "user", "content": chapter.content},
                ],
                temperature=0.3,
                max_tokens=max_words * 2,
            )
            summary = (summary or "").strip()
            if not summary:
                raise RetryableHandlerError("Model returned an empty summary", details={"chapter_id": str(chapter.id)})
            await self._set_chapter(session, chapter.id, summary=summary)
            logger.info("Chapter %s summarised", chapter.id)

    async def update_states(self, job: Job) -> None:
        async with self.session_factory() as session:
            chapter = await self._get_chapter(session, job.target_id)
            if not (chapter.content or "").strip():
                raise FatalPreconditionError(
                    "Chapter has no content to extract states from",
                    details={"chapter_id": str(chapter.id)},
                )
            book = await session.get(Book, chapter.book_id)
            project = await session.get(Project, book.project_id)
            reply = await self.llm_client.chat(
                messages=[
                    {
                        "role": "system",
                        "content": (
                            "Extract the state of every character at the end of the chapter. Reply with "
                            'strict JSON: {"characters": [{"name": "", "status": "", "location": "", '
                            '"notes": ""}]}'
                        ),
                    },
                    {"role": "user", "content": chapter.content},
                ],
                temperature=0.2,
                max_tokens=self.settings.CHAT_MAX_TOKENS,
                response_format={"type": "json_object"},
            )
            try:
                payload = extract_json_object(reply)
            except MalformedResponseError as exc:
                logger.warning("Skipping state update for chapter %s: %s", chapter.id, exc)
                return
            characters = payload.get("characters")
            if not isinstance(characters, list):
                logger.warning("Skipping state update for chapter %s: no character list", chapter.id)
                return

            project.story_bible = merge_character_states(
                dict(project.story_bible or {}), characters, chapter.chapter_number
            )
            await session.commit()
            logger.info("Updated %d character state(s) from chapter %s", len(characters), chapter.id)

    async def analyze_book(self, job: Job) -> None:
        async with self.session_factory() as session:
            chapters = [c for c in await current_chapters(session, job.target_id) if (c.content or "").strip()]
            if not chapters:
                raise FatalPreconditionError(
                    "Book has no written chapters to analyse",
                    details={"book_id": str(job.target_id)},
                )
            analytics = self.compute_analytics(chapters, utc_now())
            await CompletionDetector(session, self.event_bus).cache_analytics_results(job.target_id, analytics)
            logger.info("Cached analytics for book %s", job.target_id)

    @staticmethod
    def compute_analytics(chapters: List[Chapter], computed_at: datetime) -> ManuscriptAnalytics:
        total = sum(chapter.word_count for chapter in chapters)
        shortest = min(chapters, key=lambda c: (c.word_count, c.chapter_number))
        longest = max(chapters, key=lambda c: (c.word_count, -c.chapter_number))
        return ManuscriptAnalytics(
            chapter_count=len(chapters),
            total_word_count=total,
            average_chapter_words=round(total / len(chapters), 1),
            shortest_chapter_number=shortest.chapter_number,
            shortest_chapter_words=shortest.word_count,
            longest_chapter_number=longest.chapter_number,
            longest_chapter_words=longest.word_count,
            computed_at=computed_at,
        )

    async def _chapter_prompt(
        self,
        session: AsyncSession,
        chapter: Chapter,
        book: Optional[Book],
        project: Optional[Project],
    ) -> List[Dict[str, str]]:
        earlier = await session.scalars(
            chapters_in_version(chapter.book_id, chapter.version_id).where(
                Chapter.chapter_number < chapter.chapter_number,
                Chapter.summary.is_not(None),
            )
        )
        summaries = [f"Chapter {c.chapter_number}: {c.summary}" for c in earlier.all()][-RECENT_SUMMARIES:]
        bible = (project.story_bible if project else None) or {}

        parts = []
        if project is not None:
            parts.append(f"Novel: {project.title}" + (f" ({project.genre})" if project.genre else ""))
        if book is not None:
            parts.append(f"Book {book.book_number}: {book.title}")
        heading = f"Chapter {chapter.chapter_number}" + (f": {chapter.title}" if chapter.title else "")
        parts.append(heading)
        scenes = _scene_card_lines(chapter.scene_cards)
        if scenes:
            parts.append("Scenes:\n" + "\n".join(scenes))
        if summaries:
            parts.append("Previously:\n" + "\n".join(summaries))
        if bible:
            parts.append("Story bible:\n" + json.dumps(bible, ensure_ascii=False, default=str))
        parts.append("Write the full chapter. Return only the chapter prose.")
        return [
            {"role": "system", "content": "You are a novelist writing one chapter of a serialised book."},
            {"role": "user", "content": "\n\n".join(parts)},
        ]

    @staticmethod
    async def _get_chapter(session: AsyncSession, chapter_id) -> Chapter:
        chapter = await session.get(Chapter, chapter_id)
        if chapter is None:
            raise EntityNotFoundError(f"Chapter {chapter_id} not found", details={"chapter_id": str(chapter_id)})
        return chapter

    @staticmethod
    async def _set_chapter(session: AsyncSession, chapter_id, **values) -> None:
        values.setdefault("updated_at", utc_now())
        await session.execute(
            update(Chapter)
            .where(Chapter.id == chapter_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
