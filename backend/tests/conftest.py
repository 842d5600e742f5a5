import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./bookforge-test.db")
os.environ.setdefault("LLM_API_KEY", "test-key")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

from bookforge.core.config import Settings  # noqa: E402
from bookforge.db import Base, build_engine, build_session_factory  # noqa: E402
from bookforge.models import Book, Chapter, ChapterStatus, Project  # noqa: E402
from bookforge.schemas.revision import CondensationResult, CutExplanation  # noqa: E402


class FakeClock:
    """Deterministic naive-UTC clock."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeLLMClient:
    """Returns queued replies in order; exceptions in the queue are raised."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    async def chat(self, messages, **kwargs):
        self.calls.append({"messages": messages, **kwargs})
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakeCondenser:
    """Condenses to exactly the target word count unless told to fail."""

    def __init__(self, errors=None, overrides=None):
        self.errors = dict(errors or {})
        self.overrides = dict(overrides or {})
        self.calls = []

    async def condense(self, content, target_word_count, reduction_percent, issues=None, chapter_number=0,
                       chapter_title=None):
        self.calls.append(chapter_number)
        error = self.errors.pop(chapter_number, None)
        if error is not None:
            raise error
        words = self.overrides.get(chapter_number, target_word_count)
        original = len(content.split())
        return CondensationResult(
            condensed_content=make_text(words, prefix=f"c{chapter_number}"),
            cuts_explanation=[
                CutExplanation(what_was_cut="Backstory", why="Not plot-critical", words_removed=original - words)
            ],
            preserved_elements=["Main conflict"],
            word_count=words,
        )


def make_text(words, prefix="word"):
    return " ".join(f"{prefix}{index}" for index in range(words))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'bookforge.db'}")


@pytest_asyncio.fixture
async def engine(settings):
    engine = build_engine(settings=settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed_book(session_factory):
    """Create a project and book with one chapter per word count."""

    async def _seed(word_counts=(500, 600, 700), written=True, status=None):
        async with session_factory() as session:
            project = Project(
                title="The Salt Road",
                genre="fantasy",
                plot_structure={"acts": ["setup", "confrontation", "resolution"]},
                story_bible={"world": "Coastal empire"},
            )
            session.add(project)
            await session.flush()
            book = Book(project_id=project.id, title="Book One", book_number=1, outline={"beats": 3})
            session.add(book)
            await session.flush()
            chapters = []
            for number, words in enumerate(word_counts, start=1):
                chapter = Chapter(
                    book_id=book.id,
                    chapter_number=number,
                    title=f"Chapter {number}",
                    scene_cards=[{"summary": f"Scene for chapter {number}"}],
                    content=make_text(words) if written else None,
                    word_count=words if written else 0,
                    status=status or (ChapterStatus.COMPLETED if written else ChapterStatus.PENDING),
                )
                session.add(chapter)
                chapters.append(chapter)
            await session.commit()
            return SimpleNamespace(project=project, book=book, chapters=chapters)

    return _seed
