"""Pytest configuration and shared fixtures.

Collaborators that would reach the network (Gemini, the report writer) are
replaced with small fakes so the bridge can be driven end to end in-process.
"""

from collections.abc import Sequence
from typing import Any

import pytest

from voice_bridge.engine import EducationalSessionEngine
from voice_bridge.generator import CitedSource, GeneratedReply
from voice_bridge.identity import SessionIdentityResolver
from voice_bridge.lesson_repo import InMemoryLessonRepo
from voice_bridge.lesson_store import Chunk
from voice_bridge.orchestrator import ConversationOrchestrator
from voice_bridge.session_store import InMemoryLatestSessionStore, VoiceSessionRegistry

LESSON_ID = "lesson-basics"

LONG_CONTENT = (
    "Compound growth is the engine behind long-term saving. When returns are reinvested, "
    "each year's gains start earning gains of their own, and over decades that snowball "
    "dwarfs the original contributions. The earlier you start, the less you need to put in "
    "each month to reach the same goal, which is why small, automatic contributions made "
    "consistently tend to beat large, irregular ones."
)


# =============================================================================
# Fakes
# =============================================================================


class StubGenerator:
    def __init__(self, text: str = "Here is a short answer.", sources: list[CitedSource] | None = None):
        self.text = text
        self.sources = sources or []
        self.calls: list[tuple[list[dict[str, str]], dict[str, Any]]] = []
        self.error: Exception | None = None

    async def generate(self, turns: Sequence[dict[str, str]], context: dict[str, Any]) -> GeneratedReply:
        self.calls.append((list(turns), dict(context)))
        if self.error is not None:
            raise self.error
        return GeneratedReply(text=self.text, cited_sources=list(self.sources))


class StubReports:
    def __init__(self, report_id: str = "report_0123456789abcdef"):
        self.report_id = report_id
        self.calls: list[str] = []
        self.error: Exception | None = None

    async def generate(self, session_id: str) -> str:
        self.calls.append(session_id)
        if self.error is not None:
            raise self.error
        return self.report_id


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# Fixtures
# =============================================================================


def seed_lesson(repo: InMemoryLessonRepo, lesson_id: str = LESSON_ID, count: int = 3) -> list[Chunk]:
    chunks = []
    for i in range(count):
        content = LONG_CONTENT if i == 1 else f"Section {i + 1} content."
        chunks.append(
            repo.upsert_chunk(
                Chunk(
                    id=f"chunk-{i + 1}",
                    lesson_id=lesson_id,
                    order_index=i,
                    title=f"Section {i + 1}",
                    content=content,
                    question=f"What do you think about section {i + 1}?",
                )
            )
        )
    return chunks


@pytest.fixture
def repo() -> InMemoryLessonRepo:
    repo = InMemoryLessonRepo()
    seed_lesson(repo)
    return repo


@pytest.fixture
def engine(repo) -> EducationalSessionEngine:
    return EducationalSessionEngine(repo)


@pytest.fixture
def latest() -> InMemoryLatestSessionStore:
    return InMemoryLatestSessionStore()


@pytest.fixture
def registry(latest) -> VoiceSessionRegistry:
    return VoiceSessionRegistry(latest)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def resolver(latest, sleep) -> SessionIdentityResolver:
    return SessionIdentityResolver(latest, max_retries=3, backoff_base=0.1, sleep=sleep)


@pytest.fixture
def generator() -> StubGenerator:
    return StubGenerator()


@pytest.fixture
def reports() -> StubReports:
    return StubReports()


@pytest.fixture
def orchestrator(resolver, registry, engine, generator, reports) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        resolver,
        registry,
        engine,
        generator,
        reports,
        generation_timeout=1.0,
        report_timeout=1.0,
    )
