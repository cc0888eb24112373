from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from voice_bridge.gemini_client import GeminiClient
from voice_bridge.prompts import ADVISOR_SYSTEM


@dataclass(frozen=True)
class CitedSource:
    id: str
    title: str
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "url": self.url}


@dataclass
class GeneratedReply:
    text: str
    cited_sources: list[CitedSource] = field(default_factory=list)


class ResponseGenerator(Protocol):
    async def generate(
        self, turns: Sequence[dict[str, str]], context: dict[str, Any]
    ) -> GeneratedReply: ...


def _context_block(context: dict[str, Any]) -> str:
    lines = []
    lesson = context.get("lesson") or {}
    if lesson.get("title") or lesson.get("id"):
        lines.append(f"CURRENT_LESSON: {lesson.get('title') or lesson.get('id')}")
    if lesson.get("currentChunkTitle"):
        lines.append(f"CURRENT_SECTION: {lesson['currentChunkTitle']}")
    if context.get("current_topic"):
        lines.append(f"CURRENT_TOPIC: {context['current_topic']}")
    return "\n".join(lines)


class GeminiResponseGenerator:
    """Open-ended replies via Gemini. The client is built on first use so the app boots without credentials."""

    def __init__(self, client_factory: Callable[[], GeminiClient] = GeminiClient) -> None:
        self._client_factory = client_factory
        self._client: GeminiClient | None = None

    def _get_client(self) -> GeminiClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def generate(
        self, turns: Sequence[dict[str, str]], context: dict[str, Any]
    ) -> GeneratedReply:
        system = ADVISOR_SYSTEM
        extra = _context_block(context)
        if extra:
            system = f"{system}\n{extra}\n"
        text = await self._get_client().generate_text(system=system, turns=turns)
        return GeneratedReply(text=text)
