from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Protocol

from voice_bridge.gemini_client import GeminiClient
from voice_bridge.lesson_store import ChunkResponse
from voice_bridge.prompts import LEAD_IN_SYSTEM

_LABEL_RE = re.compile(r"^(transition:|here'?s a transition:)\s*", re.IGNORECASE)


class Personalizer(Protocol):
    async def personalize(
        self, session_id: str, content: str, responses: Sequence[ChunkResponse]
    ) -> str: ...


class LeadInPersonalizer:
    """Prepends a short conversation-aware transition to the upcoming chunk."""

    def __init__(self, client: GeminiClient | None = None) -> None:
        self._client = client

    def _get_client(self) -> GeminiClient:
        if self._client is None:
            self._client = GeminiClient()
        return self._client

    async def personalize(
        self, session_id: str, content: str, responses: Sequence[ChunkResponse]
    ) -> str:
        if not responses:
            return content

        recent = responses[-1]
        user = (
            f'LEARNER_SAID: "{recent.user_response}"\n'
            f'YOU_REPLIED: "{recent.acknowledgment}"\n\n'
            f'NEXT_SECTION_PREVIEW: "{content[:200]}..."'
        )
        lead_in = await self._get_client().generate_text(
            system=LEAD_IN_SYSTEM,
            turns=[{"role": "user", "content": user}],
            temperature=0.7,
        )
        lead_in = _LABEL_RE.sub("", lead_in.strip())
        if not lead_in:
            return content
        return f"{lead_in}\n\n{content}"
