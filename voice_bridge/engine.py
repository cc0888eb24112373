from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum

from voice_bridge.lesson_repo import LessonRepo
from voice_bridge.lesson_store import Chunk, ChunkResponse, EducationalSession
from voice_bridge.personalization import Personalizer

logger = logging.getLogger(__name__)

NEW_CONTENT_MIN_CHARS = 300
SECTION_SEPARATOR = "---"
_PARAGRAPH_THEN_CAPITAL = re.compile(r"\n\n[A-Z]")

ACK_PERSONALIZED = (
    "Thank you for sharing that. Your response helps me understand your situation better."
)
ACK_PLAIN = "Thank you for your response."


class BridgeError(Exception):
    pass


class SessionNotFound(BridgeError):
    pass


class DeliveryKind(str, Enum):
    chunk = "chunk"
    qa = "qa"

    @property
    def interruptible(self) -> bool:
        return self is DeliveryKind.qa


@dataclass
class SessionState:
    session: EducationalSession
    chunks: list[Chunk]
    current_chunk: Chunk | None
    responses: list[ChunkResponse]

    def to_dict(self) -> dict:
        return {
            "session": self.session.to_dict(),
            "totalChunks": len(self.chunks),
            "currentChunk": self.current_chunk.to_dict() if self.current_chunk else None,
            "responses": [r.to_dict() for r in self.responses],
        }


def looks_like_new_content(text: str) -> bool:
    return (
        SECTION_SEPARATOR in text
        or bool(_PARAGRAPH_THEN_CAPITAL.search(text))
        or len(text) > NEW_CONTENT_MIN_CHARS
    )


class EducationalSessionEngine:
    """
    Tracks where a learner is in a chunked lesson.

    Chunk content comes from the lesson repository; the engine only owns
    position, completion and the response log. `advance_to_next_chunk` is not
    idempotent, so callers advance exactly once per user turn.
    """

    def __init__(
        self,
        repo: LessonRepo,
        *,
        personalizer: Personalizer | None = None,
        personalization_default: bool = False,
    ) -> None:
        self.repo = repo
        self.personalizer = personalizer
        self.personalization_default = personalization_default

    def start_session(
        self, session_id: str, lesson_id: str, personalization_enabled: bool | None = None
    ) -> EducationalSession:
        enabled = self.personalization_default if personalization_enabled is None else personalization_enabled
        session = self.repo.create_session(session_id, lesson_id, enabled)
        logger.info("Educational session %s on lesson %s at index %d", session.id, lesson_id, session.current_chunk_index)
        return session

    def get_session(self, session_id: str) -> EducationalSession | None:
        return self.repo.get_session(session_id)

    def _require(self, session_id: str) -> EducationalSession:
        session = self.repo.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def get_chunks(self, session: EducationalSession) -> list[Chunk]:
        return self.repo.get_chunks_for_lesson(session.lesson_id)

    def lesson_has_chunks(self, lesson_id: str) -> bool:
        return bool(self.repo.get_chunks_for_lesson(lesson_id))

    def get_current_chunk(self, session_id: str) -> Chunk | None:
        session = self.repo.get_session(session_id)
        if session is None or session.completed:
            return None
        chunks = self.get_chunks(session)
        if session.current_chunk_index >= len(chunks):
            return None
        return chunks[session.current_chunk_index]

    def advance_to_next_chunk(self, session_id: str) -> bool:
        session = self._require(session_id)
        if session.completed:
            return False

        total = len(self.get_chunks(session))
        next_index = session.current_chunk_index + 1
        if next_index >= total:
            self.repo.update_progress(session_id, max(total, session.current_chunk_index), True)
            logger.info("Educational session %s completed after %d chunks", session_id, total)
            return False

        self.repo.update_progress(session_id, next_index, False)
        return True

    def save_chunk_response(
        self, session_id: str, chunk_id: str, user_text: str, ack_text: str
    ) -> ChunkResponse:
        self._require(session_id)
        return self.repo.save_response(
            ChunkResponse(
                session_id=session_id,
                chunk_id=chunk_id,
                user_response=user_text,
                acknowledgment=ack_text,
            )
        )

    def get_session_responses(self, session_id: str) -> list[ChunkResponse]:
        return self.repo.list_responses(session_id)

    async def process_chunk_content(
        self, session_id: str, raw_content: str, personalization_enabled: bool
    ) -> str:
        if not personalization_enabled or self.personalizer is None:
            return raw_content
        try:
            responses = await asyncio.to_thread(self.repo.list_responses, session_id)
            return await self.personalizer.personalize(session_id, raw_content, responses)
        except Exception:
            logger.exception("Personalization failed for session %s; using raw content", session_id)
            return raw_content

    @staticmethod
    def acknowledgment(session: EducationalSession) -> str:
        return ACK_PERSONALIZED if session.personalization_enabled else ACK_PLAIN

    def has_response_for_current_chunk(self, session_id: str) -> bool:
        chunk = self.get_current_chunk(session_id)
        if chunk is None:
            return True
        return any(r.chunk_id == chunk.id for r in self.repo.list_responses(session_id))

    def classify_delivery(self, session_id: str, outgoing_text: str) -> DeliveryKind:
        if not self.has_response_for_current_chunk(session_id):
            return DeliveryKind.chunk
        if looks_like_new_content(outgoing_text):
            return DeliveryKind.chunk
        return DeliveryKind.qa

    def state(self, session_id: str) -> SessionState | None:
        session = self.repo.get_session(session_id)
        if session is None:
            return None
        chunks = self.get_chunks(session)
        current = None
        if not session.completed and session.current_chunk_index < len(chunks):
            current = chunks[session.current_chunk_index]
        return SessionState(
            session=session,
            chunks=chunks,
            current_chunk=current,
            responses=self.repo.list_responses(session_id),
        )
