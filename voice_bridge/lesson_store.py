from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class EducationalSession:
    id: str  # the platform's conversation id
    lesson_id: str
    current_chunk_index: int = 0
    completed: bool = False
    personalization_enabled: bool = False
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lessonId": self.lesson_id,
            "currentChunkIndex": self.current_chunk_index,
            "completed": self.completed,
            "personalizationEnabled": self.personalization_enabled,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class Chunk:
    id: str
    lesson_id: str
    order_index: int
    title: str
    content: str
    question: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lessonId": self.lesson_id,
            "orderIndex": self.order_index,
            "title": self.title,
            "content": self.content,
            "question": self.question,
        }


@dataclass(frozen=True)
class ChunkResponse:
    session_id: str
    chunk_id: str
    user_response: str
    acknowledgment: str
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "chunkId": self.chunk_id,
            "userResponse": self.user_response,
            "acknowledgment": self.acknowledgment,
            "timestamp": self.timestamp,
        }
