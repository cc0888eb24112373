from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WebhookMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = "user"
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, v: Any) -> str:
        # OpenAI-style content may arrive as a list of {"type": "text", "text": ...} parts.
        if v is None:
            return ""
        if isinstance(v, list):
            parts = []
            for p in v:
                if isinstance(p, dict):
                    parts.append(str(p.get("text") or ""))
                elif isinstance(p, str):
                    parts.append(p)
            return "".join(parts)
        return str(v)


class WebhookRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    messages: list[WebhookMessage] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] | None = None
    conversation_id: str | None = None
    model: str | None = None
    stream: bool = True

    @field_validator("variables", mode="before")
    @classmethod
    def _coerce_variables(cls, v: Any) -> dict[str, Any]:
        return v if isinstance(v, dict) else {}

    def last_user_text(self) -> str | None:
        if not self.messages:
            return None
        last = self.messages[-1]
        if last.role != "user":
            return None
        text = last.content.strip()
        return text or None

    def turns(self) -> list[dict[str, str]]:
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages
            if m.role in {"user", "assistant"} and m.content.strip()
        ]


class RegisterSessionRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)
    conversationId: str | None = None
    timestamp: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RegisterSessionResponse(BaseModel):
    success: bool = True
    sessionId: str
    conversationId: str | None = None
    message: str = "Session registered successfully"


class CreateEducationalSessionRequest(BaseModel):
    sessionId: str = Field(..., min_length=1, description="Usually the platform conversation id")
    lessonId: str = Field(..., min_length=1)
    personalizationEnabled: bool | None = None


class ElevenLabsSignedUrlRequest(BaseModel):
    agentId: str = Field(..., min_length=1)


class ElevenLabsSignedUrlResponse(BaseModel):
    signedUrl: str


class SeedChunk(BaseModel):
    id: str = Field(..., min_length=1)
    orderIndex: int = Field(..., ge=0)
    title: str = ""
    content: str = ""
    question: str = ""


class SeedLesson(BaseModel):
    id: str = Field(..., min_length=1)
    chunks: list[SeedChunk] = Field(default_factory=list)


class LessonSeedFile(BaseModel):
    lessons: list[SeedLesson] = Field(default_factory=list)
