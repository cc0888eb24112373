from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from cachetools import TTLCache

logger = logging.getLogger(__name__)

Speaker = Literal["user", "agent"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class Identity:
    conversation_id: str | None = None
    session_id: str | None = None
    source: str = "unknown"


@dataclass
class VoiceSession:
    session_id: str
    conversation_id: str | None = None
    registered_at: str = field(default_factory=_now_iso)
    last_activity: str = field(default_factory=_now_iso)
    messages: list[dict[str, str]] = field(default_factory=list)  # [{"timestamp","message","speaker"}]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def educational_session_id(self) -> str | None:
        value = self.metadata.get("educational_session_id")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def to_identity(self, source: str) -> Identity:
        return Identity(conversation_id=self.conversation_id, session_id=self.session_id, source=source)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class LatestSessionStore(Protocol):
    """
    The single "most recently active session" pointer.

    Last writer wins: two conversations registering close together will see
    whichever wrote last.
    """

    async def read_latest(self) -> Identity | None: ...

    async def write_latest(self, identity: Identity) -> None: ...


class InMemoryLatestSessionStore:
    def __init__(self, initial: Identity | None = None) -> None:
        self._latest = initial

    async def read_latest(self) -> Identity | None:
        return self._latest

    async def write_latest(self, identity: Identity) -> None:
        self._latest = identity


class FileLatestSessionStore:
    """Pointer persisted as `<dir>/registry_latest.json` so it survives worker restarts."""

    FILENAME = "registry_latest.json"

    def __init__(self, directory: str) -> None:
        self.directory = directory
        self.path = os.path.join(directory, self.FILENAME)

    def ensure_dir(self) -> None:
        os.makedirs(self.directory, exist_ok=True)

    def _read(self) -> Identity | None:
        if not os.path.exists(self.path):
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            return None
        session_id = data.get("sessionId") or None
        conversation_id = data.get("conversationId") or None
        if not session_id and not conversation_id:
            return None
        return Identity(conversation_id=conversation_id, session_id=session_id, source="latest")

    def _write(self, identity: Identity) -> None:
        self.ensure_dir()
        payload = {
            "sessionId": identity.session_id,
            "conversationId": identity.conversation_id,
            "writtenAt": _now_iso(),
        }
        tmp = f"{self.path}.{uuid.uuid4().hex[:8]}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(tmp, self.path)

    async def read_latest(self) -> Identity | None:
        return await asyncio.to_thread(self._read)

    async def write_latest(self, identity: Identity) -> None:
        await asyncio.to_thread(self._write, identity)


class VoiceSessionRegistry:
    def __init__(
        self,
        latest: LatestSessionStore,
        *,
        maxsize: int = 10_000,
        ttl_seconds: int = 6 * 60 * 60,
    ) -> None:
        self.latest = latest
        self._sessions: TTLCache[str, VoiceSession] = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        self._by_conversation: TTLCache[str, str] = TTLCache(maxsize=maxsize, ttl=ttl_seconds)

    async def register(self, session: VoiceSession) -> VoiceSession:
        self._sessions[session.session_id] = session
        if session.conversation_id:
            self._by_conversation[session.conversation_id] = session.session_id
        await self.latest.write_latest(session.to_identity(source="latest"))
        logger.info(
            "Registered voice session %s (conversation=%s)", session.session_id, session.conversation_id
        )
        return session

    def get(self, session_id: str) -> VoiceSession | None:
        return self._sessions.get(session_id)

    def get_by_conversation(self, conversation_id: str) -> VoiceSession | None:
        session_id = self._by_conversation.get(conversation_id)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def map_conversation(self, conversation_id: str, session_id: str) -> None:
        self._by_conversation[conversation_id] = session_id
        session = self._sessions.get(session_id)
        if session is not None and not session.conversation_id:
            session.conversation_id = conversation_id

    def append_message(self, session_id: str, speaker: Speaker, message: str) -> VoiceSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        text = (message or "").strip()
        if text:
            now = _now_iso()
            session.messages.append({"timestamp": now, "message": text, "speaker": speaker})
            session.last_activity = now
        return session
