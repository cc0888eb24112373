from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from voice_bridge.engine import BridgeError, DeliveryKind, EducationalSessionEngine, looks_like_new_content
from voice_bridge.generator import CitedSource, ResponseGenerator
from voice_bridge.identity import SessionIdentityResolver
from voice_bridge.lesson_store import EducationalSession
from voice_bridge.reports import ReportGenerator
from voice_bridge.schemas import WebhookRequest
from voice_bridge.session_store import Identity, VoiceSession, VoiceSessionRegistry, new_session_id

logger = logging.getLogger(__name__)

GREETING = (
    "Hello! I'm your AI advisor. I'm here to help you work through your goals one step at a time. "
    "What would you like to talk about today?"
)
APOLOGY = (
    "I apologize, but I'm having trouble processing your request right now. "
    "Please try again in a moment."
)
ALREADY_COMPLETE = (
    "You've already completed this educational program. "
    "Is there anything else you'd like to talk about?"
)
REPORT_READY = (
    "Congratulations! You've completed the educational program. "
    "Your comprehensive report has been generated and is available for download."
)
REPORT_PENDING = (
    "Congratulations! You've completed the educational program. "
    "Your report will be available shortly."
)


@dataclass
class TurnResult:
    text: str
    mode: str = "open-ended"  # structured | open-ended | fallback
    delivery_kind: DeliveryKind = DeliveryKind.qa
    cited_sources: list[CitedSource] = field(default_factory=list)
    session_id: str | None = None
    conversation_id: str | None = None
    educational_session_id: str | None = None
    session_completed: bool = False
    report_id: str | None = None

    @property
    def interruptible(self) -> bool:
        return self.delivery_kind.interruptible

    @property
    def is_chunk_delivery(self) -> bool:
        return self.delivery_kind is DeliveryKind.chunk


class ConversationOrchestrator:
    """
    Coordinates one webhook turn: identity, mode selection, generation.

    `handle_turn` always returns a TurnResult. The voice platform retries
    aggressively on errors, so every failure degrades to some spoken text.
    """

    def __init__(
        self,
        resolver: SessionIdentityResolver,
        registry: VoiceSessionRegistry,
        engine: EducationalSessionEngine,
        generator: ResponseGenerator,
        reports: ReportGenerator,
        *,
        generation_timeout: float = 20.0,
        report_timeout: float = 15.0,
    ) -> None:
        self.resolver = resolver
        self.registry = registry
        self.engine = engine
        self.generator = generator
        self.reports = reports
        self.generation_timeout = generation_timeout
        self.report_timeout = report_timeout

    async def handle_turn(self, headers: Mapping[str, str], request: WebhookRequest) -> TurnResult:
        try:
            return await self._handle_turn(headers, request)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unhandled error while handling turn")
            return TurnResult(text=APOLOGY)

    async def _handle_turn(self, headers: Mapping[str, str], request: WebhookRequest) -> TurnResult:
        body = request.model_dump()
        identity = await self.resolver.resolve_identity(headers, body)
        voice_session = await self._voice_session_for(identity)
        conversation_id = (identity.conversation_id if identity else None) or voice_session.conversation_id

        edu_session = await self._find_educational_session(conversation_id, voice_session)
        user_text = request.last_user_text()

        result: TurnResult | None = None
        if edu_session is None:
            lesson_id = request.variables.get("lesson_id")
            if conversation_id and isinstance(lesson_id, str) and lesson_id.strip():
                result = await self._try_bootstrap(conversation_id, lesson_id.strip())

        if result is None:
            if user_text is None:
                result = TurnResult(text=GREETING)
            elif edu_session is not None:
                result = await self._structured_or_fallback(edu_session, user_text, request)
            else:
                result = await self._open_ended(request, conversation_id, voice_session.session_id)

        result.session_id = voice_session.session_id
        result.conversation_id = conversation_id
        self._record(voice_session, user_text, result.text)
        logger.info(
            "Turn handled (mode=%s, delivery=%s, session=%s, conversation=%s)",
            result.mode,
            result.delivery_kind.value,
            voice_session.session_id,
            conversation_id,
        )
        return result

    async def _voice_session_for(self, identity: Identity | None) -> VoiceSession:
        session = None
        if identity is not None:
            if identity.session_id:
                session = self.registry.get(identity.session_id)
            if session is None and identity.conversation_id:
                session = self.registry.get_by_conversation(identity.conversation_id)
                if session is None:
                    session = await self._adopt_latest_session(identity.conversation_id)
        if session is not None:
            return session

        fresh = VoiceSession(
            session_id=new_session_id(),
            conversation_id=identity.conversation_id if identity else None,
        )
        logger.warning("No resolvable voice session; registering fresh session %s", fresh.session_id)
        try:
            await self.registry.register(fresh)
        except Exception:
            logger.exception("Failed to persist fresh session %s", fresh.session_id)
        return fresh

    async def _adopt_latest_session(self, conversation_id: str) -> VoiceSession | None:
        """
        Links a first-seen conversation id to the most recently registered session.

        Clients register a session (often carrying lesson metadata) before the
        platform's first webhook, which only carries the platform's own id.
        """
        latest = await self.resolver.resolve_latest_session(
            self.resolver.max_retries, self.resolver.backoff_base
        )
        if latest is None or not latest.session_id:
            return None
        session = self.registry.get(latest.session_id)
        if session is None:
            return None
        if session.conversation_id and session.conversation_id != conversation_id:
            # Already bound to another conversation.
            return None
        self.registry.map_conversation(conversation_id, session.session_id)
        logger.info("Linked conversation %s to registered session %s", conversation_id, session.session_id)
        return session

    async def _find_educational_session(
        self, conversation_id: str | None, voice_session: VoiceSession
    ) -> EducationalSession | None:
        try:
            if conversation_id:
                session = await asyncio.to_thread(self.engine.get_session, conversation_id)
                if session is not None:
                    return session
            metadata_id = voice_session.educational_session_id
            if metadata_id:
                return await asyncio.to_thread(self.engine.get_session, metadata_id)
        except Exception:
            logger.exception("Educational session lookup failed; continuing in open-ended mode")
        return None

    async def _try_bootstrap(self, conversation_id: str, lesson_id: str) -> TurnResult | None:
        try:
            if not await asyncio.to_thread(self.engine.lesson_has_chunks, lesson_id):
                logger.warning("Lesson %s has no chunks; staying in open-ended mode", lesson_id)
                return None
            session = await asyncio.to_thread(self.engine.start_session, conversation_id, lesson_id)
            chunk = await asyncio.to_thread(self.engine.get_current_chunk, session.id)
            if chunk is None:
                return None
            content = await self.engine.process_chunk_content(
                session.id, chunk.content, session.personalization_enabled
            )
            return TurnResult(
                text=f"{content}\n\n{chunk.question}".strip(),
                mode="structured",
                delivery_kind=DeliveryKind.chunk,
                educational_session_id=session.id,
            )
        except Exception:
            logger.exception("Could not start lesson %s for conversation %s", lesson_id, conversation_id)
            return None

    async def _structured_or_fallback(
        self, session: EducationalSession, user_text: str, request: WebhookRequest
    ) -> TurnResult:
        try:
            return await self._structured(session, user_text)
        except Exception:
            logger.exception("Structured mode failed for %s; falling back to open-ended", session.id)

        result = await self._open_ended(request, session.id, None, lesson_session=session)
        result.mode = "fallback"
        result.educational_session_id = session.id
        try:
            result.delivery_kind = await asyncio.to_thread(
                self.engine.classify_delivery, session.id, result.text
            )
        except Exception:
            logger.exception("Delivery classification failed; using text shape only")
            result.delivery_kind = (
                DeliveryKind.chunk if looks_like_new_content(result.text) else DeliveryKind.qa
            )
        return result

    async def _structured(self, session: EducationalSession, user_text: str) -> TurnResult:
        current = await asyncio.to_thread(self.engine.get_current_chunk, session.id)
        if current is None:
            if not session.completed:
                raise BridgeError(f"Session {session.id} has no chunk to deliver")
            return TurnResult(
                text=ALREADY_COMPLETE,
                mode="structured",
                educational_session_id=session.id,
                session_completed=True,
            )

        ack = self.engine.acknowledgment(session)
        await asyncio.to_thread(self.engine.save_chunk_response, session.id, current.id, user_text, ack)
        has_next = await asyncio.to_thread(self.engine.advance_to_next_chunk, session.id)

        if has_next:
            nxt = await asyncio.to_thread(self.engine.get_current_chunk, session.id)
            if nxt is None:
                logger.warning("Advanced %s but no chunk found at the new index", session.id)
                return TurnResult(text=ack, mode="structured", educational_session_id=session.id)
            content = await self.engine.process_chunk_content(
                session.id, nxt.content, session.personalization_enabled
            )
            return TurnResult(
                text=f"{ack}\n\n---\n\n{content}\n\n{nxt.question}",
                mode="structured",
                delivery_kind=DeliveryKind.chunk,
                educational_session_id=session.id,
            )

        report_id = await self._generate_report(session.id)
        closing = REPORT_READY if report_id else REPORT_PENDING
        return TurnResult(
            text=f"{ack}\n\n{closing}",
            mode="structured",
            educational_session_id=session.id,
            session_completed=True,
            report_id=report_id,
        )

    async def _generate_report(self, session_id: str) -> str | None:
        try:
            return await asyncio.wait_for(self.reports.generate(session_id), timeout=self.report_timeout)
        except asyncio.TimeoutError:
            logger.warning("Report generation for %s timed out after %.1fs", session_id, self.report_timeout)
        except Exception:
            logger.exception("Report generation failed for %s", session_id)
        return None

    async def _open_ended(
        self,
        request: WebhookRequest,
        conversation_id: str | None,
        session_id: str | None,
        *,
        lesson_session: EducationalSession | None = None,
    ) -> TurnResult:
        context: dict[str, Any] = {
            "conversation_id": conversation_id,
            "session_id": session_id,
            "current_topic": request.variables.get("current_topic"),
        }
        if lesson_session is not None:
            context["lesson"] = {"id": lesson_session.lesson_id}

        try:
            reply = await asyncio.wait_for(
                self.generator.generate(request.turns(), context), timeout=self.generation_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Response generation timed out after %.1fs", self.generation_timeout)
            return TurnResult(text=APOLOGY)
        except Exception:
            logger.exception("Response generation failed")
            return TurnResult(text=APOLOGY)

        text = (reply.text or "").strip()
        if not text:
            return TurnResult(text=APOLOGY)
        return TurnResult(text=text, mode="open-ended", cited_sources=list(reply.cited_sources))

    def _record(self, session: VoiceSession, user_text: str | None, reply: str) -> None:
        try:
            if user_text:
                self.registry.append_message(session.session_id, "user", user_text)
            self.registry.append_message(session.session_id, "agent", reply)
        except Exception:
            logger.exception("Failed to record messages for %s", session.session_id)
