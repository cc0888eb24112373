from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from voice_bridge.engine import EducationalSessionEngine
from voice_bridge.generator import GeminiResponseGenerator, ResponseGenerator
from voice_bridge.identity import SessionIdentityResolver
from voice_bridge.lesson_repo import (
    LessonRepo,
    PostgresLessonRepo,
    make_lesson_repo,
    seed_lessons_from_file,
)
from voice_bridge.log import configure_logging, new_request_id, request_id_var
from voice_bridge.orchestrator import ConversationOrchestrator
from voice_bridge.personalization import LeadInPersonalizer
from voice_bridge.reports import DocxReportGenerator
from voice_bridge.schemas import (
    CreateEducationalSessionRequest,
    ElevenLabsSignedUrlRequest,
    ElevenLabsSignedUrlResponse,
    RegisterSessionRequest,
    RegisterSessionResponse,
    WebhookRequest,
)
from voice_bridge.session_store import (
    FileLatestSessionStore,
    LatestSessionStore,
    VoiceSession,
    VoiceSessionRegistry,
)
from voice_bridge.settings import Settings, load_settings
from voice_bridge.streaming import ResponseStreamAdapter

logger = logging.getLogger(__name__)

CAPABILITIES = {
    "message": "ElevenLabs Webhook Endpoint",
    "description": "OpenAI-compatible custom-LLM endpoint for ElevenLabs voice conversations",
    "supportedTypes": [
        "conversation.message",
        "conversation.status",
        "conversation.error",
    ],
    "features": [
        "Conversation identity resolution",
        "Structured lesson delivery",
        "Open-ended responses",
        "Streaming and non-streaming completions",
        "Voice settings and interruption metadata",
    ],
    "status": "active",
}

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


@dataclass
class BridgeServices:
    settings: Settings
    repo: LessonRepo
    latest: LatestSessionStore
    registry: VoiceSessionRegistry
    engine: EducationalSessionEngine
    reports: DocxReportGenerator
    orchestrator: ConversationOrchestrator
    adapter: ResponseStreamAdapter


def build_services(
    settings: Settings,
    *,
    repo: LessonRepo | None = None,
    latest: LatestSessionStore | None = None,
    generator: ResponseGenerator | None = None,
) -> BridgeServices:
    repo = repo if repo is not None else make_lesson_repo(settings.database_url or "")
    latest = latest if latest is not None else FileLatestSessionStore(settings.session_registry_dir)
    registry = VoiceSessionRegistry(latest)
    engine = EducationalSessionEngine(
        repo,
        personalizer=LeadInPersonalizer(),
        personalization_default=settings.personalization_default,
    )
    reports = DocxReportGenerator(repo, settings.reports_dir)
    resolver = SessionIdentityResolver(
        latest,
        max_retries=settings.identity_max_retries,
        backoff_base=settings.identity_backoff_base,
    )
    orchestrator = ConversationOrchestrator(
        resolver,
        registry,
        engine,
        generator if generator is not None else GeminiResponseGenerator(),
        reports,
        generation_timeout=settings.generation_timeout_seconds,
        report_timeout=settings.report_timeout_seconds,
    )
    adapter = ResponseStreamAdapter(settings.model_label, word_delay=settings.stream_word_delay)
    return BridgeServices(
        settings=settings,
        repo=repo,
        latest=latest,
        registry=registry,
        engine=engine,
        reports=reports,
        orchestrator=orchestrator,
        adapter=adapter,
    )


def _parse_webhook(raw: bytes) -> WebhookRequest:
    try:
        data = json.loads(raw or b"{}")
    except ValueError:
        logger.warning("Webhook body is not valid JSON; treating as empty request")
        return WebhookRequest()
    if not isinstance(data, dict):
        return WebhookRequest()
    try:
        return WebhookRequest.model_validate(data)
    except ValueError:
        logger.warning("Webhook body did not match the expected shape; treating as empty request")
        return WebhookRequest()


def create_app(services: BridgeServices | None = None) -> FastAPI:
    services = services or build_services(load_settings())
    app = FastAPI(title="Voice Lesson Bridge API", version="0.3.0")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id") or new_request_id()
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

    @app.on_event("startup")
    def _startup() -> None:
        configure_logging(services.settings.log_level)
        if isinstance(services.latest, FileLatestSessionStore):
            services.latest.ensure_dir()
        services.reports.ensure_dir()
        if isinstance(services.repo, PostgresLessonRepo):
            services.repo.ensure_schema()
        if services.settings.lesson_seed_path:
            count = seed_lessons_from_file(services.repo, services.settings.lesson_seed_path)
            logger.info("Seeded %d lesson chunks from %s", count, services.settings.lesson_seed_path)
        logger.info("Voice bridge ready")

    @app.get("/")
    def root() -> dict:
        return {
            "ok": True,
            "service": "voice-lesson-bridge",
            "endpoints": [
                "/health",
                "/v1/chat/completions",
                "/sessions/register",
                "/sessions/{session_id}",
                "/educational-sessions",
                "/educational-sessions/{session_id}",
                "/reports/{report_id}/download.docx",
                "/elevenlabs/signed_url",
            ],
            "docs": "/docs",
        }

    @app.get("/health")
    def health() -> dict:
        return {"ok": True}

    @app.get("/v1/chat/completions")
    @app.get("/chat/completions")
    def capabilities() -> dict:
        return CAPABILITIES

    @app.post("/v1/chat/completions")
    @app.post("/chat/completions")
    async def chat_completions(request: Request):
        req = _parse_webhook(await request.body())
        result = await services.orchestrator.handle_turn(dict(request.headers), req)

        if not req.stream:
            return JSONResponse(services.adapter.completion(result, req.messages, model=req.model))

        return StreamingResponse(
            services.adapter.stream(result, model=req.model),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/sessions/register", response_model=RegisterSessionResponse)
    async def register_session(req: RegisterSessionRequest) -> RegisterSessionResponse:
        session = VoiceSession(
            session_id=req.sessionId,
            conversation_id=req.conversationId,
            metadata=dict(req.metadata),
        )
        if req.timestamp:
            session.registered_at = req.timestamp
        await services.registry.register(session)
        return RegisterSessionResponse(sessionId=session.session_id, conversationId=session.conversation_id)

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str) -> dict:
        session = services.registry.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"success": True, "session": session.to_dict()}

    @app.post("/educational-sessions")
    def create_educational_session(req: CreateEducationalSessionRequest) -> dict:
        session = services.engine.start_session(req.sessionId, req.lessonId, req.personalizationEnabled)
        return {"success": True, "session": session.to_dict()}

    @app.get("/educational-sessions/{session_id}")
    def get_educational_session(session_id: str) -> dict:
        state = services.engine.state(session_id)
        if state is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"success": True, "sessionState": state.to_dict()}

    @app.get("/reports/{report_id}/download.docx")
    def download_report(report_id: str) -> FileResponse:
        path = services.reports.report_path(report_id)
        if path is None:
            raise HTTPException(status_code=404, detail="Report not found")
        return FileResponse(
            path,
            media_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            filename="lesson-report.docx",
        )

    @app.post("/elevenlabs/signed_url", response_model=ElevenLabsSignedUrlResponse)
    async def elevenlabs_signed_url(req: ElevenLabsSignedUrlRequest) -> ElevenLabsSignedUrlResponse:
        """
        Returns a short-lived signed URL for starting an ElevenLabs Conversational AI session
        from a client without exposing the ElevenLabs API key.
        """
        api_key = (services.settings.elevenlabs_api_key or "").strip()
        if not api_key:
            raise HTTPException(status_code=500, detail="Missing ELEVENLABS_API_KEY on the server.")

        url = "https://api.elevenlabs.io/v1/convai/conversation/get_signed_url"
        try:
            async with httpx.AsyncClient(timeout=15) as client:
                r = await client.get(url, headers={"xi-api-key": api_key}, params={"agent_id": req.agentId})
            if r.status_code >= 400:
                raise HTTPException(status_code=500, detail=f"ElevenLabs signed_url failed: {r.status_code} {r.text}")
            data = r.json()
            signed_url = data.get("signed_url") or data.get("signedUrl") or data.get("url")
            if not signed_url:
                raise HTTPException(status_code=500, detail=f"ElevenLabs response missing signed_url: {data}")
            return ElevenLabsSignedUrlResponse(signedUrl=signed_url)
        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"ElevenLabs signed_url error: {e}")

    return app


app = create_app()
