"""Tests for per-turn orchestration: identity, mode selection, lesson delivery."""

import asyncio
import threading

import pytest

from conftest import LESSON_ID, LONG_CONTENT, seed_lesson
from voice_bridge.engine import ACK_PLAIN, DeliveryKind, EducationalSessionEngine
from voice_bridge.generator import CitedSource
from voice_bridge.lesson_repo import InMemoryLessonRepo
from voice_bridge.orchestrator import (
    ALREADY_COMPLETE,
    APOLOGY,
    GREETING,
    REPORT_PENDING,
    REPORT_READY,
    ConversationOrchestrator,
)
from voice_bridge.schemas import WebhookRequest
from voice_bridge.session_store import VoiceSession

HEADERS = {"x-conversation-id": "conv-1"}


def _request(*user_texts: str, **extra) -> WebhookRequest:
    messages = []
    for text in user_texts:
        messages.append({"role": "assistant", "content": "previous reply"})
        messages.append({"role": "user", "content": text})
    return WebhookRequest.model_validate({"messages": messages, **extra})


async def _run_lesson_to_completion(orchestrator):
    first = await orchestrator.handle_turn(HEADERS, _request(variables={"lesson_id": LESSON_ID}))
    second = await orchestrator.handle_turn(HEADERS, _request("I want to save more."))
    third = await orchestrator.handle_turn(HEADERS, _request("Starting early makes sense."))
    fourth = await orchestrator.handle_turn(HEADERS, _request("I'll automate it."))
    return first, second, third, fourth


class TestStructuredLesson:
    """End-to-end lesson delivery for one conversation."""

    @pytest.mark.asyncio
    async def test_first_turn_with_lesson_id_delivers_first_chunk(self, orchestrator, engine):
        result = await orchestrator.handle_turn(HEADERS, _request(variables={"lesson_id": LESSON_ID}))

        assert result.mode == "structured"
        assert result.delivery_kind is DeliveryKind.chunk
        assert result.text.startswith("Section 1 content.")
        assert result.text.endswith("What do you think about section 1?")
        assert result.educational_session_id == "conv-1"
        assert engine.get_session("conv-1").current_chunk_index == 0

    @pytest.mark.asyncio
    async def test_full_lesson_walkthrough(self, orchestrator, engine, reports):
        first, second, third, fourth = await _run_lesson_to_completion(orchestrator)

        assert second.text.startswith(f"{ACK_PLAIN}\n\n---\n\n")
        assert LONG_CONTENT in second.text
        assert second.text.endswith("What do you think about section 2?")
        assert third.text.endswith("What do you think about section 3?")
        assert [r.is_chunk_delivery for r in (first, second, third)] == [True, True, True]

        assert fourth.session_completed is True
        assert fourth.report_id == reports.report_id
        assert fourth.text == f"{ACK_PLAIN}\n\n{REPORT_READY}"
        assert reports.calls == ["conv-1"]

        session = engine.get_session("conv-1")
        assert session.completed is True
        assert session.current_chunk_index == 3
        responses = engine.get_session_responses("conv-1")
        assert [r.chunk_id for r in responses] == ["chunk-1", "chunk-2", "chunk-3"]

    @pytest.mark.asyncio
    async def test_turn_after_completion_does_not_advance(self, orchestrator, engine, reports):
        await _run_lesson_to_completion(orchestrator)

        result = await orchestrator.handle_turn(HEADERS, _request("Anything else?"))

        assert result.text == ALREADY_COMPLETE
        assert result.session_completed is True
        assert engine.get_session("conv-1").current_chunk_index == 3
        assert len(engine.get_session_responses("conv-1")) == 3
        assert reports.calls == ["conv-1"]

    @pytest.mark.asyncio
    async def test_long_chunk_is_not_interruptible(self, orchestrator):
        await orchestrator.handle_turn(HEADERS, _request(variables={"lesson_id": LESSON_ID}))

        result = await orchestrator.handle_turn(HEADERS, _request("Yes"))

        assert len(result.text) > 300
        assert result.is_chunk_delivery is True
        assert result.interruptible is False

    @pytest.mark.asyncio
    async def test_report_failure_still_completes_session(self, orchestrator, engine, reports):
        reports.error = RuntimeError("disk full")

        *_, fourth = await _run_lesson_to_completion(orchestrator)

        assert fourth.session_completed is True
        assert fourth.report_id is None
        assert fourth.text.endswith(REPORT_PENDING)
        assert engine.get_session("conv-1").completed is True

    @pytest.mark.asyncio
    async def test_report_timeout_is_reported_as_pending(self, orchestrator, reports):
        async def slow_generate(session_id):
            await asyncio.sleep(5)
            return "report_ffffffffffffffff"

        reports.generate = slow_generate
        orchestrator.report_timeout = 0.01

        *_, fourth = await _run_lesson_to_completion(orchestrator)

        assert fourth.report_id is None
        assert fourth.text.endswith(REPORT_PENDING)

    @pytest.mark.asyncio
    async def test_session_found_through_voice_session_metadata(self, orchestrator, registry, engine, sleep):
        engine.start_session("edu-7", LESSON_ID)
        await registry.register(
            VoiceSession(session_id="session_abc", metadata={"educational_session_id": "edu-7"})
        )

        result = await orchestrator.handle_turn({}, _request("My answer"))

        assert result.mode == "structured"
        assert result.educational_session_id == "edu-7"
        assert result.session_id == "session_abc"
        assert engine.get_session("edu-7").current_chunk_index == 1
        assert sleep.delays == []


class TestFallback:
    """Structured failures degrade to open-ended generation."""

    @pytest.mark.asyncio
    async def test_advance_failure_falls_back_to_qa(self, orchestrator, engine, monkeypatch):
        await orchestrator.handle_turn(HEADERS, _request(variables={"lesson_id": LESSON_ID}))

        def broken(session_id):
            raise RuntimeError("database went away")

        monkeypatch.setattr(engine, "advance_to_next_chunk", broken)

        result = await orchestrator.handle_turn(HEADERS, _request("A question"))

        assert result.mode == "fallback"
        assert result.text == "Here is a short answer."
        assert result.delivery_kind is DeliveryKind.qa
        assert result.educational_session_id == "conv-1"

    @pytest.mark.asyncio
    async def test_unanswered_chunk_fallback_is_chunk_delivery(self, orchestrator, engine, monkeypatch):
        await orchestrator.handle_turn(HEADERS, _request(variables={"lesson_id": LESSON_ID}))

        def broken(*args):
            raise RuntimeError("write failed")

        monkeypatch.setattr(engine, "save_chunk_response", broken)

        result = await orchestrator.handle_turn(HEADERS, _request("A question"))

        assert result.mode == "fallback"
        assert result.delivery_kind is DeliveryKind.chunk

    @pytest.mark.asyncio
    async def test_fallback_passes_lesson_context(self, orchestrator, engine, generator, monkeypatch):
        await orchestrator.handle_turn(HEADERS, _request(variables={"lesson_id": LESSON_ID}))
        monkeypatch.setattr(engine, "advance_to_next_chunk", lambda session_id: 1 / 0)

        await orchestrator.handle_turn(HEADERS, _request("A question"))

        _, context = generator.calls[-1]
        assert context["lesson"] == {"id": LESSON_ID}


class TestOpenEnded:
    """Turns without an educational session."""

    @pytest.mark.asyncio
    async def test_no_user_text_greets(self, orchestrator, generator):
        result = await orchestrator.handle_turn(HEADERS, _request())

        assert result.text == GREETING
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_generates_reply_with_sources(self, orchestrator, generator):
        generator.sources = [CitedSource(id="s1", title="Saving basics", url="https://example.com/s1")]

        result = await orchestrator.handle_turn(
            HEADERS, _request("How much should I save?", variables={"current_topic": "budgeting"})
        )

        assert result.mode == "open-ended"
        assert result.delivery_kind is DeliveryKind.qa
        assert result.cited_sources[0].id == "s1"
        turns, context = generator.calls[0]
        assert turns[-1] == {"role": "user", "content": "How much should I save?"}
        assert context["conversation_id"] == "conv-1"
        assert context["current_topic"] == "budgeting"

    @pytest.mark.asyncio
    async def test_generator_error_returns_apology(self, orchestrator, generator):
        generator.error = RuntimeError("quota exceeded")

        result = await orchestrator.handle_turn(HEADERS, _request("Hello?"))

        assert result.text == APOLOGY

    @pytest.mark.asyncio
    async def test_empty_generation_returns_apology(self, orchestrator, generator):
        generator.text = "   "

        result = await orchestrator.handle_turn(HEADERS, _request("Hello?"))

        assert result.text == APOLOGY

    @pytest.mark.asyncio
    async def test_generation_timeout_returns_apology(self, orchestrator, generator):
        async def slow(turns, context):
            await asyncio.sleep(5)

        generator.generate = slow
        orchestrator.generation_timeout = 0.01

        result = await orchestrator.handle_turn(HEADERS, _request("Hello?"))

        assert result.text == APOLOGY

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_apology(self, orchestrator, monkeypatch):
        async def boom(identity):
            raise RuntimeError("registry corrupted")

        monkeypatch.setattr(orchestrator, "_voice_session_for", boom)

        result = await orchestrator.handle_turn(HEADERS, _request("Hello?"))

        assert result.text == APOLOGY


class TestSessionBookkeeping:
    """Voice session registration and transcript recording."""

    @pytest.mark.asyncio
    async def test_same_conversation_reuses_voice_session(self, orchestrator, registry):
        first = await orchestrator.handle_turn(HEADERS, _request("one"))
        second = await orchestrator.handle_turn(HEADERS, _request("two"))

        assert first.session_id == second.session_id
        session = registry.get_by_conversation("conv-1")
        assert [m["speaker"] for m in session.messages] == ["user", "agent", "user", "agent"]

    @pytest.mark.asyncio
    async def test_unidentified_turn_registers_fresh_session(self, orchestrator, latest, sleep):
        result = await orchestrator.handle_turn({}, _request("hi"))

        assert result.session_id.startswith("session_")
        assert result.conversation_id is None
        assert sleep.delays == pytest.approx([0.1, 0.2])
        assert (await latest.read_latest()).session_id == result.session_id


class TestRegisteredSessionLinking:
    """A client-registered session is picked up by the platform's first webhook."""

    @pytest.mark.asyncio
    async def test_carried_id_links_to_latest_registered_session(self, orchestrator, registry, engine, latest):
        engine.start_session("edu-7", LESSON_ID)
        await registry.register(
            VoiceSession(session_id="session_abc", metadata={"educational_session_id": "edu-7"})
        )
        headers = {"x-elevenlabs-conversation-id": "conv-new"}

        first = await orchestrator.handle_turn(headers, _request("My answer"))

        assert first.mode == "structured"
        assert first.educational_session_id == "edu-7"
        assert first.session_id == "session_abc"
        assert first.conversation_id == "conv-new"
        assert registry.get_by_conversation("conv-new").session_id == "session_abc"
        assert (await latest.read_latest()).session_id == "session_abc"

        second = await orchestrator.handle_turn(headers, _request("Second answer"))

        assert second.session_id == "session_abc"
        assert engine.get_session("edu-7").current_chunk_index == 2

    @pytest.mark.asyncio
    async def test_session_bound_to_another_conversation_is_not_taken(self, orchestrator, registry):
        await registry.register(VoiceSession(session_id="session_old", conversation_id="conv-old"))

        result = await orchestrator.handle_turn({"x-conversation-id": "conv-new"}, _request("hi"))

        assert result.session_id != "session_old"
        assert registry.get_by_conversation("conv-old").session_id == "session_old"
        assert registry.get_by_conversation("conv-new").session_id == result.session_id


class TestLessonWithoutChunks:
    """Unknown or empty lessons never look like finished programs."""

    @pytest.mark.asyncio
    async def test_unknown_lesson_id_does_not_create_a_session(self, orchestrator, engine, reports):
        variables = {"lesson_id": "no-such-lesson"}

        first = await orchestrator.handle_turn(HEADERS, _request(variables=variables))
        second = await orchestrator.handle_turn(HEADERS, _request("Hello?", variables=variables))

        assert first.text == GREETING
        assert engine.get_session("conv-1") is None
        assert second.mode == "open-ended"
        assert second.text != ALREADY_COMPLETE
        assert reports.calls == []

    @pytest.mark.asyncio
    async def test_incomplete_session_without_chunk_falls_back(self, orchestrator, engine, reports):
        engine.start_session("conv-1", "no-such-lesson")

        result = await orchestrator.handle_turn(HEADERS, _request("Hello?"))

        assert result.mode == "fallback"
        assert result.text == "Here is a short answer."
        assert result.session_completed is False
        assert engine.get_session("conv-1").completed is False
        assert reports.calls == []


class ThreadRecordingRepo(InMemoryLessonRepo):
    def __init__(self):
        super().__init__()
        self.threads: set[int] = set()

    def get_session(self, session_id):
        self.threads.add(threading.get_ident())
        return super().get_session(session_id)

    def update_progress(self, session_id, current_chunk_index, completed):
        self.threads.add(threading.get_ident())
        return super().update_progress(session_id, current_chunk_index, completed)


class TestRepositoryOffLoop:
    """Blocking repository calls never run on the event loop thread."""

    @pytest.mark.asyncio
    async def test_structured_turn_runs_repo_in_worker_threads(self, resolver, registry, generator, reports):
        repo = ThreadRecordingRepo()
        seed_lesson(repo)
        orchestrator = ConversationOrchestrator(
            resolver, registry, EducationalSessionEngine(repo), generator, reports
        )

        await orchestrator.handle_turn(HEADERS, _request(variables={"lesson_id": LESSON_ID}))
        await orchestrator.handle_turn(HEADERS, _request("An answer"))

        assert repo.threads
        assert threading.get_ident() not in repo.threads
