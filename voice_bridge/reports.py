from __future__ import annotations

import asyncio
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Protocol

from docx import Document

from voice_bridge.engine import BridgeError
from voice_bridge.lesson_repo import LessonRepo

logger = logging.getLogger(__name__)

_REPORT_ID_RE = re.compile(r"^report_[0-9a-f]{16}$")


class ReportGenerationError(BridgeError):
    pass


class ReportGenerator(Protocol):
    async def generate(self, session_id: str) -> str: ...


class DocxReportGenerator:
    """Writes a Word report of a completed lesson: every chunk with the learner's answers."""

    def __init__(self, repo: LessonRepo, reports_dir: str) -> None:
        self.repo = repo
        self.reports_dir = reports_dir

    def ensure_dir(self) -> None:
        os.makedirs(self.reports_dir, exist_ok=True)

    def report_path(self, report_id: str) -> str | None:
        if not _REPORT_ID_RE.match(report_id):
            return None
        path = os.path.join(self.reports_dir, f"{report_id}.docx")
        return path if os.path.exists(path) else None

    async def generate(self, session_id: str) -> str:
        return await asyncio.to_thread(self._generate, session_id)

    def _generate(self, session_id: str) -> str:
        session = self.repo.get_session(session_id)
        if session is None:
            raise ReportGenerationError(f"Unknown educational session: {session_id}")

        chunks = self.repo.get_chunks_for_lesson(session.lesson_id)
        responses = self.repo.list_responses(session_id)

        doc = Document()
        doc.add_heading("Lesson Report", level=1)
        doc.add_paragraph(f"Session: {session.id}")
        doc.add_paragraph(f"Lesson: {session.lesson_id}")
        doc.add_paragraph(f"Generated: {datetime.now(timezone.utc).isoformat()}")
        doc.add_paragraph(f"Status: {'completed' if session.completed else 'in progress'}")

        for idx, chunk in enumerate(chunks, start=1):
            doc.add_heading(f"{idx}. {chunk.title or 'Section'}", level=2)
            if chunk.question:
                doc.add_paragraph(f"Question: {chunk.question}")
            answers = [r for r in responses if r.chunk_id == chunk.id]
            if answers:
                for r in answers:
                    doc.add_paragraph(f"Your answer: {r.user_response.strip()}")
                    if session.personalization_enabled and r.acknowledgment:
                        doc.add_paragraph(f"Note: {r.acknowledgment.strip()}")
            else:
                doc.add_paragraph("(No answer recorded)")

        report_id = f"report_{uuid.uuid4().hex[:16]}"
        self.ensure_dir()
        doc.save(os.path.join(self.reports_dir, f"{report_id}.docx"))
        logger.info("Generated report %s for session %s", report_id, session_id)
        return report_id
