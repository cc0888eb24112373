from __future__ import annotations

import json
import os
from dataclasses import replace
from typing import Protocol

from voice_bridge.lesson_store import Chunk, ChunkResponse, EducationalSession, _now_iso
from voice_bridge.schemas import LessonSeedFile


class LessonRepo(Protocol):
    def create_session(
        self, session_id: str, lesson_id: str, personalization_enabled: bool
    ) -> EducationalSession: ...

    def get_session(self, session_id: str) -> EducationalSession | None: ...

    def update_progress(
        self, session_id: str, current_chunk_index: int, completed: bool
    ) -> EducationalSession: ...

    def get_chunks_for_lesson(self, lesson_id: str) -> list[Chunk]: ...

    def upsert_chunk(self, chunk: Chunk) -> Chunk: ...

    def save_response(self, response: ChunkResponse) -> ChunkResponse: ...

    def list_responses(self, session_id: str) -> list[ChunkResponse]: ...


class InMemoryLessonRepo:
    def __init__(self) -> None:
        self._sessions: dict[str, EducationalSession] = {}
        self._chunks: dict[str, dict[str, Chunk]] = {}
        self._responses: dict[str, list[ChunkResponse]] = {}

    def create_session(
        self, session_id: str, lesson_id: str, personalization_enabled: bool
    ) -> EducationalSession:
        existing = self._sessions.get(session_id)
        if existing is not None:
            return replace(existing)
        rec = EducationalSession(
            id=session_id,
            lesson_id=lesson_id,
            personalization_enabled=personalization_enabled,
        )
        self._sessions[session_id] = rec
        return replace(rec)

    def get_session(self, session_id: str) -> EducationalSession | None:
        rec = self._sessions.get(session_id)
        # Hand out copies so callers cannot mutate stored state behind the repo's back.
        return replace(rec) if rec is not None else None

    def update_progress(
        self, session_id: str, current_chunk_index: int, completed: bool
    ) -> EducationalSession:
        rec = self._sessions.get(session_id)
        if rec is None:
            raise KeyError(session_id)
        rec.current_chunk_index = current_chunk_index
        rec.completed = completed
        rec.touch()
        return replace(rec)

    def get_chunks_for_lesson(self, lesson_id: str) -> list[Chunk]:
        chunks = self._chunks.get(lesson_id, {})
        return sorted(chunks.values(), key=lambda c: c.order_index)

    def upsert_chunk(self, chunk: Chunk) -> Chunk:
        self._chunks.setdefault(chunk.lesson_id, {})[chunk.id] = chunk
        return chunk

    def save_response(self, response: ChunkResponse) -> ChunkResponse:
        self._responses.setdefault(response.session_id, []).append(response)
        return response

    def list_responses(self, session_id: str) -> list[ChunkResponse]:
        return list(self._responses.get(session_id, []))


class PostgresLessonRepo:
    """
    Postgres storage for lesson progress.
    Requires DATABASE_URL.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url

    def _connect(self):
        # Import lazily so local dev can run without Postgres deps installed
        # (and only requires psycopg when DATABASE_URL is set).
        import psycopg  # type: ignore
        from psycopg.rows import dict_row  # type: ignore

        return psycopg.connect(self.database_url, row_factory=dict_row)

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS educational_sessions (
                      id TEXT PRIMARY KEY,
                      lesson_id TEXT NOT NULL,
                      current_chunk_index INTEGER NOT NULL DEFAULT 0,
                      completed BOOLEAN NOT NULL DEFAULT FALSE,
                      personalization_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    );
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS lesson_chunks (
                      id TEXT PRIMARY KEY,
                      lesson_id TEXT NOT NULL,
                      order_index INTEGER NOT NULL,
                      title TEXT NOT NULL DEFAULT '',
                      content TEXT NOT NULL DEFAULT '',
                      question TEXT NOT NULL DEFAULT ''
                    );
                    """
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_lesson_chunks_lesson ON lesson_chunks(lesson_id, order_index);"
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS chunk_responses (
                      id BIGSERIAL PRIMARY KEY,
                      session_id TEXT NOT NULL REFERENCES educational_sessions(id) ON DELETE CASCADE,
                      chunk_id TEXT NOT NULL,
                      user_response TEXT NOT NULL DEFAULT '',
                      acknowledgment TEXT NOT NULL DEFAULT '',
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    );
                    """
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_chunk_responses_session ON chunk_responses(session_id);"
                )
            conn.commit()

    def _get_session(self, conn, session_id: str) -> EducationalSession | None:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, lesson_id, current_chunk_index, completed, personalization_enabled,
                       created_at, updated_at
                  FROM educational_sessions
                 WHERE id = %s;
                """,
                (session_id,),
            )
            row = cur.fetchone()
        return _row_to_session(row) if row else None

    def create_session(
        self, session_id: str, lesson_id: str, personalization_enabled: bool
    ) -> EducationalSession:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO educational_sessions (id, lesson_id, personalization_enabled)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (id) DO NOTHING;
                    """,
                    (session_id, lesson_id, personalization_enabled),
                )
            conn.commit()
            rec = self._get_session(conn, session_id)
        if not rec:
            raise ValueError("Missing row")
        return rec

    def get_session(self, session_id: str) -> EducationalSession | None:
        with self._connect() as conn:
            return self._get_session(conn, session_id)

    def update_progress(
        self, session_id: str, current_chunk_index: int, completed: bool
    ) -> EducationalSession:
        with self._connect() as conn:
            with conn.cursor() as cur:
                # GREATEST/OR keep the index monotonic and completion sticky even under racing writers.
                cur.execute(
                    """
                    UPDATE educational_sessions
                       SET current_chunk_index = GREATEST(current_chunk_index, %s),
                           completed = completed OR %s,
                           updated_at = now()
                     WHERE id = %s
                    RETURNING id;
                    """,
                    (current_chunk_index, completed, session_id),
                )
                found = cur.fetchone()
            conn.commit()
            if not found:
                raise KeyError(session_id)
            rec = self._get_session(conn, session_id)
        if not rec:
            raise ValueError("Missing row")
        return rec

    def get_chunks_for_lesson(self, lesson_id: str) -> list[Chunk]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, lesson_id, order_index, title, content, question
                      FROM lesson_chunks
                     WHERE lesson_id = %s
                     ORDER BY order_index ASC;
                    """,
                    (lesson_id,),
                )
                rows = cur.fetchall() or []
        return [
            Chunk(
                id=r["id"],
                lesson_id=r["lesson_id"],
                order_index=int(r["order_index"]),
                title=r.get("title") or "",
                content=r.get("content") or "",
                question=r.get("question") or "",
            )
            for r in rows
        ]

    def upsert_chunk(self, chunk: Chunk) -> Chunk:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO lesson_chunks (id, lesson_id, order_index, title, content, question)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                      SET lesson_id = EXCLUDED.lesson_id,
                          order_index = EXCLUDED.order_index,
                          title = EXCLUDED.title,
                          content = EXCLUDED.content,
                          question = EXCLUDED.question;
                    """,
                    (chunk.id, chunk.lesson_id, chunk.order_index, chunk.title, chunk.content, chunk.question),
                )
            conn.commit()
        return chunk

    def save_response(self, response: ChunkResponse) -> ChunkResponse:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO chunk_responses (session_id, chunk_id, user_response, acknowledgment)
                    VALUES (%s, %s, %s, %s);
                    """,
                    (response.session_id, response.chunk_id, response.user_response, response.acknowledgment),
                )
            conn.commit()
        return response

    def list_responses(self, session_id: str) -> list[ChunkResponse]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT session_id, chunk_id, user_response, acknowledgment, created_at
                      FROM chunk_responses
                     WHERE session_id = %s
                     ORDER BY id ASC;
                    """,
                    (session_id,),
                )
                rows = cur.fetchall() or []
        return [
            ChunkResponse(
                session_id=r["session_id"],
                chunk_id=r["chunk_id"],
                user_response=r.get("user_response") or "",
                acknowledgment=r.get("acknowledgment") or "",
                timestamp=_iso(r.get("created_at")),
            )
            for r in rows
        ]


def _iso(value) -> str:
    if value is None:
        return _now_iso()
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


def _row_to_session(row: dict) -> EducationalSession:
    return EducationalSession(
        id=row["id"],
        lesson_id=row["lesson_id"],
        current_chunk_index=int(row.get("current_chunk_index") or 0),
        completed=bool(row.get("completed")),
        personalization_enabled=bool(row.get("personalization_enabled")),
        created_at=_iso(row.get("created_at")),
        updated_at=_iso(row.get("updated_at")),
    )


def make_lesson_repo(database_url: str | None = None) -> LessonRepo:
    db_url = (database_url if database_url is not None else os.environ.get("DATABASE_URL") or "").strip()
    if db_url:
        return PostgresLessonRepo(db_url)
    return InMemoryLessonRepo()


def seed_lessons_from_file(repo: LessonRepo, path: str) -> int:
    """
    Upserts every chunk listed in a JSON seed file and returns how many were written.

    Shape: {"lessons": [{"id": "...", "chunks": [{"id", "orderIndex", "title", "content", "question"}]}]}
    """
    with open(path, "r", encoding="utf-8") as f:
        seed = LessonSeedFile.model_validate(json.load(f))
    count = 0
    for lesson in seed.lessons:
        for c in lesson.chunks:
            repo.upsert_chunk(
                Chunk(
                    id=c.id,
                    lesson_id=lesson.id,
                    order_index=c.orderIndex,
                    title=c.title,
                    content=c.content,
                    question=c.question,
                )
            )
            count += 1
    return count
