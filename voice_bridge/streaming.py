from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Sequence
from dataclasses import asdict, dataclass, replace
from typing import Any

from voice_bridge.orchestrator import TurnResult
from voice_bridge.schemas import WebhookMessage

logger = logging.getLogger(__name__)

DONE_LINE = "data: [DONE]\n\n"


@dataclass(frozen=True)
class VoiceSettings:
    stability: float = 0.6
    similarity_boost: float = 0.8
    style: float = 0.4
    use_speaker_boost: bool = True
    speed: float = 0.85

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


BASE_VOICE = VoiceSettings()

# First matching row wins.
VOICE_PRESETS: tuple[tuple[tuple[str, ...], VoiceSettings], ...] = (
    (("!", "excited", "great"), replace(BASE_VOICE, stability=0.4, similarity_boost=0.85, style=0.6)),
    (
        ("concern", "worry", "difficult"),
        replace(BASE_VOICE, stability=0.7, similarity_boost=0.75, style=0.3, speed=0.8),
    ),
)


def select_voice_settings(text: str) -> VoiceSettings:
    lowered = text.lower()
    for keywords, preset in VOICE_PRESETS:
        if any(k in lowered for k in keywords):
            return preset
    return BASE_VOICE


def sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _estimate_tokens(text: str) -> int:
    return len(text) // 4


class ResponseStreamAdapter:
    """
    Serializes a TurnResult as OpenAI-style `chat.completion.chunk` frames.

    Burst mode sends one content frame; a positive `word_delay` switches to
    word-by-word frames paced by that many seconds.
    """

    def __init__(self, model_label: str, *, word_delay: float = 0.0) -> None:
        self.model_label = model_label
        self.word_delay = word_delay

    def _metadata(self, result: TurnResult) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "interruptible": result.interruptible,
            "isChunkDelivery": result.is_chunk_delivery,
            "voiceSettings": select_voice_settings(result.text).to_dict(),
        }
        if result.cited_sources:
            meta["citedSources"] = [s.to_dict() for s in result.cited_sources]
        return meta

    def _pieces(self, text: str) -> list[str]:
        if self.word_delay <= 0:
            return [text]
        words = text.split(" ")
        return [w + (" " if i < len(words) - 1 else "") for i, w in enumerate(words)]

    def frames(self, result: TurnResult, *, model: str | None = None) -> list[dict[str, Any]]:
        frame_id = f"chatcmpl-{uuid.uuid4().hex}"
        created = int(time.time())
        label = model or self.model_label

        def frame(delta: dict[str, Any], finish_reason: str | None, metadata: dict[str, Any] | None = None):
            out: dict[str, Any] = {
                "id": frame_id,
                "object": "chat.completion.chunk",
                "created": created,
                "model": label,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            }
            if metadata is not None:
                out["metadata"] = metadata
            return out

        meta = self._metadata(result)
        out = [frame({"role": "assistant", "content": ""}, None)]
        out.extend(frame({"content": piece}, None, meta) for piece in self._pieces(result.text))
        out.append(frame({}, "stop"))
        return out

    async def stream(self, result: TurnResult, *, model: str | None = None) -> AsyncIterator[str]:
        frames = self.frames(result, model=model)
        finished = False
        try:
            for i, f in enumerate(frames):
                is_content = 0 < i < len(frames) - 1
                if is_content and i > 1 and self.word_delay > 0:
                    await asyncio.sleep(self.word_delay)
                yield sse(f)
            yield DONE_LINE
            finished = True
        finally:
            if not finished:
                logger.debug("Client went away before the stream finished")

    def completion(
        self,
        result: TurnResult,
        messages: Sequence[WebhookMessage],
        *,
        model: str | None = None,
    ) -> dict[str, Any]:
        prompt_tokens = sum(_estimate_tokens(m.content) for m in messages)
        completion_tokens = _estimate_tokens(result.text)
        return {
            "id": f"chatcmpl-{uuid.uuid4().hex}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": model or self.model_label,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": result.text},
                    "finish_reason": "stop",
                }
            ],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
            "metadata": self._metadata(result),
        }
