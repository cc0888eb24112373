from __future__ import annotations

from collections.abc import Sequence

from google import genai
from google.genai import types

from voice_bridge.settings import Settings, load_settings


class GeminiClient:
    """Async Gemini access with an API key, or through Vertex when only a project is configured."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or load_settings()
        self.model = settings.gemini_model

        if settings.google_api_key:
            self.client = genai.Client(api_key=settings.google_api_key)
        elif settings.google_cloud_project:
            self.client = genai.Client(
                vertexai=True,
                project=settings.google_cloud_project,
                location=settings.google_cloud_location,
            )
        else:
            raise RuntimeError("Gemini is not configured: set GOOGLE_API_KEY or GOOGLE_CLOUD_PROJECT.")

    async def generate_text(
        self,
        *,
        system: str,
        turns: Sequence[dict[str, str]],
        temperature: float = 0.6,
    ) -> str:
        """
        `turns` are [{"role": "user"|"assistant", "content": "..."}] in chronological order.
        """
        contents = [
            types.Content(
                role="user" if t.get("role") == "user" else "model",
                parts=[types.Part(text=t.get("content") or "")],
            )
            for t in turns
            if (t.get("content") or "").strip()
        ]
        if not contents:
            raise ValueError("Nothing to send to the model")

        # Configured model first, then older stable names.
        candidates = [self.model, "gemini-1.5-flash", "gemini-1.5-pro-002", "gemini-1.5-pro"]

        last_err: Exception | None = None
        resp = None
        tried: set[str] = set()
        for m in candidates:
            if not m or m in tried:
                continue
            tried.add(m)
            try:
                resp = await self.client.aio.models.generate_content(
                    model=m,
                    contents=contents,
                    config=types.GenerateContentConfig(
                        system_instruction=system,
                        temperature=temperature,
                    ),
                )
                break
            except Exception as e:
                last_err = e
                msg = str(e)
                # Anything other than a missing model is a real failure.
                if "NOT_FOUND" in msg or "was not found" in msg or "does not have access" in msg:
                    continue
                raise

        if resp is None:
            raise RuntimeError(f"All model candidates failed. Last error: {last_err}")

        text = (resp.text or "").strip()
        if not text:
            raise RuntimeError("Model returned an empty response")
        return text
