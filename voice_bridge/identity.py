from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from voice_bridge.session_store import Identity, LatestSessionStore

logger = logging.getLogger(__name__)

# A carrier strategy looks at one place in the request and returns a conversation id or None.
CarrierStrategy = Callable[[Mapping[str, str], Mapping[str, Any]], "str | None"]


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def header_carrier(name: str) -> CarrierStrategy:
    lowered = name.lower()

    def extract(headers: Mapping[str, str], body: Mapping[str, Any]) -> str | None:
        for key, value in headers.items():
            if key.lower() == lowered:
                return _clean(value)
        return None

    extract.__name__ = f"header:{lowered}"
    return extract


def body_carrier(*path: str) -> CarrierStrategy:
    def extract(headers: Mapping[str, str], body: Mapping[str, Any]) -> str | None:
        node: Any = body
        for key in path:
            if not isinstance(node, Mapping):
                return None
            node = node.get(key)
        return _clean(node)

    extract.__name__ = "body:" + ".".join(path)
    return extract


DEFAULT_CARRIERS: tuple[CarrierStrategy, ...] = (
    header_carrier("conversation_id"),
    header_carrier("x-conversation-id"),
    header_carrier("x-elevenlabs-conversation-id"),
    body_carrier("conversation_id"),
    body_carrier("variables", "conversation_id"),
    body_carrier("metadata", "conversation_id"),
)


class SessionIdentityResolver:
    """
    Works out which logical conversation an inbound webhook belongs to.

    Carriers are tried in order and the first non-empty value wins. With no
    carrier present, the shared "latest session" pointer is polled with
    exponential backoff. Resolution never raises and never mutates state.
    """

    def __init__(
        self,
        latest: LatestSessionStore,
        *,
        carriers: Sequence[CarrierStrategy] = DEFAULT_CARRIERS,
        max_retries: int = 3,
        backoff_base: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.latest = latest
        self.carriers = list(carriers)
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep

    def extract_conversation_id(
        self, headers: Mapping[str, str], body: Mapping[str, Any]
    ) -> tuple[str, str] | None:
        for carrier in self.carriers:
            try:
                value = carrier(headers, body)
            except Exception:
                logger.exception("Identity carrier %s failed", getattr(carrier, "__name__", carrier))
                continue
            if value:
                return value, getattr(carrier, "__name__", "carrier")
        return None

    async def resolve_identity(
        self, headers: Mapping[str, str], body: Mapping[str, Any]
    ) -> Identity | None:
        found = self.extract_conversation_id(headers, body)
        if found is not None:
            conversation_id, source = found
            logger.info("Conversation id %s resolved from %s", conversation_id, source)
            return Identity(conversation_id=conversation_id, source=source)
        return await self.resolve_latest_session(self.max_retries, self.backoff_base)

    async def resolve_latest_session(self, max_retries: int, backoff_base: float) -> Identity | None:
        for attempt in range(max_retries):
            try:
                identity = await self.latest.read_latest()
            except Exception:
                logger.exception("Latest-session read failed (attempt %d)", attempt + 1)
                identity = None
            if identity is not None:
                logger.info(
                    "Resolved latest session %s on attempt %d", identity.session_id, attempt + 1
                )
                return identity
            if attempt < max_retries - 1:
                delay = backoff_base * (2**attempt)
                logger.debug("No latest session yet, retrying in %.3fs", delay)
                await self._sleep(delay)
        logger.warning("Could not resolve a session after %d attempts", max_retries)
        return None
