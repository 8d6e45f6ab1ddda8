from __future__ import annotations

import hashlib
import logging

import httpx

from content_sync.db.repositories.knowledge_sources import KnowledgeSource

LOGGER = logging.getLogger(__name__)

HASHED_SOURCE_TYPES = frozenset({"url", "sitemap"})


def content_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


class HttpContentHasher:
    """Hashes the current upstream body of URL-backed sources. Other source types return None."""

    def __init__(self, timeout_seconds: float | None = None, transport: httpx.AsyncBaseTransport | None = None):
        if timeout_seconds is None:
            from content_sync.core.config import settings

            timeout_seconds = settings.KNOWLEDGE_FETCH_TIMEOUT_SECONDS
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    async def current_hash(self, source: KnowledgeSource) -> str | None:
        if source.source_type not in HASHED_SOURCE_TYPES:
            return None
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.get(source.source, follow_redirects=True)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "knowledge_hash_failed",
                extra={"event": "knowledge_hash_failed", "source_id": source.id, "error_message": str(exc)[:512]},
            )
            return None
        return content_hash(response.content)
