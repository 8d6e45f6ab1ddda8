from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx


class IngestError(RuntimeError):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


@dataclass(frozen=True)
class ChildDescriptor:
    source_type: str
    source: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IngestResult:
    chunk_count: int
    content_hash: str | None
    children: list[ChildDescriptor] = field(default_factory=list)


def parse_ingest_response(body: Any) -> IngestResult:
    if not isinstance(body, dict):
        raise IngestError("K-INGEST-BAD-RESPONSE", "Ingest service returned a non-object body")
    try:
        chunk_count = int(body.get("chunk_count") or 0)
    except (TypeError, ValueError) as exc:
        raise IngestError("K-INGEST-BAD-RESPONSE", "Ingest service returned an invalid chunk_count") from exc
    children = []
    for item in body.get("children") or []:
        if not isinstance(item, dict) or not item.get("source"):
            continue
        children.append(
            ChildDescriptor(
                source_type=str(item.get("source_type") or "url"),
                source=str(item["source"]),
                metadata=dict(item.get("metadata") or {}),
            )
        )
    content_hash = body.get("content_hash")
    return IngestResult(chunk_count=chunk_count, content_hash=str(content_hash) if content_hash else None, children=children)


class IngestClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if base_url is None or timeout_seconds is None:
            from content_sync.core.config import settings

            base_url = base_url or settings.INGEST_SERVICE_URL
            timeout_seconds = timeout_seconds or settings.INGEST_TIMEOUT_SECONDS
        self.base_url = str(base_url).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    async def ingest(
        self,
        *,
        source_id: str,
        agent_id: str,
        source_type: str,
        source: str,
        metadata: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> IngestResult:
        payload: dict[str, Any] = {
            "source_id": source_id,
            "agent_id": agent_id,
            "source_type": source_type,
            "source": source,
            "metadata": dict(metadata or {}),
        }
        if request_id is not None:
            payload["request_id"] = request_id
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/v1/ingest", json=payload)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise IngestError("K-INGEST-REJECTED", f"Ingest service returned status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise IngestError("K-INGEST-UNAVAILABLE", f"Ingest service request failed: {exc}") from exc
        except ValueError as exc:
            raise IngestError("K-INGEST-BAD-RESPONSE", "Ingest service returned invalid JSON") from exc
        return parse_ingest_response(body)
