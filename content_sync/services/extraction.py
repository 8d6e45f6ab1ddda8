from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Protocol

from content_sync.clients.llm_client import LlmClientError
from content_sync.services.field_mapper import (
    FieldType,
    RecordMappingError,
    TargetField,
    apply_mapping,
    coerce_value,
    resolve_path,
    strip_html,
)

LOGGER = logging.getLogger(__name__)

CONTENT_CHARS = 3000
CUSTOM_FIELDS_CHARS = 2000


class ParseMode(str, Enum):
    STRUCTURED = "structured"
    AI_EXTRACTION = "ai_extraction"


class JsonCompletionClient(Protocol):
    async def generate_json(self, prompt: str) -> dict[str, Any]:
        ...


class RecordParser(Protocol):
    async def parse(self, record: dict[str, Any]) -> dict[str, Any]:
        ...


def source_record_id(record: dict[str, Any]) -> str:
    raw = record.get("id") if isinstance(record, dict) else None
    if raw is None or isinstance(raw, (bool, dict, list)) or str(raw).strip() == "":
        raise RecordMappingError(None, "Remote record has no stable id")
    return str(raw).strip()


def require_fields(source_id: str, fields: dict[str, Any], target_fields: tuple[TargetField, ...] | list[TargetField]) -> None:
    missing = [field.key for field in target_fields if field.required and field.key not in fields]
    if missing:
        raise RecordMappingError(source_id, f"Record {source_id} is missing required fields: {', '.join(missing)}")


class StructuredRecordParser:
    def __init__(self, mapping: dict[str, str], target_fields: tuple[TargetField, ...] | list[TargetField]):
        self._mapping = dict(mapping)
        self._target_fields = tuple(target_fields)

    async def parse(self, record: dict[str, Any]) -> dict[str, Any]:
        source_id = source_record_id(record)
        fields = apply_mapping(record, self._mapping, self._target_fields)
        require_fields(source_id, fields, self._target_fields)
        return fields


def build_record_context(record: dict[str, Any], *, max_chars: int) -> str:
    parts: list[str] = []
    title = resolve_path(record, "title")
    if isinstance(title, str) and strip_html(title):
        parts.append(f"Title: {strip_html(title)}")
    content = resolve_path(record, "content")
    if isinstance(content, str) and strip_html(content):
        parts.append(f"Content: {strip_html(content)[:CONTENT_CHARS]}")
    excerpt = resolve_path(record, "excerpt")
    if isinstance(excerpt, str) and strip_html(excerpt):
        parts.append(f"Excerpt: {strip_html(excerpt)}")
    custom = record.get("acf")
    if isinstance(custom, dict) and custom:
        parts.append(f"Custom fields: {json.dumps(custom, ensure_ascii=False, sort_keys=True, default=str)[:CUSTOM_FIELDS_CHARS]}")
    return "\n\n".join(parts)[:max_chars]


def _describe(field: TargetField) -> str:
    hints = {
        FieldType.PRICE: "number in dollars",
        FieldType.NUMBER: "number",
        FieldType.INTEGER: "integer",
        FieldType.ARRAY: "list of strings",
        FieldType.STATUS: "one of available, pending, sold, rented, coming_soon",
    }
    suffix = " (required)" if field.required else ""
    return f"- {field.key}: {field.label}, {hints.get(field.field_type, 'string')}{suffix}"


def build_extraction_prompt(kind: str, context: str, target_fields: tuple[TargetField, ...] | list[TargetField]) -> str:
    entity = "community (residential community, manufactured home park or similar location)" if kind == "community" else "home listing"
    lines = [
        f"You are a data extraction assistant. Extract structured {entity} data from the WordPress post below.",
        "Return a single JSON object with these keys. Use null for anything that cannot be determined:",
        *(_describe(field) for field in target_fields),
        "",
        context,
    ]
    return "\n".join(lines)


class AiExtractionParser:
    def __init__(
        self,
        llm_client: JsonCompletionClient,
        kind: str,
        target_fields: tuple[TargetField, ...] | list[TargetField],
        *,
        max_content_chars: int | None = None,
    ):
        if max_content_chars is None:
            from content_sync.core.config import settings

            max_content_chars = settings.EXTRACTION_MAX_CONTENT_CHARS
        self._llm = llm_client
        self._kind = kind
        self._target_fields = tuple(target_fields)
        self._max_content_chars = int(max_content_chars)

    async def parse(self, record: dict[str, Any]) -> dict[str, Any]:
        source_id = source_record_id(record)
        context = build_record_context(record, max_chars=self._max_content_chars)
        if not context:
            raise RecordMappingError(source_id, f"Record {source_id} has no content to extract from")
        prompt = build_extraction_prompt(self._kind, context, self._target_fields)
        try:
            extracted = await self._llm.generate_json(prompt)
        except LlmClientError as exc:
            raise RecordMappingError(source_id, f"AI extraction failed for record {source_id}: {exc}") from exc
        fields: dict[str, Any] = {}
        for field in self._target_fields:
            value = coerce_value(extracted.get(field.key), field.field_type)
            if value is not None:
                fields[field.key] = value
        require_fields(source_id, fields, self._target_fields)
        LOGGER.debug(
            "ai_extraction_record_parsed",
            extra={"event": "ai_extraction_record_parsed", "source_record_id": source_id, "fields": len(fields)},
        )
        return fields


def build_parser(
    mode: ParseMode,
    *,
    kind: str,
    mapping: dict[str, str],
    target_fields: tuple[TargetField, ...] | list[TargetField],
    llm_client: JsonCompletionClient | None = None,
) -> RecordParser:
    if mode == ParseMode.AI_EXTRACTION:
        if llm_client is None:
            from content_sync.clients.llm_client import OllamaClient

            llm_client = OllamaClient()
        return AiExtractionParser(llm_client, kind, target_fields)
    return StructuredRecordParser(mapping, target_fields)
