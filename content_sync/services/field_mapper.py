"""Field mapping between arbitrary remote records and the canonical community/home schemas.

Suggestion scoring is deterministic. Both the target key and the candidate name are
lower-cased and stripped of punctuation, then compared as:

* identical compact forms score ``1.0``;
* when every target token appears in the candidate, ``0.85 + 0.15 * |target| / |candidate|``;
* otherwise ``difflib.SequenceMatcher`` ratio scaled by ``FUZZY_WEIGHT``.

The candidate name is the last path segment (the parent segment for WordPress
``rendered``/``raw`` wrappers). Alias hits are scaled by ``ALIAS_WEIGHT`` and a match
against the full dotted path by ``FULL_PATH_WEIGHT``. Ties resolve to the shortest path,
then lexical order.
"""

from __future__ import annotations

import html
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from difflib import SequenceMatcher
from enum import Enum
from typing import Any

from content_sync.db.repositories.field_mappings import FieldMappingRepository, StoredFieldMapping
from content_sync.db.session import SessionFactory

LOGGER = logging.getLogger(__name__)

ALIAS_WEIGHT = 0.85
FULL_PATH_WEIGHT = 0.95
FUZZY_WEIGHT = 0.8
SKIPPED_KEYS = frozenset({"_links", "_embedded"})
WRAPPER_SEGMENTS = frozenset({"rendered", "raw"})

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"<\s*(script|style)\b[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)
_BREAK_RE = re.compile(r"<\s*(br|/p|/div|/li|/h[1-6])\b[^>]*>", re.IGNORECASE)
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_ARRAY_SPLIT_RE = re.compile(r"[,;\n]+")


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    INTEGER = "integer"
    PRICE = "price"
    ARRAY = "array"
    STATUS = "status"


class MappingIncompleteError(ValueError):
    error_code = "M-MAPPING-INCOMPLETE"

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Required fields are not mapped: {', '.join(missing)}")
        self.missing = missing


class RecordMappingError(ValueError):
    error_code = "M-RECORD-INVALID"

    def __init__(self, source_record_id: str | None, message: str) -> None:
        super().__init__(message)
        self.source_record_id = source_record_id
        self.message = message


@dataclass(frozen=True)
class TargetField:
    key: str
    label: str
    field_type: FieldType = FieldType.TEXT
    required: bool = False
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class AvailableField:
    path: str
    sample_value: Any
    value_type: str


@dataclass(frozen=True)
class MappingSuggestion:
    target_key: str
    source_path: str
    score: float


COMMUNITY_FIELDS: tuple[TargetField, ...] = (
    TargetField("name", "Community name", required=True, aliases=("title", "community_name")),
    TargetField("address", "Address", aliases=("street", "street_address", "address_1", "address_line_1")),
    TargetField("city", "City", aliases=("town",)),
    TargetField("state", "State", aliases=("province", "region")),
    TargetField("zip", "ZIP code", aliases=("zipcode", "postal", "postal_code", "postcode")),
    TargetField("phone", "Phone", aliases=("telephone", "phone_number", "tel")),
    TargetField("email", "Email", aliases=("email_address", "contact_email")),
    TargetField("description", "Description", aliases=("content", "excerpt", "about")),
    TargetField("amenities", "Amenities", FieldType.ARRAY, aliases=("features", "facilities")),
    TargetField("pet_policy", "Pet policy", aliases=("pets", "pet_friendly")),
    TargetField("age_category", "Age category", aliases=("age_restriction", "age")),
    TargetField("utilities_included", "Utilities included", aliases=("utilities",)),
)

PROPERTY_FIELDS: tuple[TargetField, ...] = (
    TargetField("name", "Home name", aliases=("title",)),
    TargetField("address", "Address", aliases=("street", "street_address", "address_1")),
    TargetField("lot_number", "Lot number", aliases=("lot", "lot_no", "site_number")),
    TargetField("city", "City", aliases=("town",)),
    TargetField("state", "State", aliases=("province", "region")),
    TargetField("zip", "ZIP code", aliases=("zipcode", "postal", "postal_code", "postcode")),
    TargetField("price", "Price", FieldType.PRICE, aliases=("asking_price", "list_price", "sale_price")),
    TargetField("price_type", "Price type", aliases=("pricing_type", "sale_type")),
    TargetField("beds", "Bedrooms", FieldType.NUMBER, aliases=("bedrooms", "bed")),
    TargetField("baths", "Bathrooms", FieldType.NUMBER, aliases=("bathrooms", "bath")),
    TargetField("sqft", "Square feet", FieldType.INTEGER, aliases=("square_feet", "sq_ft", "square_footage", "size")),
    TargetField("year_built", "Year built", FieldType.INTEGER, aliases=("year", "build_year")),
    TargetField("manufacturer", "Manufacturer", aliases=("make", "builder", "brand")),
    TargetField("model", "Model", aliases=("model_name",)),
    TargetField("lot_rent", "Lot rent", FieldType.PRICE, aliases=("site_rent", "space_rent")),
    TargetField("status", "Status", FieldType.STATUS, aliases=("availability", "listing_status")),
    TargetField("virtual_tour_url", "Virtual tour URL", aliases=("virtual_tour", "tour_url")),
    TargetField("community_name", "Community name", aliases=("community", "park", "park_name")),
    TargetField("community_type", "Community type", aliases=("park_type",)),
    TargetField("description", "Description", aliases=("content", "excerpt")),
    TargetField("features", "Features", FieldType.ARRAY, aliases=("amenities",)),
)

TARGET_FIELDS: dict[str, tuple[TargetField, ...]] = {"community": COMMUNITY_FIELDS, "home": PROPERTY_FIELDS}


def target_fields_for(kind: str) -> tuple[TargetField, ...]:
    try:
        return TARGET_FIELDS[kind]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {kind}") from None


# --- discovery of source paths ---


def _value_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def extract_available_fields(sample_record: dict[str, Any]) -> list[AvailableField]:
    """Flatten a sample record into dotted paths a mapping can point at."""
    fields: list[AvailableField] = []

    def walk(value: Any, path: str) -> None:
        if isinstance(value, dict):
            if path:
                fields.append(AvailableField(path=path, sample_value=None, value_type="object"))
            for key in sorted(value):
                if key in SKIPPED_KEYS:
                    continue
                walk(value[key], f"{path}.{key}" if path else str(key))
            return
        if isinstance(value, list):
            if value and isinstance(value[0], dict):
                walk(value[0], f"{path}.0")
                return
            fields.append(AvailableField(path=path, sample_value=list(value), value_type="array"))
            return
        fields.append(AvailableField(path=path, sample_value=value, value_type=_value_type(value)))

    walk(sample_record if isinstance(sample_record, dict) else {}, "")
    return fields


# --- suggestion scoring ---


def _tokens(value: str) -> list[str]:
    return [token for token in _NON_ALNUM_RE.split(value.lower()) if token]


def _leaf_name(path: str) -> str:
    segments = [segment for segment in path.split(".") if segment and not segment.isdigit()]
    if not segments:
        return path
    if len(segments) > 1 and segments[-1].lower() in WRAPPER_SEGMENTS:
        return segments[-2]
    return segments[-1]


def name_similarity(target: str, candidate: str) -> float:
    target_tokens = _tokens(target)
    candidate_tokens = _tokens(candidate)
    if not target_tokens or not candidate_tokens:
        return 0.0
    target_compact = "".join(target_tokens)
    candidate_compact = "".join(candidate_tokens)
    if target_compact == candidate_compact:
        return 1.0
    if set(target_tokens) <= set(candidate_tokens):
        return 0.85 + 0.15 * len(set(target_tokens)) / len(set(candidate_tokens))
    return SequenceMatcher(None, target_compact, candidate_compact).ratio() * FUZZY_WEIGHT


def score_field(target: TargetField, source_path: str) -> float:
    leaf = _leaf_name(source_path)
    best = name_similarity(target.key, leaf)
    for alias in target.aliases:
        best = max(best, name_similarity(alias, leaf) * ALIAS_WEIGHT)
    best = max(best, name_similarity(target.key, source_path) * FULL_PATH_WEIGHT)
    return best


def rank_candidates(target: TargetField, available_fields: list[AvailableField]) -> list[MappingSuggestion]:
    suggestions = [
        MappingSuggestion(target_key=target.key, source_path=field.path, score=round(score_field(target, field.path), 6))
        for field in available_fields
        if field.path and field.value_type != "object"
    ]
    suggestions.sort(key=lambda item: (-item.score, len(item.source_path), item.source_path))
    return suggestions


def suggest_mapping(
    target_fields: tuple[TargetField, ...] | list[TargetField],
    available_fields: list[AvailableField],
    *,
    min_confidence: float | None = None,
) -> dict[str, str]:
    """Propose a source path for each target field; fields below the threshold are left unmapped."""
    if min_confidence is None:
        from content_sync.core.config import settings

        min_confidence = settings.FIELD_MAPPING_MIN_CONFIDENCE
    mapping: dict[str, str] = {}
    for target in target_fields:
        ranked = rank_candidates(target, available_fields)
        if ranked and ranked[0].score >= min_confidence:
            mapping[target.key] = ranked[0].source_path
    return mapping


# --- validation ---


def missing_required(mapping: dict[str, str], target_fields: tuple[TargetField, ...] | list[TargetField]) -> list[str]:
    return [field.key for field in target_fields if field.required and not (mapping.get(field.key) or "").strip()]


def validate(mapping: dict[str, str], target_fields: tuple[TargetField, ...] | list[TargetField]) -> bool:
    return not missing_required(mapping, target_fields)


def clean_mapping(mapping: dict[str, str], target_fields: tuple[TargetField, ...] | list[TargetField]) -> dict[str, str]:
    known = {field.key for field in target_fields}
    return {key: value.strip() for key, value in mapping.items() if key in known and value and value.strip()}


def confirm(mapping: dict[str, str], target_fields: tuple[TargetField, ...] | list[TargetField]) -> dict[str, str]:
    missing = missing_required(mapping, target_fields)
    if missing:
        raise MappingIncompleteError(missing)
    return clean_mapping(mapping, target_fields)


# --- applying a mapping ---


def strip_html(value: str) -> str:
    text = _BLOCK_RE.sub(" ", value)
    text = _BREAK_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return "\n".join(line for line in lines if line).strip()


def resolve_path(record: Any, path: str) -> Any:
    current = record
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    if isinstance(current, dict) and "rendered" in current:
        current = current.get("rendered")
    return current


def normalize_listing_status(value: str) -> str:
    lowered = value.lower()
    if "sold" in lowered:
        return "sold"
    if "pending" in lowered or "under contract" in lowered:
        return "pending"
    if "rent" in lowered:
        return "rented"
    if "coming" in lowered or "soon" in lowered:
        return "coming_soon"
    return "available"


def _to_text(value: Any) -> str | None:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return str(value)
    if isinstance(value, str):
        return strip_html(value) or None
    if isinstance(value, list):
        parts = [_to_text(item) for item in value if not isinstance(item, (dict, list))]
        joined = ", ".join(part for part in parts if part)
        return joined or None
    return None


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return Decimal(str(value))
    if isinstance(value, str):
        cleaned = value.replace(",", "").replace("$", "").replace(" ", "")
        match = _NUMBER_RE.search(cleaned)
        if not match:
            return None
        try:
            return Decimal(match.group(0))
        except InvalidOperation:
            return None
    return None


def _to_number(value: Any) -> int | float | None:
    parsed = _to_decimal(value)
    if parsed is None:
        return None
    if parsed == parsed.to_integral_value():
        return int(parsed)
    return float(parsed)


def _to_integer(value: Any) -> int | None:
    parsed = _to_decimal(value)
    if parsed is None:
        return None
    return int(parsed.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_minor_units(value: Any) -> int | None:
    parsed = _to_decimal(value)
    if parsed is None:
        return None
    return int((parsed * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _array_item(item: Any) -> str | None:
    if isinstance(item, dict):
        for key in ("name", "label", "value", "title"):
            if item.get(key) not in (None, ""):
                return _to_text(resolve_path(item, key))
        return None
    if isinstance(item, list):
        return None
    return _to_text(item)


def _to_array(value: Any) -> list[str] | None:
    if isinstance(value, list):
        items = [_array_item(item) for item in value]
    elif isinstance(value, str):
        items = [_to_text(part) for part in _ARRAY_SPLIT_RE.split(strip_html(value))]
    elif isinstance(value, dict):
        items = [_array_item(value)]
    else:
        items = [_to_text(value)]
    cleaned = [item for item in items if item]
    return cleaned or None


def coerce_value(value: Any, field_type: FieldType) -> Any:
    if value is None:
        return None
    if field_type == FieldType.NUMBER:
        return _to_number(value)
    if field_type == FieldType.INTEGER:
        return _to_integer(value)
    if field_type == FieldType.PRICE:
        return _to_minor_units(value)
    if field_type == FieldType.ARRAY:
        return _to_array(value)
    text = _to_text(value)
    if text is not None and field_type == FieldType.STATUS:
        return normalize_listing_status(text)
    return text


def apply_mapping(
    remote_record: dict[str, Any],
    mapping: dict[str, str],
    target_fields: tuple[TargetField, ...] | list[TargetField],
) -> dict[str, Any]:
    """Project ``remote_record`` onto the target schema. Unmapped or unparseable fields are absent."""
    canonical: dict[str, Any] = {}
    for field in target_fields:
        path = (mapping.get(field.key) or "").strip()
        if not path:
            continue
        value = coerce_value(resolve_path(remote_record, path), field.field_type)
        if value is not None:
            canonical[field.key] = value
    return canonical


class FieldMappingStore:
    """Per (agent, kind) persistence of mappings; editing a mapping never touches synced records."""

    def __init__(self, session_factory: SessionFactory):
        self._repository = FieldMappingRepository(session_factory)

    def load(self, agent_id: str, kind: str) -> StoredFieldMapping | None:
        return self._repository.get(agent_id, kind)

    def save_draft(self, agent_id: str, kind: str, mapping: dict[str, str], *, now: datetime) -> dict[str, str]:
        cleaned = clean_mapping(mapping, target_fields_for(kind))
        self._repository.save(agent_id, kind, cleaned, confirmed=False, now=now)
        return cleaned

    def confirm(self, agent_id: str, kind: str, mapping: dict[str, str], *, now: datetime) -> dict[str, str]:
        cleaned = confirm(mapping, target_fields_for(kind))
        self._repository.save(agent_id, kind, cleaned, confirmed=True, now=now)
        LOGGER.info(
            "field_mapping_confirmed",
            extra={"event": "field_mapping_confirmed", "agent_id": agent_id, "kind": kind, "mapped_fields": len(cleaned)},
        )
        return cleaned
