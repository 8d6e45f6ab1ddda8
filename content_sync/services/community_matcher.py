from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from content_sync.db.repositories.sync_records import SyncRecord

COMMUNITY_REFERENCE_KEYS = ("home_community", "community_id", "community")


class MatchStrategy(str, Enum):
    COMMUNITY_ID = "community_id"
    CITY_STATE = "city_state"
    NAME = "name"
    PARTIAL_NAME = "partial_name"


@dataclass(frozen=True)
class CommunityMatch:
    record_id: str
    strategy: MatchStrategy


def _normalize(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).lower().split())


@dataclass(frozen=True)
class CommunityIndex:
    """Lookup tables over the synced communities of one site.

    When two communities share a key, the one with the lowest remote id wins.
    """

    by_source_id: dict[str, str] = field(default_factory=dict)
    by_city_state: dict[tuple[str, str], str] = field(default_factory=dict)
    by_name: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: Iterable[SyncRecord]) -> CommunityIndex:
        index = cls()
        for record in sorted(records, key=_remote_order):
            index.by_source_id.setdefault(record.source_record_id, record.id)
            city, state = _normalize(record.fields.get("city")), _normalize(record.fields.get("state"))
            if city and state:
                index.by_city_state.setdefault((city, state), record.id)
            name = _normalize(record.fields.get("name"))
            if name:
                index.by_name.setdefault(name, record.id)
        return index

    def __bool__(self) -> bool:
        return bool(self.by_source_id)


def _remote_order(record: SyncRecord) -> tuple[int, int, str]:
    source_id = record.source_record_id
    return (0, int(source_id), source_id) if source_id.isdecimal() else (1, 0, source_id)


def community_references(remote_record: dict[str, Any]) -> list[str]:
    """Remote community ids a home points at, e.g. WordPress ``home_community`` taxonomy terms."""
    for key in COMMUNITY_REFERENCE_KEYS:
        value = remote_record.get(key)
        if value in (None, "", []):
            continue
        values = value if isinstance(value, list) else [value]
        references = []
        for item in values:
            if isinstance(item, dict):
                item = item.get("id")
            if isinstance(item, bool) or item in (None, ""):
                continue
            references.append(str(item).strip())
        if references:
            return references
    return []


def match_community(
    index: CommunityIndex,
    *,
    community_ids: list[str],
    city: Any = None,
    state: Any = None,
    community_name: Any = None,
) -> CommunityMatch | None:
    """Resolve a home to a synced community: remote id, then city and state, then name."""
    for community_id in community_ids:
        record_id = index.by_source_id.get(community_id)
        if record_id is not None:
            return CommunityMatch(record_id=record_id, strategy=MatchStrategy.COMMUNITY_ID)

    city_key, state_key = _normalize(city), _normalize(state)
    if city_key and state_key:
        record_id = index.by_city_state.get((city_key, state_key))
        if record_id is not None:
            return CommunityMatch(record_id=record_id, strategy=MatchStrategy.CITY_STATE)

    name = _normalize(community_name)
    if not name:
        return None
    record_id = index.by_name.get(name)
    if record_id is not None:
        return CommunityMatch(record_id=record_id, strategy=MatchStrategy.NAME)
    # longest community name first so "Oak Hollow Estates" beats "Oak"
    for candidate in sorted(index.by_name, key=lambda item: (-len(item), item)):
        if candidate in name or name in candidate:
            return CommunityMatch(record_id=index.by_name[candidate], strategy=MatchStrategy.PARTIAL_NAME)
    return None
