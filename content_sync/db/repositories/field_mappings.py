from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import delete

from content_sync.core.time_utils import ensure_utc
from content_sync.db.session import SessionFactory
from content_sync.models.models import FieldMappings


@dataclass(frozen=True)
class StoredFieldMapping:
    agent_id: str
    kind: str
    mapping: dict[str, str] = field(default_factory=dict)
    confirmed: bool = False
    updated_at: datetime | None = None


class FieldMappingRepository:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get(self, agent_id: str, kind: str) -> StoredFieldMapping | None:
        with self._session_factory() as session:
            row = session.get(FieldMappings, (agent_id, kind))
            if row is None:
                return None
            return StoredFieldMapping(
                agent_id=row.agent_id,
                kind=row.kind,
                mapping={str(k): str(v) for k, v in (row.mapping_json or {}).items() if v},
                confirmed=bool(row.confirmed),
                updated_at=ensure_utc(row.updated_at),
            )

    def save(self, agent_id: str, kind: str, mapping: dict[str, str], *, confirmed: bool, now: datetime) -> None:
        cleaned = {key: value for key, value in mapping.items() if value}
        with self._session_factory() as session:
            with session.begin():
                row = session.get(FieldMappings, (agent_id, kind), with_for_update=True)
                if row is None:
                    session.add(FieldMappings(agent_id=agent_id, kind=kind, mapping_json=cleaned, confirmed=confirmed, updated_at=now))
                    return
                row.mapping_json = cleaned
                row.confirmed = confirmed
                row.updated_at = now

    def delete_for_agent(self, agent_id: str) -> int:
        with self._session_factory() as session:
            with session.begin():
                result = session.execute(delete(FieldMappings).where(FieldMappings.agent_id == agent_id))
                return int(result.rowcount or 0)
