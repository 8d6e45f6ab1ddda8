from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import delete, func, select

from content_sync.core.time_utils import ensure_utc
from content_sync.db.session import SessionFactory
from content_sync.models.models import SyncRecords


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class SyncRecord:
    id: str
    agent_id: str
    kind: str
    site_url: str
    source_record_id: str
    fields: dict[str, Any]
    content_fingerprint: str
    linked_record_id: str | None
    last_synced_at: datetime
    created_at: datetime


def _to_record(row: SyncRecords) -> SyncRecord:
    return SyncRecord(
        id=row.id,
        agent_id=row.agent_id,
        kind=row.kind,
        site_url=row.site_url,
        source_record_id=row.source_record_id,
        fields=dict(row.fields_json or {}),
        content_fingerprint=row.content_fingerprint,
        linked_record_id=row.linked_record_id,
        last_synced_at=ensure_utc(row.last_synced_at),
        created_at=ensure_utc(row.created_at),
    )


class SyncRecordRepository:
    """Records are keyed by (agent, kind, site_url, source_record_id).

    ``site_url`` filters are optional on reads; without one, every site the agent
    has ever synced from is included.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get_by_source_id(self, agent_id: str, kind: str, source_record_id: str, *, site_url: str | None = None) -> SyncRecord | None:
        stmt = select(SyncRecords).where(
            SyncRecords.agent_id == agent_id,
            SyncRecords.kind == kind,
            SyncRecords.source_record_id == source_record_id,
        )
        if site_url is not None:
            stmt = stmt.where(SyncRecords.site_url == site_url)
        with self._session_factory() as session:
            row = session.execute(stmt.order_by(SyncRecords.last_synced_at.desc(), SyncRecords.id)).scalars().first()
            return _to_record(row) if row is not None else None

    def list_for_agent(self, agent_id: str, kind: str | None = None, *, site_url: str | None = None) -> list[SyncRecord]:
        stmt = select(SyncRecords).where(SyncRecords.agent_id == agent_id)
        if kind is not None:
            stmt = stmt.where(SyncRecords.kind == kind)
        if site_url is not None:
            stmt = stmt.where(SyncRecords.site_url == site_url)
        with self._session_factory() as session:
            rows = session.execute(stmt.order_by(SyncRecords.kind, SyncRecords.source_record_id, SyncRecords.site_url)).scalars().all()
            return [_to_record(row) for row in rows]

    def count(self, agent_id: str, kind: str | None = None) -> int:
        stmt = select(func.count()).select_from(SyncRecords).where(SyncRecords.agent_id == agent_id)
        if kind is not None:
            stmt = stmt.where(SyncRecords.kind == kind)
        with self._session_factory() as session:
            return int(session.execute(stmt).scalar_one())

    def fingerprints(self, agent_id: str, kind: str, *, site_url: str | None = None) -> list[str]:
        stmt = select(SyncRecords.content_fingerprint).where(SyncRecords.agent_id == agent_id, SyncRecords.kind == kind)
        if site_url is not None:
            stmt = stmt.where(SyncRecords.site_url == site_url)
        with self._session_factory() as session:
            rows = session.execute(stmt.order_by(SyncRecords.source_record_id)).all()
            return [str(row[0]) for row in rows]

    def upsert(
        self,
        *,
        agent_id: str,
        kind: str,
        site_url: str,
        source_record_id: str,
        fields: dict[str, Any],
        fingerprint: str,
        now: datetime,
        linked_record_id: str | None = None,
    ) -> UpsertOutcome:
        with self._session_factory() as session:
            with session.begin():
                row = session.execute(
                    select(SyncRecords)
                    .where(
                        SyncRecords.agent_id == agent_id,
                        SyncRecords.kind == kind,
                        SyncRecords.site_url == site_url,
                        SyncRecords.source_record_id == source_record_id,
                    )
                    .with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    session.add(
                        SyncRecords(
                            agent_id=agent_id,
                            kind=kind,
                            site_url=site_url,
                            source_record_id=source_record_id,
                            linked_record_id=linked_record_id,
                            fields_json=fields,
                            content_fingerprint=fingerprint,
                            last_synced_at=now,
                            created_at=now,
                        )
                    )
                    return UpsertOutcome.INSERTED
                if row.content_fingerprint == fingerprint and row.linked_record_id == linked_record_id:
                    return UpsertOutcome.UNCHANGED
                row.fields_json = fields
                row.content_fingerprint = fingerprint
                row.linked_record_id = linked_record_id
                row.last_synced_at = now
                return UpsertOutcome.UPDATED

    def delete_records(self, agent_id: str, record_ids: list[str]) -> int:
        if not record_ids:
            return 0
        with self._session_factory() as session:
            with session.begin():
                result = session.execute(
                    delete(SyncRecords).where(SyncRecords.agent_id == agent_id, SyncRecords.id.in_(record_ids))
                )
                return int(result.rowcount or 0)

    def delete_for_agent(self, agent_id: str) -> int:
        with self._session_factory() as session:
            with session.begin():
                result = session.execute(delete(SyncRecords).where(SyncRecords.agent_id == agent_id))
                return int(result.rowcount or 0)
