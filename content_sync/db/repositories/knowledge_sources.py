from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import aliased

from content_sync.core.time_utils import ensure_utc
from content_sync.db.errors import SourceNotFoundError
from content_sync.db.session import SessionFactory
from content_sync.models.models import KnowledgeSources


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    TAKEN_OVER = "taken_over"
    BUSY = "busy"
    MISSING = "missing"


@dataclass(frozen=True)
class NewChildSource:
    source_type: str
    source: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class KnowledgeSource:
    id: str
    agent_id: str
    parent_id: str | None
    source_type: str
    source: str
    status: str
    error_message: str | None
    chunk_count: int
    last_content_hash: str | None
    last_synced_at: datetime | None
    refresh_interval: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_parent(self) -> bool:
        return self.parent_id is None


def _to_source(row: KnowledgeSources) -> KnowledgeSource:
    return KnowledgeSource(
        id=row.id,
        agent_id=row.agent_id,
        parent_id=row.parent_id,
        source_type=row.source_type,
        source=row.source,
        status=row.status,
        error_message=row.error_message,
        chunk_count=int(row.chunk_count or 0),
        last_content_hash=row.last_content_hash,
        last_synced_at=ensure_utc(row.last_synced_at),
        refresh_interval=row.refresh_interval,
        metadata=dict(row.metadata_json or {}),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


class KnowledgeSourceRepository:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get(self, source_id: str) -> KnowledgeSource | None:
        with self._session_factory() as session:
            row = session.get(KnowledgeSources, source_id)
            return _to_source(row) if row is not None else None

    def require(self, source_id: str) -> KnowledgeSource:
        source = self.get(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    def list_for_agent(self, agent_id: str) -> list[KnowledgeSource]:
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(KnowledgeSources)
                    .where(KnowledgeSources.agent_id == agent_id)
                    .order_by(KnowledgeSources.created_at, KnowledgeSources.id)
                )
                .scalars()
                .all()
            )
            return [_to_source(row) for row in rows]

    def list_all(self) -> list[KnowledgeSource]:
        with self._session_factory() as session:
            rows = (
                session.execute(select(KnowledgeSources).order_by(KnowledgeSources.agent_id, KnowledgeSources.created_at, KnowledgeSources.id))
                .scalars()
                .all()
            )
            return [_to_source(row) for row in rows]

    def find_parent(self, agent_id: str, source_type: str, source: str) -> KnowledgeSource | None:
        with self._session_factory() as session:
            row = (
                session.execute(
                    select(KnowledgeSources).where(
                        KnowledgeSources.agent_id == agent_id,
                        KnowledgeSources.parent_id.is_(None),
                        KnowledgeSources.source_type == source_type,
                        KnowledgeSources.source == source,
                    )
                )
                .scalars()
                .first()
            )
            return _to_source(row) if row is not None else None

    def create(
        self,
        *,
        agent_id: str,
        source_type: str,
        source: str,
        now: datetime,
        parent_id: str | None = None,
        refresh_interval: str = "manual",
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeSource:
        with self._session_factory() as session:
            with session.begin():
                row = KnowledgeSources(
                    agent_id=agent_id,
                    parent_id=parent_id,
                    source_type=source_type,
                    source=source,
                    status="pending",
                    chunk_count=0,
                    refresh_interval=refresh_interval,
                    metadata_json=dict(metadata or {}),
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                return _to_source(row)

    def try_mark_processing(self, source_id: str, *, now: datetime, stale_before: datetime | None = None) -> ClaimOutcome:
        """Compare-and-set ``status`` to ``processing``.

        A source already ``processing`` is only claimed when its ``updated_at`` is older
        than ``stale_before``; that claim reports ``TAKEN_OVER``.
        """
        claimable = KnowledgeSources.status != "processing"
        if stale_before is not None:
            claimable = or_(claimable, KnowledgeSources.updated_at < stale_before)
        with self._session_factory() as session:
            with session.begin():
                previous = session.execute(select(KnowledgeSources.status).where(KnowledgeSources.id == source_id)).scalar_one_or_none()
                if previous is None:
                    return ClaimOutcome.MISSING
                result = session.execute(
                    update(KnowledgeSources)
                    .where(KnowledgeSources.id == source_id, claimable)
                    .values(status="processing", error_message=None, updated_at=now)
                )
                if result.rowcount != 1:
                    return ClaimOutcome.BUSY
                return ClaimOutcome.TAKEN_OVER if previous == "processing" else ClaimOutcome.CLAIMED

    def complete_processing(
        self,
        source_id: str,
        *,
        content_hash: str | None,
        chunk_count: int,
        children: list[NewChildSource],
        now: datetime,
    ) -> int | None:
        """Mark a source ready and attach newly discovered children in one transaction.

        The source row is locked first; returns None when it was deleted meanwhile,
        otherwise the number of children added.
        """
        with self._session_factory() as session:
            with session.begin():
                row = session.get(KnowledgeSources, source_id, with_for_update=True)
                if row is None:
                    return None
                row.status = "ready"
                row.error_message = None
                row.last_content_hash = content_hash
                row.chunk_count = chunk_count
                row.last_synced_at = now
                row.updated_at = now
                if row.parent_id is not None or not children:
                    return 0
                known = set(
                    session.execute(select(KnowledgeSources.source).where(KnowledgeSources.parent_id == source_id)).scalars().all()
                )
                added = 0
                for child in children:
                    if child.source in known:
                        continue
                    known.add(child.source)
                    session.add(
                        KnowledgeSources(
                            agent_id=row.agent_id,
                            parent_id=row.id,
                            source_type=child.source_type,
                            source=child.source,
                            status="pending",
                            chunk_count=0,
                            refresh_interval=row.refresh_interval,
                            metadata_json=dict(child.metadata),
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    added += 1
                return added

    def mark_checked(self, source_id: str, *, now: datetime) -> bool:
        """Record that upstream content was verified unchanged."""
        with self._session_factory() as session:
            with session.begin():
                result = session.execute(
                    update(KnowledgeSources)
                    .where(KnowledgeSources.id == source_id, KnowledgeSources.status != "processing")
                    .values(last_synced_at=now, updated_at=now)
                )
                return result.rowcount == 1

    def mark_error(self, source_id: str, *, message: str, now: datetime) -> None:
        with self._session_factory() as session:
            with session.begin():
                session.execute(
                    update(KnowledgeSources)
                    .where(KnowledgeSources.id == source_id)
                    .values(status="error", error_message=(message or "")[:512], updated_at=now)
                )

    def merge_metadata(self, source_id: str, metadata: dict[str, Any], *, now: datetime) -> None:
        with self._session_factory() as session:
            with session.begin():
                row = session.get(KnowledgeSources, source_id, with_for_update=True)
                if row is None:
                    raise SourceNotFoundError(source_id)
                merged = dict(row.metadata_json or {})
                merged.update(metadata)
                row.metadata_json = merged
                row.updated_at = now

    def delete_one(self, source_id: str) -> bool:
        with self._session_factory() as session:
            with session.begin():
                result = session.execute(delete(KnowledgeSources).where(KnowledgeSources.id == source_id))
                return bool(result.rowcount)

    def delete_trees(self, source_ids: list[str]) -> int:
        """Delete the given sources together with their children in a single transaction."""
        if not source_ids:
            return 0
        with self._session_factory() as session:
            with session.begin():
                children = session.execute(delete(KnowledgeSources).where(KnowledgeSources.parent_id.in_(source_ids)))
                roots = session.execute(delete(KnowledgeSources).where(KnowledgeSources.id.in_(source_ids)))
                return int(children.rowcount or 0) + int(roots.rowcount or 0)

    def count_orphans(self, agent_id: str) -> int:
        parent = aliased(KnowledgeSources)
        stmt = (
            select(func.count())
            .select_from(KnowledgeSources)
            .outerjoin(parent, KnowledgeSources.parent_id == parent.id)
            .where(
                KnowledgeSources.agent_id == agent_id,
                KnowledgeSources.parent_id.is_not(None),
                parent.id.is_(None),
            )
        )
        with self._session_factory() as session:
            return int(session.execute(stmt).scalar_one())
