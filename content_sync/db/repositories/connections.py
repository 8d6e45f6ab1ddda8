from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select

from content_sync.core.time_utils import ensure_utc
from content_sync.db.session import SessionFactory
from content_sync.models.models import EndpointConfigs, SiteConnections


@dataclass(frozen=True)
class SiteConnection:
    agent_id: str
    site_url: str
    verified_at: datetime | None
    last_test_success: bool | None
    last_test_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class EndpointConfig:
    agent_id: str
    kind: str
    rest_base: str
    sync_interval: str
    last_sync_at: datetime | None
    last_sync_count: int | None


def _to_connection(row: SiteConnections) -> SiteConnection:
    return SiteConnection(
        agent_id=row.agent_id,
        site_url=row.site_url,
        verified_at=ensure_utc(row.verified_at),
        last_test_success=row.last_test_success,
        last_test_message=row.last_test_message,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _to_endpoint_config(row: EndpointConfigs) -> EndpointConfig:
    return EndpointConfig(
        agent_id=row.agent_id,
        kind=row.kind,
        rest_base=row.rest_base,
        sync_interval=row.sync_interval,
        last_sync_at=ensure_utc(row.last_sync_at),
        last_sync_count=row.last_sync_count,
    )


class SiteConnectionRepository:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get(self, agent_id: str) -> SiteConnection | None:
        with self._session_factory() as session:
            row = session.get(SiteConnections, agent_id)
            return _to_connection(row) if row is not None else None

    def list_all(self) -> list[SiteConnection]:
        with self._session_factory() as session:
            rows = session.execute(select(SiteConnections).order_by(SiteConnections.agent_id)).scalars().all()
            return [_to_connection(row) for row in rows]

    def save_url(self, agent_id: str, site_url: str, *, now: datetime) -> bool:
        """Persist ``site_url`` for the agent. Returns False when nothing was written."""
        with self._session_factory() as session:
            with session.begin():
                row = session.get(SiteConnections, agent_id, with_for_update=True)
                if row is None:
                    session.add(SiteConnections(agent_id=agent_id, site_url=site_url, created_at=now, updated_at=now))
                    return True
                if row.site_url == site_url:
                    return False
                row.site_url = site_url
                row.verified_at = None
                row.last_test_success = None
                row.last_test_message = None
                row.updated_at = now
                return True

    def record_test_result(self, agent_id: str, *, success: bool, message: str, now: datetime) -> None:
        with self._session_factory() as session:
            with session.begin():
                row = session.get(SiteConnections, agent_id, with_for_update=True)
                if row is None:
                    return
                row.last_test_success = success
                row.last_test_message = message[:2000]
                if success:
                    row.verified_at = now
                row.updated_at = now

    def delete(self, agent_id: str) -> bool:
        with self._session_factory() as session:
            with session.begin():
                result = session.execute(delete(SiteConnections).where(SiteConnections.agent_id == agent_id))
                return bool(result.rowcount)


class EndpointConfigRepository:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get(self, agent_id: str, kind: str) -> EndpointConfig | None:
        with self._session_factory() as session:
            row = session.get(EndpointConfigs, (agent_id, kind))
            return _to_endpoint_config(row) if row is not None else None

    def list_for_agent(self, agent_id: str) -> list[EndpointConfig]:
        with self._session_factory() as session:
            rows = (
                session.execute(select(EndpointConfigs).where(EndpointConfigs.agent_id == agent_id).order_by(EndpointConfigs.kind))
                .scalars()
                .all()
            )
            return [_to_endpoint_config(row) for row in rows]

    def list_all(self) -> list[EndpointConfig]:
        with self._session_factory() as session:
            rows = session.execute(select(EndpointConfigs).order_by(EndpointConfigs.agent_id, EndpointConfigs.kind)).scalars().all()
            return [_to_endpoint_config(row) for row in rows]

    def upsert(
        self,
        agent_id: str,
        kind: str,
        *,
        now: datetime,
        rest_base: str | None = None,
        sync_interval: str | None = None,
    ) -> EndpointConfig:
        with self._session_factory() as session:
            with session.begin():
                row = session.get(EndpointConfigs, (agent_id, kind), with_for_update=True)
                if row is None:
                    row = EndpointConfigs(
                        agent_id=agent_id,
                        kind=kind,
                        rest_base=rest_base or "",
                        sync_interval=sync_interval or "manual",
                        updated_at=now,
                    )
                    session.add(row)
                else:
                    if rest_base is not None:
                        row.rest_base = rest_base
                    if sync_interval is not None:
                        row.sync_interval = sync_interval
                    row.updated_at = now
                session.flush()
                return _to_endpoint_config(row)

    def record_sync(self, agent_id: str, kind: str, *, synced_at: datetime, count: int) -> None:
        with self._session_factory() as session:
            with session.begin():
                row = session.get(EndpointConfigs, (agent_id, kind), with_for_update=True)
                if row is None:
                    return
                row.last_sync_at = synced_at
                row.last_sync_count = count
                row.updated_at = synced_at

    def delete_for_agent(self, agent_id: str) -> int:
        with self._session_factory() as session:
            with session.begin():
                result = session.execute(delete(EndpointConfigs).where(EndpointConfigs.agent_id == agent_id))
                return int(result.rowcount or 0)
