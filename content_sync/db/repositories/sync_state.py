from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from sqlalchemy import delete, select

from content_sync.core.time_utils import ensure_utc, utcnow
from content_sync.db.session import SessionFactory
from content_sync.models.models import SyncStates

T = TypeVar("T")


@dataclass
class SyncStateRow:
    agent_id: str
    kind: str
    phase: str
    last_error_code: str | None
    last_error_message: str | None
    updated_at: datetime


def _to_state(row: SyncStates) -> SyncStateRow:
    return SyncStateRow(
        agent_id=row.agent_id,
        kind=row.kind,
        phase=row.phase,
        last_error_code=row.last_error_code,
        last_error_message=row.last_error_message,
        updated_at=ensure_utc(row.updated_at),
    )


class SyncStateRepository:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get(self, agent_id: str, kind: str) -> SyncStateRow | None:
        with self._session_factory() as session:
            row = session.get(SyncStates, (agent_id, kind))
            return _to_state(row) if row is not None else None

    def update(self, agent_id: str, kind: str, updater: Callable[[SyncStateRow], T]) -> T:
        """Run ``updater`` against the locked state row and persist what it changed.

        A missing row is created in ``idle``. Two callers racing to create the
        same row surface as ``IntegrityError`` from the loser's commit.
        """
        with self._session_factory() as session:
            with session.begin():
                row = session.execute(
                    select(SyncStates).where(SyncStates.agent_id == agent_id, SyncStates.kind == kind).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    row = SyncStates(agent_id=agent_id, kind=kind, phase="idle", updated_at=utcnow())
                    session.add(row)
                state = _to_state(row)
                result = updater(state)
                row.phase = state.phase
                row.last_error_code = state.last_error_code
                row.last_error_message = (state.last_error_message or "")[:512] or None
                row.updated_at = state.updated_at
                return result

    def delete_for_agent(self, agent_id: str) -> int:
        with self._session_factory() as session:
            with session.begin():
                result = session.execute(delete(SyncStates).where(SyncStates.agent_id == agent_id))
                return int(result.rowcount or 0)
