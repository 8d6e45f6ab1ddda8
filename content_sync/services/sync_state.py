from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.exc import IntegrityError

from content_sync.core.time_utils import utcnow
from content_sync.db.repositories.sync_state import SyncStateRepository, SyncStateRow
from content_sync.db.session import SessionFactory

LOGGER = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    IDLE = "idle"
    TESTING = "testing"
    IMPORTING = "importing"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[SyncPhase, set[SyncPhase]] = {
    SyncPhase.IDLE: {SyncPhase.TESTING, SyncPhase.ERROR},
    SyncPhase.TESTING: {SyncPhase.IMPORTING, SyncPhase.IDLE, SyncPhase.ERROR},
    SyncPhase.IMPORTING: {SyncPhase.IDLE, SyncPhase.ERROR},
    SyncPhase.ERROR: {SyncPhase.IDLE},
}

ACTIVE_PHASES = frozenset({SyncPhase.TESTING, SyncPhase.IMPORTING})


class InvalidTransitionError(ValueError):
    error_code = "S-INVALID-TRANSITION"


def transition(current: SyncPhase, target: SyncPhase) -> SyncPhase:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Invalid sync transition: {current.value} -> {target.value}")
    return target


def _apply(
    state: SyncStateRow,
    target: SyncPhase,
    now: datetime,
    *,
    error_code: str | None = None,
    error_message: str | None = None,
) -> SyncPhase:
    transition(SyncPhase(state.phase), target)
    state.phase = target.value
    state.updated_at = now
    if target == SyncPhase.ERROR:
        state.last_error_code = error_code
        state.last_error_message = error_message
    elif target == SyncPhase.TESTING:
        state.last_error_code = None
        state.last_error_message = None
    return target


class SyncStateMachine:
    """Persisted ``idle -> testing -> importing -> idle`` machine per (agent, kind)."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        stale_after_seconds: int | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        if stale_after_seconds is None:
            from content_sync.core.config import settings

            stale_after_seconds = settings.SYNC_RUN_STALE_AFTER_SECONDS
        self._repository = SyncStateRepository(session_factory)
        self._stale_after = timedelta(seconds=int(stale_after_seconds))
        self._now = now_fn

    def current(self, agent_id: str, kind: str) -> SyncPhase:
        state = self._repository.get(agent_id, kind)
        return SyncPhase(state.phase) if state is not None else SyncPhase.IDLE

    def get(self, agent_id: str, kind: str) -> SyncStateRow | None:
        return self._repository.get(agent_id, kind)

    def try_begin(self, agent_id: str, kind: str) -> bool:
        """Move to ``testing`` unless a run is already active. Returns False when rejected."""

        def _begin(state: SyncStateRow) -> bool:
            now = self._now()
            phase = SyncPhase(state.phase)
            if phase in ACTIVE_PHASES:
                if now - state.updated_at < self._stale_after:
                    return False
                LOGGER.warning(
                    "sync_run_taken_over",
                    extra={"event": "sync_run_taken_over", "agent_id": agent_id, "kind": kind, "stale_phase": phase.value},
                )
                phase = _apply(
                    state,
                    SyncPhase.ERROR,
                    now,
                    error_code="S-SYNC-STALE",
                    error_message=f"Run stuck in {phase.value} since {state.updated_at.isoformat()}",
                )
            if phase == SyncPhase.ERROR:
                _apply(state, SyncPhase.IDLE, now)
            _apply(state, SyncPhase.TESTING, now)
            return True

        try:
            return self._repository.update(agent_id, kind, _begin)
        except IntegrityError:
            return False

    def advance(self, agent_id: str, kind: str, target: SyncPhase) -> SyncPhase:
        return self._repository.update(agent_id, kind, lambda state: _apply(state, target, self._now()))

    def fail(self, agent_id: str, kind: str, *, error_code: str, error_message: str) -> SyncPhase:
        return self._repository.update(
            agent_id,
            kind,
            lambda state: _apply(state, SyncPhase.ERROR, self._now(), error_code=error_code, error_message=error_message),
        )
