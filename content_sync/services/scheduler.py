from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from content_sync.core.intervals import is_due, parse_sync_interval
from content_sync.core.logging import clear_request_context, set_request_context
from content_sync.db.repositories.connections import EndpointConfig, EndpointConfigRepository, SiteConnectionRepository
from content_sync.db.session import SessionFactory
from content_sync.services.sync_orchestrator import SyncOrchestrator, SyncResult, SyncStatus

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledRun:
    agent_id: str
    kind: str
    result: SyncResult


@dataclass(frozen=True)
class SchedulerReport:
    checked: int
    runs: list[ScheduledRun] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return sum(1 for run in self.runs if run.result.status == SyncStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return sum(1 for run in self.runs if run.result.status == SyncStatus.FAILED)

    @property
    def already_running(self) -> int:
        return sum(1 for run in self.runs if run.result.status == SyncStatus.ALREADY_RUNNING)


def is_sync_due(config: EndpointConfig, now: datetime) -> bool:
    if not config.rest_base:
        return False
    try:
        interval = parse_sync_interval(config.sync_interval)
    except ValueError:
        LOGGER.warning(
            "scheduler_invalid_interval",
            extra={"event": "scheduler_invalid_interval", "agent_id": config.agent_id, "kind": config.kind, "interval": config.sync_interval},
        )
        return False
    return is_due(config.last_sync_at, interval, now)


def due_endpoints(session_factory: SessionFactory, *, now: datetime, agent_id: str | None = None) -> list[EndpointConfig]:
    connected = {connection.agent_id for connection in SiteConnectionRepository(session_factory).list_all()}
    repository = EndpointConfigRepository(session_factory)
    configs = repository.list_for_agent(agent_id) if agent_id is not None else repository.list_all()
    return [config for config in configs if config.agent_id in connected and is_sync_due(config, now)]


async def run_due_syncs(
    orchestrator: SyncOrchestrator,
    session_factory: SessionFactory,
    *,
    now: datetime,
    agent_id: str | None = None,
) -> SchedulerReport:
    """Trigger every endpoint whose interval has elapsed. Runs are sequential.

    Each run gets its own request id in the logging context.
    """
    due = due_endpoints(session_factory, now=now, agent_id=agent_id)
    runs: list[ScheduledRun] = []
    for config in due:
        set_request_context(request_id=uuid4().hex, agent_id=config.agent_id)
        try:
            result = await orchestrator.sync(config.agent_id, config.kind)
            runs.append(ScheduledRun(agent_id=config.agent_id, kind=config.kind, result=result))
            LOGGER.info(
                "scheduled_sync_finished",
                extra={
                    "event": "scheduled_sync_finished",
                    "kind": config.kind,
                    "status": result.status.value,
                    "imported": result.imported,
                    "updated": result.updated,
                },
            )
        finally:
            clear_request_context()
    report = SchedulerReport(checked=len(due), runs=runs)
    LOGGER.info(
        "scheduled_sync_completed",
        extra={"event": "scheduled_sync_completed", "due": len(due), "completed": report.completed, "failed": report.failed},
    )
    return report
