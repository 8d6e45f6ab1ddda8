import asyncio
from datetime import timedelta

from content_sync.core.logging import get_agent_id, get_request_id
from content_sync.db.repositories.connections import EndpointConfig, EndpointConfigRepository, SiteConnectionRepository
from content_sync.services.scheduler import due_endpoints, is_sync_due, run_due_syncs
from content_sync.services.sync_orchestrator import SyncResult, SyncStatus
from tests.fakes import T0, memory_session_factory


def _config(interval, last_sync_at=None, rest_base="communities"):
    return EndpointConfig(
        agent_id="agent-1",
        kind="community",
        rest_base=rest_base,
        sync_interval=interval,
        last_sync_at=last_sync_at,
        last_sync_count=None,
    )


def test_is_sync_due():
    assert is_sync_due(_config("daily"), T0) is True
    assert is_sync_due(_config("manual"), T0) is False
    assert is_sync_due(_config("hourly_2", T0 - timedelta(hours=1)), T0) is False
    assert is_sync_due(_config("hourly_2", T0 - timedelta(hours=2)), T0) is True
    assert is_sync_due(_config("daily", rest_base=""), T0) is False
    assert is_sync_due(_config("fortnightly"), T0) is False


def _seed():
    factory = memory_session_factory()
    connections = SiteConnectionRepository(factory)
    endpoints = EndpointConfigRepository(factory)
    connections.save_url("agent-1", "https://one.example.com", now=T0)
    connections.save_url("agent-2", "https://two.example.com", now=T0)
    endpoints.upsert("agent-1", "community", now=T0, rest_base="communities", sync_interval="hourly_1")
    endpoints.upsert("agent-1", "home", now=T0, rest_base="homes", sync_interval="manual")
    endpoints.upsert("agent-2", "home", now=T0, rest_base="homes", sync_interval="daily")
    endpoints.record_sync("agent-2", "home", synced_at=T0 - timedelta(hours=3), count=10)
    return factory


def test_due_endpoints_follow_interval_and_agent_filter():
    factory = _seed()

    due = due_endpoints(factory, now=T0)

    assert [(config.agent_id, config.kind) for config in due] == [("agent-1", "community")]
    assert due_endpoints(factory, now=T0 + timedelta(hours=21), agent_id="agent-2")[0].kind == "home"
    assert due_endpoints(factory, now=T0, agent_id="agent-2") == []


class FakeOrchestrator:
    def __init__(self, statuses):
        self.statuses = statuses
        self.calls = []

    async def sync(self, agent_id, kind):
        self.calls.append((agent_id, kind))
        return SyncResult(status=self.statuses[(agent_id, kind)])


def test_run_due_syncs_triggers_each_due_endpoint():
    factory = _seed()
    orchestrator = FakeOrchestrator(
        {("agent-1", "community"): SyncStatus.COMPLETED, ("agent-2", "home"): SyncStatus.FAILED},
    )

    report = asyncio.run(run_due_syncs(orchestrator, factory, now=T0 + timedelta(days=1)))

    assert orchestrator.calls == [("agent-1", "community"), ("agent-2", "home")]
    assert (report.checked, report.completed, report.failed, report.already_running) == (2, 1, 1, 0)


def test_each_scheduled_run_gets_its_own_logging_context():
    factory = _seed()
    seen = []

    class ContextCapturingOrchestrator:
        async def sync(self, agent_id, kind):
            seen.append((get_request_id(), get_agent_id(), agent_id))
            return SyncResult(status=SyncStatus.COMPLETED)

    asyncio.run(run_due_syncs(ContextCapturingOrchestrator(), factory, now=T0 + timedelta(days=1)))

    assert [(agent, expected) for _, agent, expected in seen] == [("agent-1", "agent-1"), ("agent-2", "agent-2")]
    request_ids = [request_id for request_id, _, _ in seen]
    assert all(request_ids)
    assert len(set(request_ids)) == 2
    assert get_request_id() is None
