import asyncio

import pytest

from content_sync.db.repositories.connections import EndpointConfigRepository, SiteConnectionRepository
from content_sync.db.repositories.field_mappings import FieldMappingRepository
from content_sync.db.repositories.sync_records import SyncRecordRepository
from content_sync.services.connectors.base import RemoteFetchError
from content_sync.services.extraction import ParseMode
from content_sync.services.knowledge_ledger import KnowledgeLedger
from content_sync.services.sync_orchestrator import SyncOrchestrator, SyncStatus, content_fingerprint, upstream_digest
from content_sync.services.sync_state import SyncPhase, SyncStateMachine
from tests.fakes import (
    T0,
    FakeClock,
    FakeContentHasher,
    FakeIngestClient,
    FakeLlmClient,
    FakeRemoteClient,
    community_record,
    memory_session_factory,
)

AGENT = "agent-1"


def _home(record_id, price, **acf):
    return {"id": record_id, "title": {"rendered": f"Lot {record_id}"}, "acf": {"price": price, **acf}}


def _setup(pages, *, kind="community", mapping=None, confirmed=True, errors=None, total_pages=True, **orchestrator_kwargs):
    factory = memory_session_factory()
    clock = FakeClock()
    SiteConnectionRepository(factory).save_url(AGENT, "https://example.com", now=T0)
    rest_base = "communities" if kind == "community" else "homes"
    EndpointConfigRepository(factory).upsert(AGENT, kind, now=T0, rest_base=rest_base, sync_interval="daily")
    if mapping is None:
        mapping = {"name": "title", "city": "acf.city", "zip": "acf.zip_code"} if kind == "community" else {"name": "title", "price": "acf.price"}
    FieldMappingRepository(factory).save(AGENT, kind, mapping, confirmed=confirmed, now=T0)
    client = FakeRemoteClient(pages={rest_base: pages}, errors=errors, total_pages=total_pages)
    options = {"page_size": 2, "max_pages": 50, "max_elapsed_seconds": 300}
    options.update(orchestrator_kwargs)
    orchestrator = SyncOrchestrator(factory, client_factory=lambda _url: client, now_fn=clock, **options)
    return orchestrator, factory, client, clock


def test_fingerprint_is_order_independent():
    assert content_fingerprint({"a": 1, "b": [1, 2]}) == content_fingerprint({"b": [1, 2], "a": 1})
    assert content_fingerprint({"a": 1}) != content_fingerprint({"a": 2})
    assert upstream_digest(["x", "y"]) == upstream_digest(["y", "x"])


def test_second_run_without_remote_changes_is_a_no_op():
    pages = [[community_record(1, "Pine Ridge"), community_record(2, "Oak Hollow")], [community_record(3, "Sunny Acres")]]
    orchestrator, factory, client, _ = _setup(pages)

    first = asyncio.run(orchestrator.sync(AGENT, "community"))
    second = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert (first.status, first.imported, first.updated, first.total_remote) == (SyncStatus.COMPLETED, 3, 0, 3)
    assert (second.imported, second.updated, second.unchanged, second.failed) == (0, 0, 3, 0)
    assert SyncRecordRepository(factory).count(AGENT, "community") == 3
    assert [call[2] for call in client.calls if call[0] == "page"] == [1, 2, 1, 2]


def test_changed_price_updates_existing_record_in_place():
    pages = [[_home(10, "45000"), _home(11, "52000")]]
    orchestrator, factory, _, clock = _setup(pages, kind="home")
    asyncio.run(orchestrator.sync(AGENT, "home"))
    before = SyncRecordRepository(factory).get_by_source_id(AGENT, "home", "10")

    pages[0][0] = _home(10, "43500")
    clock.advance(hours=1)
    result = asyncio.run(orchestrator.sync(AGENT, "home"))

    after = SyncRecordRepository(factory).get_by_source_id(AGENT, "home", "10")
    assert (result.imported, result.updated, result.unchanged) == (0, 1, 1)
    assert SyncRecordRepository(factory).count(AGENT, "home") == 2
    assert after.id == before.id
    assert after.fields["price"] == 4350000
    assert after.last_synced_at > before.last_synced_at


def test_bad_records_are_isolated_and_reported():
    pages = [
        [
            community_record(1, "Pine Ridge"),
            {"title": {"rendered": "No id"}},
            {"id": 3, "title": {"rendered": ""}},
            community_record(4, "Oak Hollow"),
        ]
    ]
    orchestrator, factory, _, _ = _setup(pages, page_size=10)

    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert result.status == SyncStatus.COMPLETED
    assert (result.imported, result.failed, result.total_remote) == (2, 2, 4)
    assert [error.source_record_id for error in result.errors] == [None, "3"]
    assert {error.error_code for error in result.errors} == {"M-RECORD-INVALID"}
    assert SyncRecordRepository(factory).count(AGENT) == 2


def test_reported_errors_are_capped_but_counted():
    pages = [[{"id": index, "title": {"rendered": ""}} for index in range(5)]]
    orchestrator, _, _, _ = _setup(pages, page_size=10, max_reported_errors=2)

    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert result.failed == 5
    assert len(result.errors) == 2


def test_concurrent_trigger_reports_already_running():
    orchestrator, factory, client, _ = _setup([[community_record(1, "Pine Ridge")]])
    SyncStateMachine(factory, stale_after_seconds=3600, now_fn=FakeClock()).try_begin(AGENT, "community")

    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert result.status == SyncStatus.ALREADY_RUNNING
    assert result.error_code == "S-SYNC-IN-PROGRESS"
    assert client.calls == []


def test_fatal_error_mid_walk_keeps_committed_records_and_last_sync():
    pages = [[community_record(1, "A"), community_record(2, "B")], [community_record(3, "C")], [community_record(4, "D")]]
    errors = {("communities", 2): RemoteFetchError("R-REMOTE-HTTP-STATUS", "WordPress API returned status 500", status_code=500)}
    orchestrator, factory, _, _ = _setup(pages, errors=errors)

    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert result.status == SyncStatus.FAILED
    assert result.error_code == "R-REMOTE-HTTP-STATUS"
    assert result.imported == 2
    assert SyncRecordRepository(factory).count(AGENT) == 2
    config = EndpointConfigRepository(factory).get(AGENT, "community")
    assert config.last_sync_at is None
    state = SyncStateMachine(factory).get(AGENT, "community")
    assert state.phase == SyncPhase.ERROR.value
    assert "Page 2" in state.last_error_message


def test_first_page_failure_then_recovery():
    pages = [[community_record(1, "A")]]
    errors = {("communities", 1): RemoteFetchError("R-REMOTE-TIMEOUT", "timed out", retryable=True)}
    orchestrator, factory, client, _ = _setup(pages, errors=errors)

    failed = asyncio.run(orchestrator.sync(AGENT, "community"))
    client.errors.clear()
    recovered = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert (failed.status, failed.error_code) == (SyncStatus.FAILED, "R-REMOTE-TIMEOUT")
    assert (recovered.status, recovered.imported) == (SyncStatus.COMPLETED, 1)
    assert SyncStateMachine(factory).current(AGENT, "community") == SyncPhase.IDLE


def test_walk_without_total_pages_stops_on_out_of_range_page():
    pages = [[community_record(1, "A"), community_record(2, "B")]]
    orchestrator, _, client, _ = _setup(pages, total_pages=False)

    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert (result.status, result.imported) == (SyncStatus.COMPLETED, 2)
    assert [call[2] for call in client.calls] == [1, 2]


def test_walk_without_total_pages_stops_on_short_page():
    pages = [[community_record(1, "A"), community_record(2, "B")], [community_record(3, "C")]]
    orchestrator, _, client, _ = _setup(pages, total_pages=False)

    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert result.imported == 3
    assert [call[2] for call in client.calls] == [1, 2]


def test_page_cap_truncates_without_failing():
    pages = [[community_record(1, "A"), community_record(2, "B")], [community_record(3, "C")]]
    orchestrator, factory, _, _ = _setup(pages, max_pages=1)

    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert result.status == SyncStatus.COMPLETED
    assert result.truncated is True
    assert result.imported == 2
    assert EndpointConfigRepository(factory).get(AGENT, "community").last_sync_count == 2


def test_empty_collection_completes():
    orchestrator, factory, _, _ = _setup([])

    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert (result.status, result.total_remote) == (SyncStatus.COMPLETED, 0)
    config = EndpointConfigRepository(factory).get(AGENT, "community")
    assert config.last_sync_at == T0
    assert config.last_sync_count == 0


def test_unconfirmed_mapping_blocks_structured_sync():
    orchestrator, _, client, _ = _setup([[community_record(1, "A")]], confirmed=False)

    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    assert (result.status, result.error_code) == (SyncStatus.FAILED, "M-MAPPING-INCOMPLETE")
    assert client.calls == []


def test_missing_required_mapping_blocks_import():
    orchestrator, factory, client, _ = _setup([[community_record(1, "A")]], mapping={"city": "acf.city"})
    connection = SiteConnectionRepository(factory).get(AGENT)
    config = EndpointConfigRepository(factory).get(AGENT, "community")

    result = asyncio.run(orchestrator.import_entities(connection, config, {"city": "acf.city"}))

    assert result.error_code == "M-MAPPING-INCOMPLETE"
    assert "name" in result.error_message
    assert client.calls == []


def test_missing_connection_or_endpoint():
    orchestrator, _, _, _ = _setup([])

    assert asyncio.run(orchestrator.sync("agent-x", "community")).error_code == "C-CONNECTION-NOT-FOUND"
    assert asyncio.run(orchestrator.sync(AGENT, "home")).error_code == "S-ENDPOINT-NOT-CONFIGURED"


def test_ai_extraction_mode_does_not_need_a_mapping():
    llm = FakeLlmClient(response={"name": "Extracted Community", "city": "Austin"})
    orchestrator, factory, _, _ = _setup([[community_record(1, "A"), community_record(2, "B")]], confirmed=False, llm_client=llm)

    result = asyncio.run(orchestrator.sync(AGENT, "community", mode=ParseMode.AI_EXTRACTION))

    assert (result.status, result.imported) == (SyncStatus.COMPLETED, 2)
    assert len(llm.prompts) == 2
    assert SyncRecordRepository(factory).get_by_source_id(AGENT, "community", "2").fields == {"name": "Extracted Community", "city": "Austin"}


def test_unexpected_error_marks_state_and_propagates():
    orchestrator, factory, client, _ = _setup([[community_record(1, "A")]])

    async def broken_fetch(*_args, **_kwargs):
        raise RuntimeError("boom")

    client.fetch_page = broken_fetch

    with pytest.raises(RuntimeError):
        asyncio.run(orchestrator.sync(AGENT, "community"))

    state = SyncStateMachine(factory).get(AGENT, "community")
    assert (state.phase, state.last_error_code) == ("error", "S-SYNC-UNEXPECTED")


def test_completed_sync_registers_parent_source_in_ledger():
    pages = [[community_record(1, "A"), community_record(2, "B")]]
    orchestrator, factory, _, clock = _setup(pages)
    ledger = KnowledgeLedger(
        factory,
        ingest_client=FakeIngestClient(),
        content_hasher=FakeContentHasher(),
        retrain_concurrency=2,
        default_refresh_interval="daily",
        now_fn=clock,
    )
    orchestrator._ledger = ledger

    asyncio.run(orchestrator.sync(AGENT, "community"))
    asyncio.run(orchestrator.sync(AGENT, "community"))

    tree = ledger.list_tree(AGENT)
    assert len(tree) == 1
    source = tree[0].source
    assert (source.source_type, source.source) == ("wordpress_community", "https://example.com")
    assert source.metadata["record_count"] == 2
    assert source.metadata["upstream_hash"] == upstream_digest(SyncRecordRepository(factory).fingerprints(AGENT, "community"))
    assert tree[0].outdated is True


def _ledger_for(factory, clock):
    return KnowledgeLedger(
        factory,
        ingest_client=FakeIngestClient(),
        content_hasher=FakeContentHasher(),
        retrain_concurrency=2,
        default_refresh_interval="daily",
        processing_stale_after_seconds=600,
        now_fn=clock,
    )


def test_records_are_scoped_to_the_site_they_came_from():
    orchestrator, factory, client, clock = _setup([[community_record(1, "A"), community_record(2, "B")]])
    ledger = _ledger_for(factory, clock)
    orchestrator._ledger = ledger
    asyncio.run(orchestrator.sync(AGENT, "community"))

    SiteConnectionRepository(factory).save_url(AGENT, "https://new.example.com", now=T0)
    client.pages["communities"] = [[community_record(1, "A on the new site")]]
    result = asyncio.run(orchestrator.sync(AGENT, "community"))

    records = SyncRecordRepository(factory)
    assert (result.imported, result.updated) == (1, 0)
    assert records.count(AGENT, "community") == 3
    assert records.get_by_source_id(AGENT, "community", "1", site_url="https://example.com").fields["name"] == "A"
    counts = {view.source.source: view.source.metadata["record_count"] for view in ledger.list_tree(AGENT)}
    assert counts == {"https://example.com": 2, "https://new.example.com": 1}


def test_home_sync_links_homes_to_synced_communities():
    communities = [
        community_record(1, "Pine Ridge"),
        community_record(2, "Oak Hollow Estates", acf={"city": "Dallas", "state": "TX"}),
        community_record(3, "Sunny Acres", acf={"city": "Houston", "state": "TX"}),
    ]
    orchestrator, factory, client, _ = _setup([communities], mapping={"name": "title", "city": "acf.city", "state": "acf.state"})
    asyncio.run(orchestrator.sync(AGENT, "community"))

    client.pages["homes"] = [
        [
            dict(_home(10, "45000"), home_community=[2]),
            _home(11, "52000", city="Austin", state="tx"),
            _home(12, "61000", park="Sunny Acres"),
            _home(13, "70000", park="Lakeside"),
        ]
    ]
    EndpointConfigRepository(factory).upsert(AGENT, "home", now=T0, rest_base="homes", sync_interval="daily")
    home_mapping = {"name": "title", "price": "acf.price", "city": "acf.city", "state": "acf.state", "community_name": "acf.park"}
    FieldMappingRepository(factory).save(AGENT, "home", home_mapping, confirmed=True, now=T0)

    result = asyncio.run(orchestrator.sync(AGENT, "home"))

    records = SyncRecordRepository(factory)
    community_ids = {source_id: records.get_by_source_id(AGENT, "community", source_id).id for source_id in ("1", "2", "3")}
    links = {source_id: records.get_by_source_id(AGENT, "home", source_id).linked_record_id for source_id in ("10", "11", "12", "13")}
    assert (result.status, result.imported, result.linked) == (SyncStatus.COMPLETED, 4, 3)
    assert links == {"10": community_ids["2"], "11": community_ids["1"], "12": community_ids["3"], "13": None}


def test_home_sync_without_communities_links_nothing():
    orchestrator, factory, _, _ = _setup([[dict(_home(10, "45000"), home_community=[2])]], kind="home")

    result = asyncio.run(orchestrator.sync(AGENT, "home"))

    assert (result.imported, result.linked) == (1, 0)
    assert SyncRecordRepository(factory).get_by_source_id(AGENT, "home", "10").linked_record_id is None
