import asyncio
from datetime import timedelta

import httpx
import pytest

from content_sync.clients.content_hasher import HttpContentHasher
from content_sync.clients.ingest_client import ChildDescriptor, IngestClient
from content_sync.db.errors import SourceNotFoundError
from content_sync.db.repositories.knowledge_sources import ClaimOutcome, KnowledgeSource, KnowledgeSourceRepository
from content_sync.services.knowledge_ledger import (
    InvalidParentError,
    KnowledgeLedger,
    NotAChildSourceError,
    is_source_outdated,
)
from tests.fakes import T0, FakeClock, FakeContentHasher, FakeIngestClient, memory_session_factory

AGENT = "agent-1"


def _ledger(ingest=None, hasher=None, concurrency=2, clock=None):
    factory = memory_session_factory()
    ledger = KnowledgeLedger(
        factory,
        ingest_client=ingest or FakeIngestClient(),
        content_hasher=hasher or FakeContentHasher(),
        retrain_concurrency=concurrency,
        default_refresh_interval="daily",
        processing_stale_after_seconds=600,
        now_fn=clock or FakeClock(),
    )
    return ledger, factory


def _source(**overrides):
    values = {
        "id": "s1",
        "agent_id": AGENT,
        "parent_id": None,
        "source_type": "url",
        "source": "https://example.com/faq",
        "status": "ready",
        "error_message": None,
        "chunk_count": 3,
        "last_content_hash": "h1",
        "last_synced_at": T0,
        "refresh_interval": "daily",
        "metadata": {},
    }
    values.update(overrides)
    return KnowledgeSource(**values)


def test_outdated_when_upstream_hash_differs():
    assert is_source_outdated(_source(), now=T0, current_hash="h2") is True
    assert is_source_outdated(_source(metadata={"upstream_hash": "h2"}), now=T0) is True
    assert is_source_outdated(_source(), now=T0, current_hash="h1") is False


def test_outdated_when_refresh_interval_elapsed():
    assert is_source_outdated(_source(), now=T0 + timedelta(hours=23)) is False
    assert is_source_outdated(_source(), now=T0 + timedelta(hours=24)) is True
    assert is_source_outdated(_source(refresh_interval="manual"), now=T0 + timedelta(days=90)) is False
    assert is_source_outdated(_source(last_synced_at=None), now=T0) is True


def test_add_source_validates_type_and_parent():
    ledger, _ = _ledger()
    parent = ledger.add_source(AGENT, "sitemap", "https://example.com/sitemap.xml")
    child = ledger.add_source(AGENT, "url", "https://example.com/a", parent_id=parent.id)

    assert parent.status == "pending"
    assert parent.refresh_interval == "daily"
    assert child.parent_id == parent.id

    with pytest.raises(ValueError):
        ledger.add_source(AGENT, "ftp", "ftp://example.com")
    with pytest.raises(InvalidParentError):
        ledger.add_source(AGENT, "url", "https://example.com/b", parent_id=child.id)
    with pytest.raises(InvalidParentError):
        ledger.add_source("agent-2", "url", "https://example.com/c", parent_id=parent.id)
    with pytest.raises(InvalidParentError):
        ledger.add_source(AGENT, "url", "https://example.com/d", parent_id="missing")


def test_reprocess_success_marks_ready_and_adds_children():
    ingest = FakeIngestClient(
        children={
            "https://example.com/sitemap.xml": [
                ChildDescriptor(source_type="url", source="https://example.com/a"),
                ChildDescriptor(source_type="url", source="https://example.com/b"),
                ChildDescriptor(source_type="bogus", source="https://example.com/c"),
            ]
        }
    )
    ledger, _ = _ledger(ingest=ingest)
    parent = ledger.add_source(AGENT, "sitemap", "https://example.com/sitemap.xml")

    result = asyncio.run(ledger.reprocess_source(parent.id))
    again = asyncio.run(ledger.reprocess_source(parent.id))

    assert (result.started, result.status) == (True, "ready")
    assert again.status == "ready"
    stored = ledger.get(parent.id)
    assert stored.chunk_count == 4
    assert stored.last_content_hash == "hash:https://example.com/sitemap.xml"
    assert stored.last_synced_at == T0
    tree = ledger.list_tree(AGENT)
    assert sorted(child.source.source for child in tree[0].children) == ["https://example.com/a", "https://example.com/b"]
    assert {child.source.status for child in tree[0].children} == {"pending"}


def test_reprocess_failure_records_error_message():
    ingest = FakeIngestClient(fail_sources={"https://example.com/broken"})
    ledger, _ = _ledger(ingest=ingest)
    source = ledger.add_source(AGENT, "url", "https://example.com/broken")

    result = asyncio.run(ledger.reprocess_source(source.id))

    assert (result.started, result.status) == (True, "error")
    stored = ledger.get(source.id)
    assert stored.status == "error"
    assert "cannot ingest" in stored.error_message


def test_reprocess_unexpected_failure_is_contained():
    class ExplodingIngest(FakeIngestClient):
        async def ingest(self, **kwargs):
            raise KeyError("chunker")

    ledger, _ = _ledger(ingest=ExplodingIngest())
    source = ledger.add_source(AGENT, "text", "some text")

    result = asyncio.run(ledger.reprocess_source(source.id))

    assert result.status == "error"
    assert ledger.get(source.id).status == "error"


def test_reprocess_uses_upstream_hash_for_synced_content():
    ledger, _ = _ledger()
    source = ledger.register_synced_content(AGENT, "home", "https://example.com", upstream_hash="digest-1", record_count=4)
    assert source.metadata["auto_created"] is True

    asyncio.run(ledger.reprocess_source(source.id))

    stored = ledger.get(source.id)
    assert stored.last_content_hash == "digest-1"
    assert is_source_outdated(stored, now=T0) is False
    ledger.register_synced_content(AGENT, "home", "https://example.com", upstream_hash="digest-2", record_count=5)
    assert is_source_outdated(ledger.get(source.id), now=T0) is True


def test_concurrent_reprocess_of_same_source_runs_once():
    class SlowIngest(FakeIngestClient):
        async def ingest(self, **kwargs):
            await asyncio.sleep(0.01)
            return await super().ingest(**kwargs)

    ingest = SlowIngest()
    ledger, _ = _ledger(ingest=ingest)
    source = ledger.add_source(AGENT, "url", "https://example.com/faq")

    async def _run():
        return await asyncio.gather(ledger.reprocess_source(source.id), ledger.reprocess_source(source.id))

    first, second = asyncio.run(_run())

    assert sorted([first.started, second.started]) == [False, True]
    assert ingest.calls == [source.id]


def test_reprocess_skips_source_already_processing_elsewhere():
    ingest = FakeIngestClient()
    ledger, factory = _ledger(ingest=ingest)
    source = ledger.add_source(AGENT, "url", "https://example.com/faq")
    assert KnowledgeSourceRepository(factory).try_mark_processing(source.id, now=T0) == ClaimOutcome.CLAIMED

    result = asyncio.run(ledger.reprocess_source(source.id))

    assert (result.started, result.status) == (False, "processing")
    assert ingest.calls == []


def test_reprocess_unknown_source_raises():
    ledger, _ = _ledger()

    with pytest.raises(SourceNotFoundError):
        asyncio.run(ledger.reprocess_source("missing"))


def test_child_operations_reject_parent_sources():
    ledger, _ = _ledger()
    parent = ledger.add_source(AGENT, "sitemap", "https://example.com/sitemap.xml")

    with pytest.raises(NotAChildSourceError):
        asyncio.run(ledger.retry_child_source(parent.id))
    with pytest.raises(NotAChildSourceError):
        ledger.delete_child_source(parent.id)
    assert ledger.get(parent.id) is not None


def test_retry_and_delete_child():
    ingest = FakeIngestClient(fail_sources={"https://example.com/a"})
    ledger, _ = _ledger(ingest=ingest)
    parent = ledger.add_source(AGENT, "sitemap", "https://example.com/sitemap.xml")
    child = ledger.add_source(AGENT, "url", "https://example.com/a", parent_id=parent.id)

    assert asyncio.run(ledger.retry_child_source(child.id)).status == "error"
    ingest.fail_sources.clear()
    assert asyncio.run(ledger.retry_child_source(child.id)).status == "ready"

    assert ledger.delete_child_source(child.id) is True
    assert ledger.list_tree(AGENT)[0].children == []


def test_deleting_parent_removes_children_atomically():
    ledger, factory = _ledger()
    parent = ledger.add_source(AGENT, "sitemap", "https://example.com/sitemap.xml")
    for index in range(3):
        ledger.add_source(AGENT, "url", f"https://example.com/{index}", parent_id=parent.id)
    other = ledger.add_source(AGENT, "url", "https://example.com/standalone")

    deleted = ledger.delete_source(parent.id)

    repository = KnowledgeSourceRepository(factory)
    assert deleted == 4
    assert repository.count_orphans(AGENT) == 0
    assert [source.id for source in repository.list_for_agent(AGENT)] == [other.id]
    with pytest.raises(SourceNotFoundError):
        ledger.delete_source(parent.id)


def test_bulk_delete_handles_parents_children_and_duplicates():
    ledger, factory = _ledger()
    first = ledger.add_source(AGENT, "sitemap", "https://example.com/one.xml")
    child = ledger.add_source(AGENT, "url", "https://example.com/one/a", parent_id=first.id)
    second = ledger.add_source(AGENT, "document", "handbook.pdf")

    deleted = ledger.delete_sources([first.id, child.id, second.id, second.id])

    assert deleted == 3
    assert KnowledgeSourceRepository(factory).list_for_agent(AGENT) == []


def test_retrain_all_reports_partial_failure_and_progress():
    ingest = FakeIngestClient(fail_sources={"https://example.com/broken"})
    ledger, factory = _ledger(ingest=ingest, concurrency=2)
    ok_one = ledger.add_source(AGENT, "url", "https://example.com/ok-1")
    ledger.add_source(AGENT, "url", "https://example.com/ok-2")
    ledger.add_source(AGENT, "url", "https://example.com/broken")
    ledger.add_source(AGENT, "url", "https://example.com/ok-1/child", parent_id=ok_one.id)
    busy = ledger.add_source(AGENT, "url", "https://example.com/busy")
    KnowledgeSourceRepository(factory).try_mark_processing(busy.id, now=T0)
    ledger.add_source("agent-2", "url", "https://example.org/other")
    progress = []

    summary = asyncio.run(ledger.retrain_all_sources(AGENT, progress_callback=lambda done, total: progress.append((done, total))))

    assert (summary.success, summary.failed, summary.skipped) == (2, 1, 1)
    assert progress == [(1, 3), (2, 3), (3, 3)]
    assert len(ingest.calls) == 3


def test_retrain_accepts_async_progress_callback():
    ledger, _ = _ledger()
    ledger.add_source(AGENT, "url", "https://example.com/ok")
    seen = []

    async def on_progress(done, total):
        seen.append((done, total))

    summary = asyncio.run(ledger.retrain_all_sources(AGENT, progress_callback=on_progress))

    assert summary.success == 1
    assert seen == [(1, 1)]


def test_retrain_with_no_sources():
    ledger, _ = _ledger()

    summary = asyncio.run(ledger.retrain_all_sources(AGENT))

    assert (summary.success, summary.failed, summary.skipped) == (0, 0, 0)


def test_check_outdated_compares_against_the_hash_stored_at_ingest():
    hasher = FakeContentHasher({"https://example.com/faq": "v1"})
    ledger, _ = _ledger(hasher=hasher)
    source = ledger.add_source(AGENT, "url", "https://example.com/faq", refresh_interval="manual")
    asyncio.run(ledger.reprocess_source(source.id))

    assert ledger.get(source.id).last_content_hash == "v1"
    assert asyncio.run(ledger.check_outdated(source.id)) is False
    hasher.hashes["https://example.com/faq"] = "v2"
    assert asyncio.run(ledger.check_outdated(source.id)) is True


def test_ingest_result_children_are_ignored_for_child_sources():
    ingest = FakeIngestClient(children={"https://example.com/a": [ChildDescriptor(source_type="url", source="https://example.com/a/deeper")]})
    ledger, factory = _ledger(ingest=ingest)
    parent = ledger.add_source(AGENT, "sitemap", "https://example.com/sitemap.xml")
    child = ledger.add_source(AGENT, "url", "https://example.com/a", parent_id=parent.id)

    asyncio.run(ledger.retry_child_source(child.id))

    assert [source for source in KnowledgeSourceRepository(factory).list_for_agent(AGENT) if source.parent_id == child.id] == []


def test_unchanged_url_page_is_not_reported_outdated_after_ingest():
    page = b"<html><body>Frequently asked questions</body></html>"

    def ingest_handler(request):
        return httpx.Response(200, json={"chunk_count": 2, "content_hash": "ingest-side-digest", "children": []})

    ledger = KnowledgeLedger(
        memory_session_factory(),
        ingest_client=IngestClient("http://ingest:8100", timeout_seconds=5, transport=httpx.MockTransport(ingest_handler)),
        content_hasher=HttpContentHasher(5, transport=httpx.MockTransport(lambda request: httpx.Response(200, content=page))),
        retrain_concurrency=1,
        default_refresh_interval="daily",
        processing_stale_after_seconds=600,
        now_fn=FakeClock(),
    )
    source = ledger.add_source(AGENT, "url", "https://example.com/faq")

    assert asyncio.run(ledger.reprocess_source(source.id)).status == "ready"
    assert asyncio.run(ledger.check_outdated(source.id)) is False


def test_parent_deleted_during_ingest_leaves_no_orphans():
    factory = memory_session_factory()
    repository = KnowledgeSourceRepository(factory)

    class DeletingIngest(FakeIngestClient):
        async def ingest(self, **kwargs):
            result = await super().ingest(**kwargs)
            repository.delete_trees([kwargs["source_id"]])
            return result

    ingest = DeletingIngest(
        children={"https://example.com/sitemap.xml": [ChildDescriptor(source_type="url", source="https://example.com/a")]}
    )
    ledger = KnowledgeLedger(
        factory,
        ingest_client=ingest,
        content_hasher=FakeContentHasher(),
        retrain_concurrency=1,
        default_refresh_interval="daily",
        processing_stale_after_seconds=600,
        now_fn=FakeClock(),
    )
    ledger.add_source(AGENT, "sitemap", "https://example.com/sitemap.xml")

    summary = asyncio.run(ledger.retrain_all_sources(AGENT))

    assert (summary.success, summary.failed, summary.skipped) == (0, 1, 0)
    assert repository.count_orphans(AGENT) == 0
    assert repository.list_for_agent(AGENT) == []


def test_retrain_counts_unexpected_errors_as_failed():
    ledger, _ = _ledger()
    ledger.add_source(AGENT, "url", "https://example.com/ok")
    ledger.add_source(AGENT, "url", "https://example.com/crash")
    original = ledger.reprocess_source

    async def flaky_reprocess(source_id, **kwargs):
        if ledger.get(source_id).source.endswith("crash"):
            raise RuntimeError("database went away")
        return await original(source_id, **kwargs)

    ledger.reprocess_source = flaky_reprocess

    summary = asyncio.run(ledger.retrain_all_sources(AGENT))

    assert (summary.success, summary.failed, summary.skipped) == (1, 1, 0)


def test_stale_processing_claim_is_taken_over(caplog):
    clock = FakeClock()
    ingest = FakeIngestClient()
    ledger, factory = _ledger(ingest=ingest, clock=clock)
    source = ledger.add_source(AGENT, "url", "https://example.com/faq")
    KnowledgeSourceRepository(factory).try_mark_processing(source.id, now=T0)

    clock.advance(minutes=5)
    assert asyncio.run(ledger.reprocess_source(source.id)).started is False

    clock.advance(minutes=6)
    result = asyncio.run(ledger.reprocess_source(source.id))

    assert (result.started, result.status) == (True, "ready")
    assert ingest.calls == [source.id]
    assert any(record.getMessage() == "knowledge_processing_taken_over" for record in caplog.records)


def test_claim_outcomes():
    ledger, factory = _ledger()
    repository = KnowledgeSourceRepository(factory)
    source = ledger.add_source(AGENT, "url", "https://example.com/faq")

    assert repository.try_mark_processing("missing", now=T0) == ClaimOutcome.MISSING
    assert repository.try_mark_processing(source.id, now=T0) == ClaimOutcome.CLAIMED
    assert repository.try_mark_processing(source.id, now=T0, stale_before=T0) == ClaimOutcome.BUSY
    later = T0 + timedelta(hours=1)
    assert repository.try_mark_processing(source.id, now=later, stale_before=later - timedelta(minutes=10)) == ClaimOutcome.TAKEN_OVER


def test_retrain_includes_sources_stuck_in_processing():
    clock = FakeClock()
    ledger, factory = _ledger(clock=clock)
    stuck = ledger.add_source(AGENT, "url", "https://example.com/stuck")
    KnowledgeSourceRepository(factory).try_mark_processing(stuck.id, now=T0)
    clock.advance(hours=1)

    summary = asyncio.run(ledger.retrain_all_sources(AGENT))

    assert (summary.success, summary.skipped) == (1, 0)
    assert ledger.get(stuck.id).status == "ready"


def test_refresh_marks_unchanged_sources_checked_without_ingesting():
    clock = FakeClock()
    ingest = FakeIngestClient()
    hasher = FakeContentHasher({"https://example.com/faq": "v1"})
    ledger, _ = _ledger(ingest=ingest, hasher=hasher, clock=clock)
    source = ledger.add_source(AGENT, "url", "https://example.com/faq")
    asyncio.run(ledger.reprocess_source(source.id))
    clock.advance(hours=25)

    summary = asyncio.run(ledger.refresh_due_sources())

    assert (summary.checked, summary.unchanged, summary.changed) == (1, 1, 0)
    assert ingest.calls == [source.id]
    stored = ledger.get(source.id)
    assert stored.last_synced_at == clock.current
    assert stored.last_content_hash == "v1"


def test_refresh_reprocesses_changed_sources():
    clock = FakeClock()
    ingest = FakeIngestClient()
    hasher = FakeContentHasher({"https://example.com/faq": "v1"})
    ledger, _ = _ledger(ingest=ingest, hasher=hasher, clock=clock)
    source = ledger.add_source(AGENT, "url", "https://example.com/faq")
    asyncio.run(ledger.reprocess_source(source.id))
    hasher.hashes["https://example.com/faq"] = "v2"
    clock.advance(hours=25)

    summary = asyncio.run(ledger.refresh_due_sources(AGENT))

    assert (summary.checked, summary.changed, summary.unchanged) == (1, 1, 0)
    assert len(ingest.calls) == 2
    assert ingest.request_ids[-1] is not None
    assert ledger.get(source.id).last_content_hash == "v2"


def test_refresh_skips_manual_and_not_yet_due_sources():
    clock = FakeClock()
    ingest = FakeIngestClient()
    ledger, _ = _ledger(ingest=ingest, clock=clock)
    manual = ledger.add_source(AGENT, "url", "https://example.com/manual", refresh_interval="manual")
    recent = ledger.add_source(AGENT, "url", "https://example.com/recent")
    asyncio.run(ledger.reprocess_source(recent.id))
    ingest.calls.clear()
    clock.advance(hours=2)

    summary = asyncio.run(ledger.refresh_due_sources())

    assert summary.checked == 0
    assert ingest.calls == []
    assert ledger.get(manual.id).status == "pending"


def test_refresh_follows_new_synced_content_and_reports_failures():
    ingest = FakeIngestClient(fail_sources={"https://example.com/broken"})
    ledger, _ = _ledger(ingest=ingest)
    synced = ledger.register_synced_content(AGENT, "home", "https://example.com", upstream_hash="digest-1", record_count=3)
    asyncio.run(ledger.reprocess_source(synced.id))
    ledger.register_synced_content(AGENT, "home", "https://example.com", upstream_hash="digest-2", record_count=4)
    ledger.add_source(AGENT, "url", "https://example.com/broken")
    ledger.add_source("agent-2", "url", "https://example.org/elsewhere")

    summary = asyncio.run(ledger.refresh_due_sources(AGENT))

    assert (summary.checked, summary.changed, summary.failed) == (2, 1, 1)
    assert ledger.get(synced.id).last_content_hash == "digest-2"
    assert len(ingest.calls) == 3
