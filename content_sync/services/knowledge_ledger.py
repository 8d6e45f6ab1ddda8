from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from content_sync.clients.ingest_client import ChildDescriptor, IngestError, IngestResult
from content_sync.core.intervals import SyncInterval, is_due, parse_sync_interval
from content_sync.core.logging import clear_request_context, get_request_id, set_request_context
from content_sync.core.time_utils import utcnow
from content_sync.db.errors import SourceNotFoundError
from content_sync.db.repositories.knowledge_sources import ClaimOutcome, KnowledgeSource, KnowledgeSourceRepository, NewChildSource
from content_sync.db.session import SessionFactory
from content_sync.models.models import KNOWLEDGE_SOURCE_TYPE
from content_sync.services import telemetry

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Any]


class NotAChildSourceError(ValueError):
    error_code = "K-NOT-A-CHILD"


class InvalidParentError(ValueError):
    error_code = "K-INVALID-PARENT"


class IngestCollaborator(Protocol):
    async def ingest(
        self,
        *,
        source_id: str,
        agent_id: str,
        source_type: str,
        source: str,
        metadata: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> IngestResult:
        ...


class ContentHasher(Protocol):
    async def current_hash(self, source: KnowledgeSource) -> str | None:
        ...


@dataclass(frozen=True)
class ReprocessResult:
    source_id: str
    started: bool
    status: str
    error_message: str | None = None


@dataclass(frozen=True)
class RetrainSummary:
    success: int
    failed: int
    skipped: int = 0


@dataclass(frozen=True)
class RefreshSummary:
    checked: int = 0
    changed: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class KnowledgeSourceView:
    source: KnowledgeSource
    outdated: bool
    children: list[KnowledgeSourceView] = field(default_factory=list)


def is_source_outdated(source: KnowledgeSource, *, now: datetime, current_hash: str | None = None) -> bool:
    """Derived staleness: upstream content changed, or the refresh interval has elapsed."""
    upstream = current_hash or source.metadata.get("upstream_hash")
    if upstream and upstream != source.last_content_hash:
        return True
    return is_due(source.last_synced_at, source.refresh_interval, now)


def _new_children(descriptors: list[ChildDescriptor]) -> list[NewChildSource]:
    return [
        NewChildSource(source_type=descriptor.source_type, source=descriptor.source, metadata=dict(descriptor.metadata or {}))
        for descriptor in descriptors
        if descriptor.source_type in KNOWLEDGE_SOURCE_TYPE
    ]


class KnowledgeLedger:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        ingest_client: IngestCollaborator | None = None,
        content_hasher: ContentHasher | None = None,
        retrain_concurrency: int | None = None,
        default_refresh_interval: str | None = None,
        processing_stale_after_seconds: int | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        if retrain_concurrency is None or default_refresh_interval is None or processing_stale_after_seconds is None:
            from content_sync.core.config import settings

            retrain_concurrency = retrain_concurrency or settings.KNOWLEDGE_RETRAIN_CONCURRENCY
            default_refresh_interval = default_refresh_interval or settings.KNOWLEDGE_DEFAULT_REFRESH_INTERVAL
            if processing_stale_after_seconds is None:
                processing_stale_after_seconds = settings.KNOWLEDGE_PROCESSING_STALE_AFTER_SECONDS
        if ingest_client is None:
            from content_sync.clients.ingest_client import IngestClient

            ingest_client = IngestClient()
        if content_hasher is None:
            from content_sync.clients.content_hasher import HttpContentHasher

            content_hasher = HttpContentHasher()
        self._repository = KnowledgeSourceRepository(session_factory)
        self._ingest = ingest_client
        self._hasher = content_hasher
        self._concurrency = max(1, int(retrain_concurrency))
        self._default_refresh_interval = parse_sync_interval(default_refresh_interval).value
        self._processing_stale_after = timedelta(seconds=int(processing_stale_after_seconds))
        self._now = now_fn
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, source_id: str) -> asyncio.Lock:
        lock = self._locks.get(source_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[source_id] = lock
        return lock

    def _is_busy(self, source: KnowledgeSource, now: datetime) -> bool:
        if source.status != "processing":
            return False
        return source.updated_at is None or now - source.updated_at < self._processing_stale_after

    def get(self, source_id: str) -> KnowledgeSource:
        return self._repository.require(source_id)

    def add_source(
        self,
        agent_id: str,
        source_type: str,
        source: str,
        *,
        parent_id: str | None = None,
        refresh_interval: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeSource:
        if source_type not in KNOWLEDGE_SOURCE_TYPE:
            raise ValueError(f"Unsupported knowledge source type: {source_type}")
        if parent_id is not None:
            parent = self._repository.get(parent_id)
            if parent is None or parent.parent_id is not None or parent.agent_id != agent_id:
                raise InvalidParentError(f"Parent source {parent_id} does not exist or is not a parent")
        interval = parse_sync_interval(refresh_interval).value if refresh_interval is not None else self._default_refresh_interval
        created = self._repository.create(
            agent_id=agent_id,
            source_type=source_type,
            source=source,
            parent_id=parent_id,
            refresh_interval=interval,
            metadata=metadata,
            now=self._now(),
        )
        LOGGER.info(
            "knowledge_source_added",
            extra={"event": "knowledge_source_added", "agent_id": agent_id, "source_id": created.id, "parent_id": parent_id},
        )
        return created

    def register_synced_content(
        self,
        agent_id: str,
        kind: str,
        site_url: str,
        *,
        upstream_hash: str,
        record_count: int,
    ) -> KnowledgeSource:
        source_type = f"wordpress_{kind}"
        source = self._repository.find_parent(agent_id, source_type, site_url)
        if source is None:
            source = self.add_source(
                agent_id,
                source_type,
                site_url,
                metadata={"auto_created": True, "wordpress_kind": kind},
            )
        self._repository.merge_metadata(source.id, {"upstream_hash": upstream_hash, "record_count": record_count}, now=self._now())
        return self._repository.require(source.id)

    async def check_outdated(self, source_id: str) -> bool:
        source = self._repository.require(source_id)
        current_hash = await self._hasher.current_hash(source)
        return is_source_outdated(source, now=self._now(), current_hash=current_hash)

    async def reprocess_source(self, source_id: str, *, request_id: str | None = None) -> ReprocessResult:
        source = self._repository.require(source_id)
        request_id = request_id or get_request_id()
        lock = self._lock_for(source_id)
        if lock.locked():
            return ReprocessResult(source_id=source_id, started=False, status=source.status)
        async with lock:
            now = self._now()
            claim = self._repository.try_mark_processing(source_id, now=now, stale_before=now - self._processing_stale_after)
            if claim == ClaimOutcome.MISSING:
                raise SourceNotFoundError(source_id)
            if claim == ClaimOutcome.BUSY:
                current = self._repository.require(source_id)
                LOGGER.info(
                    "knowledge_reprocess_skipped",
                    extra={"event": "knowledge_reprocess_skipped", "source_id": source_id, "status": current.status},
                )
                return ReprocessResult(source_id=source_id, started=False, status=current.status)
            if claim == ClaimOutcome.TAKEN_OVER:
                LOGGER.warning(
                    "knowledge_processing_taken_over",
                    extra={
                        "event": "knowledge_processing_taken_over",
                        "source_id": source_id,
                        "agent_id": source.agent_id,
                        "stale_since": source.updated_at.isoformat() if source.updated_at else None,
                    },
                )
            return await self._run_ingest(source, request_id=request_id)

    async def _run_ingest(self, source: KnowledgeSource, *, request_id: str | None) -> ReprocessResult:
        started_at = time.perf_counter()
        try:
            result = await self._ingest.ingest(
                source_id=source.id,
                agent_id=source.agent_id,
                source_type=source.source_type,
                source=source.source,
                metadata=source.metadata,
                request_id=request_id,
            )
        except IngestError as exc:
            return self._record_failure(source, exc.message, started_at)
        except Exception as exc:  # noqa: BLE001
            return self._record_failure(source, f"Unexpected ingest failure: {exc}", started_at)

        # stored hash must be comparable with what check_outdated computes later
        content_hash = source.metadata.get("upstream_hash") or await self._hasher.current_hash(source) or result.content_hash
        try:
            added = self._repository.complete_processing(
                source.id,
                content_hash=content_hash,
                chunk_count=result.chunk_count,
                children=_new_children(result.children),
                now=self._now(),
            )
        except SQLAlchemyError as exc:
            return self._record_failure(source, f"Could not store ingest result: {exc}", started_at)
        if added is None:
            LOGGER.warning(
                "knowledge_source_vanished",
                extra={"event": "knowledge_source_vanished", "source_id": source.id, "agent_id": source.agent_id},
            )
            telemetry.record_reprocess(source_id=source.id, result="deleted", duration_seconds=time.perf_counter() - started_at)
            return ReprocessResult(
                source_id=source.id,
                started=True,
                status="deleted",
                error_message="Source was deleted while it was being processed",
            )
        if added:
            LOGGER.info(
                "knowledge_children_added",
                extra={"event": "knowledge_children_added", "source_id": source.id, "agent_id": source.agent_id, "added": added},
            )
        telemetry.record_reprocess(source_id=source.id, result="ready", duration_seconds=time.perf_counter() - started_at)
        return ReprocessResult(source_id=source.id, started=True, status="ready")

    def _record_failure(self, source: KnowledgeSource, message: str, started_at: float) -> ReprocessResult:
        self._repository.mark_error(source.id, message=message, now=self._now())
        LOGGER.warning(
            "knowledge_reprocess_failed",
            extra={"event": "knowledge_reprocess_failed", "source_id": source.id, "agent_id": source.agent_id, "error_message": message[:512]},
        )
        telemetry.record_reprocess(source_id=source.id, result="error", duration_seconds=time.perf_counter() - started_at)
        return ReprocessResult(source_id=source.id, started=True, status="error", error_message=message[:512])

    def _require_child(self, source_id: str) -> KnowledgeSource:
        source = self._repository.require(source_id)
        if source.parent_id is None:
            raise NotAChildSourceError(f"Source {source_id} is a parent source")
        return source

    async def retry_child_source(self, source_id: str) -> ReprocessResult:
        self._require_child(source_id)
        return await self.reprocess_source(source_id)

    def delete_child_source(self, source_id: str) -> bool:
        self._require_child(source_id)
        return self._repository.delete_one(source_id)

    def delete_source(self, source_id: str) -> int:
        """Delete a source; a parent goes together with all of its children in one transaction."""
        self._repository.require(source_id)
        deleted = self._repository.delete_trees([source_id])
        self._locks.pop(source_id, None)
        LOGGER.info("knowledge_source_deleted", extra={"event": "knowledge_source_deleted", "source_id": source_id, "deleted": deleted})
        return deleted

    def delete_sources(self, source_ids: list[str]) -> int:
        unique_ids = list(dict.fromkeys(source_ids))
        deleted = self._repository.delete_trees(unique_ids)
        for source_id in unique_ids:
            self._locks.pop(source_id, None)
        LOGGER.info("knowledge_sources_deleted", extra={"event": "knowledge_sources_deleted", "requested": len(unique_ids), "deleted": deleted})
        return deleted

    async def retrain_all_sources(self, agent_id: str, progress_callback: ProgressCallback | None = None) -> RetrainSummary:
        parents = [source for source in self._repository.list_for_agent(agent_id) if source.is_parent]
        now = self._now()
        eligible = [source for source in parents if not self._is_busy(source, now)]
        total = len(eligible)
        counts = {"success": 0, "failed": 0, "skipped": len(parents) - total, "completed": 0}
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run_one(source: KnowledgeSource) -> None:
            async with semaphore:
                try:
                    result = await self.reprocess_source(source.id)
                except SourceNotFoundError:
                    result = ReprocessResult(source_id=source.id, started=False, status="deleted")
                except Exception as exc:  # noqa: BLE001
                    LOGGER.exception(
                        "knowledge_retrain_source_crashed",
                        extra={"event": "knowledge_retrain_source_crashed", "source_id": source.id, "agent_id": agent_id},
                    )
                    result = ReprocessResult(source_id=source.id, started=True, status="error", error_message=str(exc)[:512])
            if not result.started:
                counts["skipped"] += 1
            elif result.status == "ready":
                counts["success"] += 1
            else:
                counts["failed"] += 1
            counts["completed"] += 1
            if progress_callback is not None:
                outcome = progress_callback(counts["completed"], total)
                if inspect.isawaitable(outcome):
                    await outcome

        await asyncio.gather(*(run_one(source) for source in eligible))
        summary = RetrainSummary(success=counts["success"], failed=counts["failed"], skipped=counts["skipped"])
        LOGGER.info(
            "knowledge_retrain_completed",
            extra={
                "event": "knowledge_retrain_completed",
                "agent_id": agent_id,
                "success": summary.success,
                "failed": summary.failed,
                "skipped": summary.skipped,
            },
        )
        return summary

    def _refresh_candidates(self, agent_id: str | None, now: datetime) -> list[KnowledgeSource]:
        sources = self._repository.list_for_agent(agent_id) if agent_id is not None else self._repository.list_all()
        return [
            source
            for source in sources
            if parse_sync_interval(source.refresh_interval) != SyncInterval.MANUAL
            and not self._is_busy(source, now)
            and is_source_outdated(source, now=now)
        ]

    async def refresh_due_sources(self, agent_id: str | None = None) -> RefreshSummary:
        """Re-ingest outdated sources whose refresh interval is not ``manual``.

        When the upstream hash still equals the stored one, the source is only
        marked as checked and no ingest call is made.
        """
        candidates = self._refresh_candidates(agent_id, self._now())
        counts = {"checked": 0, "changed": 0, "unchanged": 0, "failed": 0, "skipped": 0}
        semaphore = asyncio.Semaphore(self._concurrency)

        async def refresh_one(source: KnowledgeSource) -> None:
            async with semaphore:
                set_request_context(request_id=uuid4().hex, agent_id=source.agent_id)
                try:
                    outcome = await self._refresh_source(source)
                except SourceNotFoundError:
                    outcome = "skipped"
                except Exception:  # noqa: BLE001
                    LOGGER.exception(
                        "knowledge_refresh_source_crashed",
                        extra={"event": "knowledge_refresh_source_crashed", "source_id": source.id},
                    )
                    outcome = "failed"
                finally:
                    clear_request_context()
            counts["checked"] += 1
            counts[outcome] += 1

        await asyncio.gather(*(refresh_one(source) for source in candidates))
        summary = RefreshSummary(**counts)
        LOGGER.info(
            "knowledge_refresh_completed",
            extra={
                "event": "knowledge_refresh_completed",
                "agent_id": agent_id,
                "checked": summary.checked,
                "changed": summary.changed,
                "unchanged": summary.unchanged,
                "failed": summary.failed,
                "skipped": summary.skipped,
            },
        )
        return summary

    async def _refresh_source(self, source: KnowledgeSource) -> str:
        current_hash = await self._hasher.current_hash(source) or source.metadata.get("upstream_hash")
        if current_hash and current_hash == source.last_content_hash and source.status == "ready":
            if not self._repository.mark_checked(source.id, now=self._now()):
                return "skipped"
            LOGGER.info("knowledge_source_unchanged", extra={"event": "knowledge_source_unchanged", "source_id": source.id})
            return "unchanged"
        result = await self.reprocess_source(source.id)
        if not result.started:
            return "skipped"
        return "changed" if result.status == "ready" else "failed"

    def list_tree(self, agent_id: str, *, now: datetime | None = None) -> list[KnowledgeSourceView]:
        moment = now or self._now()
        sources = self._repository.list_for_agent(agent_id)
        children: dict[str, list[KnowledgeSourceView]] = {}
        for source in sources:
            if source.parent_id is not None:
                children.setdefault(source.parent_id, []).append(
                    KnowledgeSourceView(source=source, outdated=is_source_outdated(source, now=moment))
                )
        return [
            KnowledgeSourceView(
                source=source,
                outdated=is_source_outdated(source, now=moment),
                children=children.get(source.id, []),
            )
            for source in sources
            if source.parent_id is None
        ]
