from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from content_sync.core.time_utils import utcnow
from content_sync.db.repositories.connections import EndpointConfig, EndpointConfigRepository, SiteConnection, SiteConnectionRepository
from content_sync.db.repositories.field_mappings import FieldMappingRepository
from content_sync.db.repositories.sync_records import SyncRecordRepository, UpsertOutcome
from content_sync.db.session import SessionFactory
from content_sync.services import telemetry
from content_sync.services.community_matcher import CommunityIndex, community_references, match_community
from content_sync.services.connectors.base import RemoteContentClient, RemoteFetchError, RemotePage
from content_sync.services.connectors.wordpress import WordPressClient
from content_sync.services.extraction import JsonCompletionClient, ParseMode, RecordParser, build_parser, source_record_id
from content_sync.services.field_mapper import MappingIncompleteError, RecordMappingError, missing_required, target_fields_for
from content_sync.services.knowledge_ledger import KnowledgeLedger
from content_sync.services.sync_state import SyncPhase, SyncStateMachine

LOGGER = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    COMPLETED = "completed"
    ALREADY_RUNNING = "already_running"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordError:
    source_record_id: str | None
    error_code: str
    message: str


@dataclass(frozen=True)
class SyncResult:
    status: SyncStatus
    imported: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    linked: int = 0
    total_remote: int = 0
    truncated: bool = False
    error_code: str | None = None
    error_message: str | None = None
    errors: list[RecordError] = field(default_factory=list)


@dataclass
class _RunCounters:
    imported: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    total_remote: int = 0
    linked: int = 0
    truncated: bool = False
    errors: list[RecordError] = field(default_factory=list)


class _FatalSyncError(Exception):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def content_fingerprint(fields: dict[str, Any]) -> str:
    canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def upstream_digest(fingerprints: list[str]) -> str:
    return hashlib.sha256("\n".join(sorted(fingerprints)).encode("utf-8")).hexdigest()


class SyncOrchestrator:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        client_factory: Callable[[str], RemoteContentClient] | None = None,
        ledger: KnowledgeLedger | None = None,
        llm_client: JsonCompletionClient | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        max_elapsed_seconds: float | None = None,
        max_reported_errors: int | None = None,
        now_fn: Callable[[], datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
    ):
        from content_sync.core.config import settings

        self._page_size = int(page_size or settings.SYNC_PAGE_SIZE)
        self._max_pages = int(max_pages or settings.SYNC_MAX_PAGES)
        self._max_elapsed_seconds = float(max_elapsed_seconds or settings.SYNC_MAX_ELAPSED_SECONDS)
        self._max_reported_errors = int(max_reported_errors if max_reported_errors is not None else settings.SYNC_MAX_REPORTED_ERRORS)
        self._connections = SiteConnectionRepository(session_factory)
        self._endpoints = EndpointConfigRepository(session_factory)
        self._mappings = FieldMappingRepository(session_factory)
        self._records = SyncRecordRepository(session_factory)
        self._state = SyncStateMachine(session_factory, now_fn=now_fn)
        self._client_factory = client_factory or WordPressClient
        self._ledger = ledger
        self._llm_client = llm_client
        self._now = now_fn
        self._clock = clock

    async def sync(self, agent_id: str, kind: str, *, mode: ParseMode = ParseMode.STRUCTURED) -> SyncResult:
        """Load the stored connection, endpoint and mapping for (agent, kind) and import."""
        connection = self._connections.get(agent_id)
        if connection is None:
            return SyncResult(status=SyncStatus.FAILED, error_code="C-CONNECTION-NOT-FOUND", error_message=f"No site connection for agent {agent_id}")
        config = self._endpoints.get(agent_id, kind)
        if config is None or not config.rest_base:
            return SyncResult(status=SyncStatus.FAILED, error_code="S-ENDPOINT-NOT-CONFIGURED", error_message=f"No {kind} endpoint configured")
        stored = self._mappings.get(agent_id, kind)
        if mode == ParseMode.STRUCTURED and (stored is None or not stored.confirmed):
            return SyncResult(
                status=SyncStatus.FAILED,
                error_code=MappingIncompleteError.error_code,
                error_message=f"The {kind} field mapping has not been confirmed",
            )
        return await self.import_entities(connection, config, stored.mapping if stored else {}, mode=mode)

    async def import_entities(
        self,
        connection: SiteConnection,
        config: EndpointConfig,
        mapping: dict[str, str],
        *,
        mode: ParseMode = ParseMode.STRUCTURED,
    ) -> SyncResult:
        agent_id, kind = connection.agent_id, config.kind
        target_fields = target_fields_for(kind)
        if mode == ParseMode.STRUCTURED:
            missing = missing_required(mapping, target_fields)
            if missing:
                return SyncResult(
                    status=SyncStatus.FAILED,
                    error_code=MappingIncompleteError.error_code,
                    error_message=f"Required fields are not mapped: {', '.join(missing)}",
                )

        if not self._state.try_begin(agent_id, kind):
            LOGGER.info("sync_already_running", extra={"event": "sync_already_running", "agent_id": agent_id, "kind": kind})
            return SyncResult(status=SyncStatus.ALREADY_RUNNING, error_code="S-SYNC-IN-PROGRESS", error_message="Sync already in progress")

        started_at = self._clock()
        counters = _RunCounters()
        parser = build_parser(mode, kind=kind, mapping=mapping, target_fields=target_fields, llm_client=self._llm_client)
        LOGGER.info(
            "sync_started",
            extra={"event": "sync_started", "agent_id": agent_id, "kind": kind, "rest_base": config.rest_base, "mode": mode.value},
        )
        try:
            client = self._client_factory(connection.site_url)
            try:
                first_page = await client.fetch_page(config.rest_base, page=1, per_page=self._page_size)
            except RemoteFetchError as exc:
                raise _FatalSyncError(exc.error_code, exc.message) from exc
            self._state.advance(agent_id, kind, SyncPhase.IMPORTING)
            communities = self._community_index(connection) if kind == "home" else None
            await self._walk_pages(
                client,
                config.rest_base,
                first_page,
                parser,
                counters,
                agent_id=agent_id,
                kind=kind,
                site_url=connection.site_url,
                communities=communities,
                started_at=started_at,
            )
        except _FatalSyncError as exc:
            self._state.fail(agent_id, kind, error_code=exc.error_code, error_message=exc.message)
            result = self._result(SyncStatus.FAILED, counters, error_code=exc.error_code, error_message=exc.message)
            self._finish(agent_id, kind, result, started_at)
            return result
        except Exception as exc:
            self._state.fail(agent_id, kind, error_code="S-SYNC-UNEXPECTED", error_message=str(exc) or type(exc).__name__)
            LOGGER.exception("sync_crashed", extra={"event": "sync_crashed", "agent_id": agent_id, "kind": kind})
            raise

        self._state.advance(agent_id, kind, SyncPhase.IDLE)
        self._endpoints.record_sync(
            agent_id,
            kind,
            synced_at=self._now(),
            count=counters.imported + counters.updated + counters.unchanged,
        )
        self._register_with_ledger(connection, kind)
        result = self._result(SyncStatus.COMPLETED, counters)
        self._finish(agent_id, kind, result, started_at)
        return result

    async def _walk_pages(
        self,
        client: RemoteContentClient,
        rest_base: str,
        page: RemotePage,
        parser: RecordParser,
        counters: _RunCounters,
        *,
        agent_id: str,
        kind: str,
        site_url: str,
        communities: CommunityIndex | None,
        started_at: float,
    ) -> None:
        page_number = 1
        while True:
            await self._process_records(
                page.records,
                parser,
                counters,
                agent_id=agent_id,
                kind=kind,
                site_url=site_url,
                communities=communities,
            )
            if not page.records:
                return
            if page.total_pages is not None and page_number >= page.total_pages:
                return
            if page.total_pages is None and len(page.records) < self._page_size:
                return
            if page_number >= self._max_pages or self._clock() - started_at >= self._max_elapsed_seconds:
                counters.truncated = True
                LOGGER.warning(
                    "sync_truncated",
                    extra={"event": "sync_truncated", "agent_id": agent_id, "kind": kind, "pages": page_number},
                )
                return
            page_number += 1
            try:
                page = await client.fetch_page(rest_base, page=page_number, per_page=self._page_size)
            except RemoteFetchError as exc:
                # WordPress answers 400 for a page past the end
                if exc.status_code == 400:
                    return
                raise _FatalSyncError(exc.error_code, f"Page {page_number}: {exc.message}") from exc

    async def _process_records(
        self,
        records: list[dict[str, Any]],
        parser: RecordParser,
        counters: _RunCounters,
        *,
        agent_id: str,
        kind: str,
        site_url: str,
        communities: CommunityIndex | None,
    ) -> None:
        for record in records:
            counters.total_remote += 1
            source_id: str | None = None
            try:
                source_id = source_record_id(record)
                fields = await parser.parse(record)
                linked_record_id = self._link_community(record, fields, communities)
                outcome = self._records.upsert(
                    agent_id=agent_id,
                    kind=kind,
                    site_url=site_url,
                    source_record_id=source_id,
                    fields=fields,
                    fingerprint=content_fingerprint(fields),
                    now=self._now(),
                    linked_record_id=linked_record_id,
                )
            except RecordMappingError as exc:
                self._record_failure(counters, source_id, RecordMappingError.error_code, exc.message, agent_id=agent_id, kind=kind)
                continue
            except SQLAlchemyError as exc:
                self._record_failure(counters, source_id, "S-RECORD-PERSIST", str(exc)[:512], agent_id=agent_id, kind=kind)
                continue
            if linked_record_id is not None:
                counters.linked += 1
            if outcome == UpsertOutcome.INSERTED:
                counters.imported += 1
            elif outcome == UpsertOutcome.UPDATED:
                counters.updated += 1
            else:
                counters.unchanged += 1

    def _record_failure(
        self,
        counters: _RunCounters,
        source_id: str | None,
        error_code: str,
        message: str,
        *,
        agent_id: str,
        kind: str,
    ) -> None:
        counters.failed += 1
        if len(counters.errors) < self._max_reported_errors:
            counters.errors.append(RecordError(source_record_id=source_id, error_code=error_code, message=message))
        LOGGER.warning(
            "sync_record_failed",
            extra={
                "event": "sync_record_failed",
                "agent_id": agent_id,
                "kind": kind,
                "source_record_id": source_id,
                "error_code": error_code,
                "error_message": message[:512],
            },
        )

    def _community_index(self, connection: SiteConnection) -> CommunityIndex:
        records = self._records.list_for_agent(connection.agent_id, "community", site_url=connection.site_url)
        return CommunityIndex.from_records(records)

    @staticmethod
    def _link_community(record: dict[str, Any], fields: dict[str, Any], communities: CommunityIndex | None) -> str | None:
        if not communities:
            return None
        match = match_community(
            communities,
            community_ids=community_references(record),
            city=fields.get("city"),
            state=fields.get("state"),
            community_name=fields.get("community_name"),
        )
        return match.record_id if match is not None else None

    def _register_with_ledger(self, connection: SiteConnection, kind: str) -> None:
        if self._ledger is None:
            return
        fingerprints = self._records.fingerprints(connection.agent_id, kind, site_url=connection.site_url)
        try:
            self._ledger.register_synced_content(
                connection.agent_id,
                kind,
                connection.site_url,
                upstream_hash=upstream_digest(fingerprints),
                record_count=len(fingerprints),
            )
        except SQLAlchemyError as exc:
            LOGGER.warning(
                "sync_ledger_registration_failed",
                extra={"event": "sync_ledger_registration_failed", "agent_id": connection.agent_id, "kind": kind, "error_message": str(exc)[:512]},
            )

    @staticmethod
    def _result(status: SyncStatus, counters: _RunCounters, *, error_code: str | None = None, error_message: str | None = None) -> SyncResult:
        return SyncResult(
            status=status,
            imported=counters.imported,
            updated=counters.updated,
            unchanged=counters.unchanged,
            failed=counters.failed,
            linked=counters.linked,
            total_remote=counters.total_remote,
            truncated=counters.truncated,
            error_code=error_code,
            error_message=error_message,
            errors=list(counters.errors),
        )

    def _finish(self, agent_id: str, kind: str, result: SyncResult, started_at: float) -> None:
        telemetry.record_sync_run(
            agent_id=agent_id,
            kind=kind,
            status=result.status.value,
            duration_seconds=self._clock() - started_at,
            counts={"imported": result.imported, "updated": result.updated, "unchanged": result.unchanged, "failed": result.failed},
        )
