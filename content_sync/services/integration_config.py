from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from content_sync.core.intervals import parse_sync_interval
from content_sync.core.time_utils import utcnow
from content_sync.db.errors import ConnectionNotFoundError
from content_sync.db.repositories.connections import EndpointConfigRepository
from content_sync.db.repositories.sync_state import SyncStateRepository
from content_sync.db.session import SessionFactory
from content_sync.schemas.config import ConfigUpdate, EndpointStatus, FieldMappingsConfig, IntegrationConfig
from content_sync.services.connection_registry import ConnectionRegistry, normalize_site_url
from content_sync.services.debounce import DebouncedWriter
from content_sync.services.field_mapper import FieldMappingStore

LOGGER = logging.getLogger(__name__)

_ENDPOINT_FIELDS = {"community_endpoint": "community", "home_endpoint": "home"}
_INTERVAL_FIELDS = {"community_sync_interval": "community", "home_sync_interval": "home"}


class IntegrationConfigService:
    """Reads and writes the per-agent integration configuration.

    ``edit`` goes through a debounced writer keyed by (agent, field); ``save`` writes
    a whole configuration immediately.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        registry: ConnectionRegistry | None = None,
        debounce_seconds: float | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._registry = registry or ConnectionRegistry(session_factory, now_fn=now_fn)
        self._endpoints = EndpointConfigRepository(session_factory)
        self._states = SyncStateRepository(session_factory)
        self._mappings = FieldMappingStore(session_factory)
        self._writer = DebouncedWriter(self._persist_field, delay_seconds=debounce_seconds)
        self._now = now_fn

    def load(self, agent_id: str) -> IntegrationConfig:
        connection = self._registry.get(agent_id)
        values: dict[str, Any] = {"site_url": connection.site_url if connection else None}
        for config in self._endpoints.list_for_agent(agent_id):
            values[f"{config.kind}_endpoint"] = config.rest_base or None
            values[f"{config.kind}_sync_interval"] = config.sync_interval
        mappings: dict[str, dict[str, str]] = {}
        for kind in ("community", "home"):
            stored = self._mappings.load(agent_id, kind)
            if stored is not None:
                mappings[kind] = dict(stored.mapping)
        values["field_mappings"] = FieldMappingsConfig(**mappings)
        return IntegrationConfig(**values)

    def save(self, agent_id: str, config: IntegrationConfig) -> IntegrationConfig:
        """Raises ``ConnectionNotFoundError`` when no site URL is stored or supplied."""
        if config.site_url:
            self._registry.save_url(agent_id, config.site_url)
        else:
            self._require_connection(agent_id)
        now = self._now()
        for kind in ("community", "home"):
            self._endpoints.upsert(
                agent_id,
                kind,
                now=now,
                rest_base=getattr(config, f"{kind}_endpoint") or "",
                sync_interval=getattr(config, f"{kind}_sync_interval").value,
            )
            mapping = getattr(config.field_mappings, kind)
            if mapping:
                self._mappings.save_draft(agent_id, kind, mapping, now=now)
        return self.load(agent_id)

    def edit(self, agent_id: str, field: str, value: str | None) -> None:
        """Queue a single-field edit; invalid values are rejected before they are queued."""
        update = ConfigUpdate(field=field, value=value)
        if update.field == "site_url" and update.value:
            normalize_site_url(update.value)
        if update.field in _INTERVAL_FIELDS:
            parse_sync_interval(update.value)
        if update.field in _ENDPOINT_FIELDS or update.field in _INTERVAL_FIELDS:
            self._require_connection(agent_id, allow_pending_site_url=True)
        self._writer.submit((agent_id, update.field), update.value)

    def _require_connection(self, agent_id: str, *, allow_pending_site_url: bool = False) -> None:
        if self._registry.get(agent_id) is not None:
            return
        # a queued site_url edit is written before later endpoint edits
        if allow_pending_site_url and self._writer.pending_value((agent_id, "site_url")):
            return
        raise ConnectionNotFoundError(agent_id)

    def pending_value(self, agent_id: str, field: str) -> Any:
        return self._writer.pending_value((agent_id, field))

    async def flush(self, agent_id: str | None = None, field: str | None = None) -> None:
        if agent_id is not None and field is not None:
            await self._writer.flush((agent_id, field))
            return
        await self._writer.flush()

    def _persist_field(self, key: Any, value: str | None) -> None:
        agent_id, field = key
        now = self._now()
        if field == "site_url":
            if not value:
                LOGGER.info("config_site_url_cleared_ignored", extra={"event": "config_site_url_cleared_ignored", "agent_id": agent_id})
                return
            self._registry.save_url(agent_id, value)
        elif field in _ENDPOINT_FIELDS or field in _INTERVAL_FIELDS:
            self._require_connection(agent_id)
        if field in _ENDPOINT_FIELDS:
            self._endpoints.upsert(agent_id, _ENDPOINT_FIELDS[field], now=now, rest_base=(value or "").strip().strip("/"))
        elif field in _INTERVAL_FIELDS:
            self._endpoints.upsert(agent_id, _INTERVAL_FIELDS[field], now=now, sync_interval=parse_sync_interval(value).value)
        LOGGER.info("config_field_persisted", extra={"event": "config_field_persisted", "agent_id": agent_id, "field": field})

    def endpoint_status(self, agent_id: str) -> list[EndpointStatus]:
        statuses = []
        for config in self._endpoints.list_for_agent(agent_id):
            state = self._states.get(agent_id, config.kind)
            statuses.append(
                EndpointStatus(
                    kind=config.kind,
                    rest_base=config.rest_base,
                    sync_interval=parse_sync_interval(config.sync_interval),
                    last_sync_at=config.last_sync_at,
                    last_sync_count=config.last_sync_count,
                    phase=state.phase if state else "idle",
                    last_error_message=state.last_error_message if state else None,
                )
            )
        return statuses
