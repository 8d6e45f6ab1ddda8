from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlsplit

from content_sync.core.time_utils import utcnow
from content_sync.db.errors import ConnectionNotFoundError
from content_sync.db.repositories.connections import EndpointConfigRepository, SiteConnection, SiteConnectionRepository
from content_sync.db.repositories.field_mappings import FieldMappingRepository
from content_sync.db.repositories.sync_records import SyncRecordRepository
from content_sync.db.repositories.sync_state import SyncStateRepository
from content_sync.db.session import SessionFactory
from content_sync.services.connectors.base import RemoteContentClient, RemoteFetchError, RemoteShapeError
from content_sync.services.connectors.wordpress import WordPressClient

LOGGER = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_API_SUFFIX_RE = re.compile(r"/wp-json(?:/wp/v2(?:/[A-Za-z0-9_-]+)?)?$", re.IGNORECASE)


class InvalidSiteUrlError(ValueError):
    error_code = "C-INVALID-SITE-URL"


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    success: bool
    message: str
    item_count: int | None = None


def normalize_site_url(url: str) -> str:
    """Canonical form of a site URL: scheme present, lower-case host, no trailing slash or REST API path."""
    candidate = (url or "").strip()
    if not candidate:
        raise InvalidSiteUrlError("Site URL is required")
    if not _SCHEME_RE.match(candidate):
        candidate = f"https://{candidate}"
    candidate = _API_SUFFIX_RE.sub("", candidate.rstrip("/")).rstrip("/")
    parts = urlsplit(candidate)
    if parts.scheme.lower() not in {"http", "https"}:
        raise InvalidSiteUrlError(f"Unsupported URL scheme: {parts.scheme}")
    if not parts.hostname:
        raise InvalidSiteUrlError(f"Site URL has no host: {url!r}")
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path}"


class ConnectionRegistry:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        client_factory: Callable[[str], RemoteContentClient] | None = None,
        timeout_seconds: float | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        if timeout_seconds is None:
            from content_sync.core.config import settings

            timeout_seconds = settings.WORDPRESS_REQUEST_TIMEOUT_SECONDS
        self._connections = SiteConnectionRepository(session_factory)
        self._endpoints = EndpointConfigRepository(session_factory)
        self._mappings = FieldMappingRepository(session_factory)
        self._states = SyncStateRepository(session_factory)
        self._records = SyncRecordRepository(session_factory)
        self._client_factory = client_factory or WordPressClient
        self._timeout_seconds = float(timeout_seconds)
        self._now = now_fn

    def get(self, agent_id: str) -> SiteConnection | None:
        return self._connections.get(agent_id)

    async def test_connection(self, agent_id: str, url: str, *, endpoint: str | None = None, save: bool = False) -> TestResult:
        try:
            site_url = normalize_site_url(url)
        except InvalidSiteUrlError as exc:
            return TestResult(success=False, message=str(exc))

        try:
            result = await asyncio.wait_for(self._check_endpoint(site_url, endpoint), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            result = TestResult(success=False, message=f"Connection timed out after {self._timeout_seconds:g}s")
        except Exception as exc:  # noqa: BLE001
            result = TestResult(success=False, message=f"Connection failed: {exc}")

        LOGGER.info(
            "site_connection_tested",
            extra={
                "event": "site_connection_tested",
                "agent_id": agent_id,
                "site_url": site_url,
                "endpoint": endpoint,
                "success": result.success,
            },
        )
        if save and result.success:
            now = self._now()
            self._connections.save_url(agent_id, site_url, now=now)
            self._connections.record_test_result(agent_id, success=True, message=result.message, now=now)
        return result

    async def _check_endpoint(self, site_url: str, endpoint: str | None) -> TestResult:
        client = self._client_factory(site_url)
        rest_base = (endpoint or "").strip().strip("/")
        try:
            if rest_base:
                page = await client.fetch_page(rest_base, page=1, per_page=1)
                count = page.total if page.total is not None else len(page.records)
                return TestResult(success=True, message=f"Found {count} items at /{rest_base}", item_count=count)
            root = await client.fetch_root()
        except RemoteShapeError:
            return TestResult(success=False, message="Invalid response format from WordPress API")
        except RemoteFetchError as exc:
            if exc.status_code == 404 and rest_base:
                return TestResult(
                    success=False,
                    message=f'Endpoint "/{rest_base}" not found. Try a different custom post type slug or use auto-detect.',
                )
            return TestResult(success=False, message=exc.message)
        name = str(root.get("name") or "").strip()
        return TestResult(success=True, message=f"Connected to {name}" if name else f"Connected to {site_url}")

    def save_url(self, agent_id: str, url: str) -> SiteConnection:
        site_url = normalize_site_url(url)
        written = self._connections.save_url(agent_id, site_url, now=self._now())
        if written:
            LOGGER.info("site_connection_saved", extra={"event": "site_connection_saved", "agent_id": agent_id, "site_url": site_url})
        connection = self._connections.get(agent_id)
        if connection is None:
            raise ConnectionNotFoundError(agent_id)
        return connection

    def disconnect(self, agent_id: str, *, delete_synced_data: bool) -> int:
        """Remove the agent's connection and its configuration.

        Synced records are removed only when ``delete_synced_data`` is explicitly
        ``True``. Returns the number of deleted records.
        """
        if not isinstance(delete_synced_data, bool):
            raise TypeError("delete_synced_data must be an explicit bool")
        deleted_records = self._records.delete_for_agent(agent_id) if delete_synced_data else 0
        self._endpoints.delete_for_agent(agent_id)
        self._mappings.delete_for_agent(agent_id)
        self._states.delete_for_agent(agent_id)
        self._connections.delete(agent_id)
        LOGGER.info(
            "site_connection_disconnected",
            extra={
                "event": "site_connection_disconnected",
                "agent_id": agent_id,
                "delete_synced_data": delete_synced_data,
                "deleted_records": deleted_records,
            },
        )
        return deleted_records
