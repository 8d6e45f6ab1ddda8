from __future__ import annotations

import logging
from typing import Any

import httpx

from content_sync.services.connectors.base import RemoteContentType, RemoteFetchError, RemotePage, RemoteShapeError

LOGGER = logging.getLogger(__name__)


def _parse_int_header(response: httpx.Response, name: str) -> int | None:
    raw = response.headers.get(name)
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


class WordPressClient:
    """Async reader for a WordPress-style REST API rooted at ``site_url``."""

    def __init__(
        self,
        site_url: str,
        *,
        timeout_seconds: float | None = None,
        api_root: str | None = None,
        namespace: str | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if timeout_seconds is None or api_root is None or namespace is None or user_agent is None:
            from content_sync.core.config import settings

            timeout_seconds = timeout_seconds or settings.WORDPRESS_REQUEST_TIMEOUT_SECONDS
            api_root = api_root or settings.WORDPRESS_API_ROOT
            namespace = namespace or settings.WORDPRESS_API_NAMESPACE
            user_agent = user_agent or settings.WORDPRESS_USER_AGENT
        self.site_url = str(site_url).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.api_root = "/" + str(api_root).strip("/")
        self.namespace = str(namespace).strip("/")
        self.user_agent = str(user_agent)
        self._transport = transport

    def root_url(self) -> str:
        return f"{self.site_url}{self.api_root}"

    def collection_url(self, rest_base: str) -> str:
        return f"{self.root_url()}/{self.namespace}/{rest_base.strip('/')}"

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        headers = {"Accept": "application/json", "User-Agent": self.user_agent}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport, headers=headers) as client:
                response = await client.get(url, params=params, follow_redirects=True)
        except httpx.TimeoutException as exc:
            raise RemoteFetchError("R-REMOTE-TIMEOUT", f"Request to {url} timed out", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise RemoteFetchError("R-REMOTE-UNREACHABLE", f"Request to {url} failed: {exc}", retryable=True) from exc
        if response.status_code >= 400:
            raise RemoteFetchError(
                "R-REMOTE-HTTP-STATUS",
                f"WordPress API returned status {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteShapeError("Invalid response format from WordPress API") from exc

    async def fetch_root(self) -> dict[str, Any]:
        body = self._json(await self._get(self.root_url()))
        if not isinstance(body, dict):
            raise RemoteShapeError("WordPress API root document is not an object")
        return body

    async def fetch_types(self) -> list[RemoteContentType]:
        body = self._json(await self._get(f"{self.root_url()}/{self.namespace}/types"))
        if not isinstance(body, dict):
            raise RemoteShapeError("WordPress type registry is not an object")
        types: list[RemoteContentType] = []
        for key, info in body.items():
            if not isinstance(info, dict):
                continue
            slug = str(info.get("slug") or key)
            rest_base = str(info.get("rest_base") or slug)
            name = str(info.get("name") or slug)
            types.append(RemoteContentType(slug=slug, name=name, rest_base=rest_base, metadata={"namespace": info.get("rest_namespace")}))
        return types

    async def fetch_page(self, rest_base: str, *, page: int, per_page: int) -> RemotePage:
        response = await self._get(self.collection_url(rest_base), params={"page": page, "per_page": per_page})
        body = self._json(response)
        if not isinstance(body, list):
            raise RemoteShapeError(f"Collection /{rest_base} did not return a list")
        records = [item for item in body if isinstance(item, dict)]
        if len(records) != len(body):
            LOGGER.warning(
                "wordpress_non_object_records_dropped",
                extra={"event": "wordpress_non_object_records_dropped", "rest_base": rest_base, "page": page, "dropped": len(body) - len(records)},
            )
        return RemotePage(
            records=records,
            page=page,
            total=_parse_int_header(response, "X-WP-Total"),
            total_pages=_parse_int_header(response, "X-WP-TotalPages"),
        )
