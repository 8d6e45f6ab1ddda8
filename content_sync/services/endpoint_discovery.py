from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from content_sync.services.connectors.base import RemoteContentClient, RemoteContentType, RemoteFetchError, RemoteShapeError
from content_sync.services.connectors.wordpress import WordPressClient

LOGGER = logging.getLogger(__name__)

COMMUNITY_KEYWORDS = (
    "community",
    "communities",
    "neighborhood",
    "neighbourhood",
    "location",
    "locations",
    "site",
    "sites",
    "park",
    "parks",
)
HOME_KEYWORDS = ("home", "homes", "property", "properties", "listing", "listings", "house", "houses", "unit", "units")

CORE_TYPES = frozenset(
    {
        "posts",
        "pages",
        "media",
        "blocks",
        "templates",
        "template-parts",
        "navigation",
        "comments",
        "search",
        "categories",
        "tags",
        "users",
        "settings",
        "themes",
        "plugins",
        "block-types",
        "block-patterns",
        "block-directory",
        "menu-items",
        "menus",
        "menu-locations",
        "global-styles",
        "font-families",
        "font-collections",
        "sidebars",
        "widgets",
        "widget-types",
        "statuses",
        "taxonomies",
        "types",
        "post",
        "page",
        "attachment",
        "nav_menu_item",
    }
)

_ROUTE_RE = re.compile(r"^/wp/v2/([a-z0-9_-]+)$", re.IGNORECASE)


class EndpointClassification(str, Enum):
    COMMUNITY = "community"
    HOME = "home"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DiscoveredEndpoint:
    slug: str
    display_name: str
    rest_base: str
    classification: EndpointClassification


@dataclass(frozen=True)
class DiscoveredEndpoints:
    community_endpoints: list[DiscoveredEndpoint] = field(default_factory=list)
    home_endpoints: list[DiscoveredEndpoint] = field(default_factory=list)
    other_endpoints: list[DiscoveredEndpoint] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.community_endpoints or self.home_endpoints or self.other_endpoints)


def _is_core_type(slug: str, rest_base: str) -> bool:
    lowered = {slug.lower(), rest_base.lower()}
    if lowered & CORE_TYPES:
        return True
    return any(value.startswith("wp_") for value in lowered)


def classify_endpoint(slug: str, name: str = "", rest_base: str = "") -> EndpointClassification:
    """Keyword heuristic; community keywords win over home keywords."""
    haystack = " ".join(value.lower() for value in (slug, name, rest_base) if value)
    if any(keyword in haystack for keyword in COMMUNITY_KEYWORDS):
        return EndpointClassification.COMMUNITY
    if any(keyword in haystack for keyword in HOME_KEYWORDS):
        return EndpointClassification.HOME
    return EndpointClassification.UNKNOWN


def _display_name(slug: str) -> str:
    return slug.replace("-", " ").replace("_", " ").strip().title()


def types_from_routes(routes: Any) -> list[RemoteContentType]:
    if not isinstance(routes, dict):
        raise RemoteShapeError("WordPress root document has no routes map")
    found: list[RemoteContentType] = []
    for route in routes:
        match = _ROUTE_RE.match(str(route))
        if not match:
            continue
        slug = match.group(1)
        found.append(RemoteContentType(slug=slug, name=_display_name(slug), rest_base=slug))
    return found


def classify_types(types: list[RemoteContentType]) -> DiscoveredEndpoints:
    result = DiscoveredEndpoints()
    seen: set[str] = set()
    for item in sorted(types, key=lambda t: t.rest_base):
        if not item.rest_base or item.rest_base in seen or _is_core_type(item.slug, item.rest_base):
            continue
        seen.add(item.rest_base)
        classification = classify_endpoint(item.slug, item.name, item.rest_base)
        endpoint = DiscoveredEndpoint(
            slug=item.slug,
            display_name=item.name or _display_name(item.slug),
            rest_base=item.rest_base,
            classification=classification,
        )
        if classification == EndpointClassification.COMMUNITY:
            result.community_endpoints.append(endpoint)
        elif classification == EndpointClassification.HOME:
            result.home_endpoints.append(endpoint)
        else:
            result.other_endpoints.append(endpoint)
    return result


class EndpointDiscovery:
    def __init__(self, *, client_factory: Callable[[str], RemoteContentClient] | None = None):
        self._client_factory = client_factory or WordPressClient

    async def _list_types(self, client: RemoteContentClient) -> list[RemoteContentType]:
        try:
            return await client.fetch_types()
        except RemoteFetchError as exc:
            LOGGER.info(
                "endpoint_discovery_types_unavailable",
                extra={"event": "endpoint_discovery_types_unavailable", "error_code": exc.error_code, "site_url": client.site_url},
            )
        root = await client.fetch_root()
        return types_from_routes(root.get("routes"))

    async def discover(self, site_url: str) -> DiscoveredEndpoints:
        """Suggest community and home endpoints; degrades to no suggestions on any failure."""
        try:
            client = self._client_factory(site_url)
            types = await self._list_types(client)
            result = classify_types(types)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "endpoint_discovery_failed",
                extra={
                    "event": "endpoint_discovery_failed",
                    "site_url": site_url,
                    "error_code": getattr(exc, "error_code", "R-DISCOVERY-FAILED"),
                    "error_message": str(exc)[:512],
                },
            )
            return DiscoveredEndpoints()
        LOGGER.info(
            "endpoint_discovery_completed",
            extra={
                "event": "endpoint_discovery_completed",
                "site_url": site_url,
                "community_endpoints": len(result.community_endpoints),
                "home_endpoints": len(result.home_endpoints),
                "other_endpoints": len(result.other_endpoints),
            },
        )
        return result
