from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class RemoteFetchError(Exception):
    def __init__(self, error_code: str, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.retryable = retryable


class RemoteShapeError(RemoteFetchError):
    def __init__(self, message: str) -> None:
        super().__init__("R-REMOTE-SHAPE", message)


@dataclass(frozen=True)
class RemotePage:
    records: list[dict[str, Any]]
    page: int
    total: int | None = None
    total_pages: int | None = None


@dataclass(frozen=True)
class RemoteContentType:
    slug: str
    name: str
    rest_base: str
    metadata: dict[str, Any] = field(default_factory=dict)


class RemoteContentClient(Protocol):
    site_url: str

    async def fetch_root(self) -> dict[str, Any]:
        ...

    async def fetch_types(self) -> list[RemoteContentType]:
        ...

    async def fetch_page(self, rest_base: str, *, page: int, per_page: int) -> RemotePage:
        ...
