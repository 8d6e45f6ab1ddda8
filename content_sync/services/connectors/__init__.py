from content_sync.services.connectors.base import RemoteContentClient, RemoteFetchError, RemotePage, RemoteShapeError
from content_sync.services.connectors.wordpress import WordPressClient

__all__ = ["RemoteContentClient", "RemoteFetchError", "RemotePage", "RemoteShapeError", "WordPressClient"]
