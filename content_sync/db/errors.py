from __future__ import annotations


class RepositoryError(RuntimeError):
    def __init__(self, *, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class SourceNotFoundError(RepositoryError):
    def __init__(self, source_id: str) -> None:
        super().__init__(error_code="K-SOURCE-NOT-FOUND", message=f"Knowledge source not found: {source_id}")
        self.source_id = source_id


class ConnectionNotFoundError(RepositoryError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(error_code="C-CONNECTION-NOT-FOUND", message=f"No site connection for agent {agent_id}")
        self.agent_id = agent_id
