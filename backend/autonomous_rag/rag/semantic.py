"""Semantic-search collaborator interface, consumed by the vector_search tool."""

from typing import Any, Protocol

from pydantic import BaseModel


class SemanticSearchResponse(BaseModel):
    content: str = ""
    metadata: dict[str, Any] = {}

    @property
    def context_count(self) -> int:
        return int(self.metadata.get("context_count") or 0)

    @property
    def is_empty(self) -> bool:
        return not self.content.strip() or self.context_count == 0


class SemanticSearch(Protocol):
    async def search(
        self,
        query: str,
        *,
        collections: list[str] | None = None,
        user_id: Any = None,
        limit: int = 5,
    ) -> SemanticSearchResponse: ...
