"""
Query state: persist and retrieve the last list query of a session.

Written by every successful db_query; read by pagination continuation,
positional ("the 2nd one") resolution and CRUD tools that need the entity
just shown. Keyed "query-state:{session_id}", TTL-bound, last write wins.
"""

import time
from typing import Any, Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel

from autonomous_rag.core.logging import get_logger

log = get_logger(__name__)


class EntitySummary(BaseModel):
    position: int
    id: int
    summary: str


class QueryState(BaseModel):
    entity_name: str
    backing_reference: str
    filters: dict[str, Any] = {}
    user_id: Any = None
    options: dict[str, Any] = {}
    page: int = 1
    total_pages: int = 1
    total_count: int = 0
    entity_ids: list[int] = []
    entity_summaries: list[EntitySummary] = []
    start_position: int = 1
    end_position: int = 0
    from_node: str | None = None
    selected_entity: dict[str, Any] | None = None

    def visible_list(self) -> dict[str, Any]:
        """Shape consumed by the decision prompt and positional resolution."""
        return {
            "entity_type": self.entity_name,
            "entity_ids": list(self.entity_ids),
            "entity_data": [s.model_dump() for s in self.entity_summaries],
            "start_position": self.start_position,
            "end_position": self.end_position,
        }


def state_key(session_id: str) -> str:
    return f"query-state:{session_id}"


class SessionStore(Protocol):
    async def get(self, session_id: str) -> QueryState | None: ...

    async def put(self, session_id: str, state: QueryState, ttl_seconds: int) -> None: ...

    async def forget(self, session_id: str) -> None: ...


class InMemorySessionStore:
    """Process-local store with monotonic-clock expiry (tests, single worker dev)."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._items: dict[str, tuple[float, str]] = {}

    async def get(self, session_id: str) -> QueryState | None:
        key = state_key(session_id)
        entry = self._items.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= self._clock():
            self._items.pop(key, None)
            return None
        return QueryState.model_validate_json(payload)

    async def put(self, session_id: str, state: QueryState, ttl_seconds: int) -> None:
        now = self._clock()
        self._evict_expired(now)
        self._items[state_key(session_id)] = (now + ttl_seconds, state.model_dump_json())

    async def forget(self, session_id: str) -> None:
        self._items.pop(state_key(session_id), None)

    def size(self) -> int:
        """Stored entries, including expired ones not yet evicted."""
        return len(self._items)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._items.items() if expires_at <= now]
        for key in expired:
            del self._items[key]


class RedisSessionStore:
    """Shared store for multi-worker deployments."""

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    @classmethod
    def from_url(cls, url: str) -> "RedisSessionStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, session_id: str) -> QueryState | None:
        payload = await self.redis.get(state_key(session_id))
        if not payload:
            return None
        try:
            return QueryState.model_validate_json(payload)
        except ValueError as exc:
            log.warning("query_state_corrupt", session_id=session_id, error=str(exc))
            return None

    async def put(self, session_id: str, state: QueryState, ttl_seconds: int) -> None:
        await self.redis.set(state_key(session_id), state.model_dump_json(), ex=max(1, int(ttl_seconds)))

    async def forget(self, session_id: str) -> None:
        await self.redis.delete(state_key(session_id))

    async def ping(self) -> bool:
        return bool(await self.redis.ping())
