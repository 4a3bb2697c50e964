"""
Filter service — applies AI-proposed filters to a RecordQuery and resolves
positional / ordinal ID references against the last visible entity list.

Supported filter keys:
  - id            → single record; exclusive, skips every other filter
  - date_field (defaults to the entity's configured date field), date_value,
    date_operator (= | >= | <= | between), date_end
  - status (status_field overrides the column name)
  - amount_field, amount_min, amount_max

A field is only applied when it is a real column on the target table, so a
hallucinated field name never reaches the record source.
"""

import re
from typing import Any

from autonomous_rag.catalog.models import EntityDescriptor, FilterConfig
from autonomous_rag.catalog.registry import EntityConfig
from autonomous_rag.core.logging import get_logger
from autonomous_rag.memory.query_state import SessionStore
from autonomous_rag.rag.schemas import Filters
from autonomous_rag.records.query import RecordQuery
from autonomous_rag.records.source import RecordSource

log = get_logger(__name__)

ORDINAL_WORDS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
}

_NUMBER = re.compile(r"(?:^|[^\d])(\d{1,10})(?:$|[^\d])")
_ORDINAL_SUFFIX = re.compile(r"\d\s*(?:st|nd|rd|th)\b")
_ORDINAL_WORD = re.compile(r"\b(" + "|".join(ORDINAL_WORDS) + r")\b")


class FilterService:
    def __init__(self, source: RecordSource, session_store: SessionStore | None = None):
        self.source = source
        self.session_store = session_store

    async def apply(
        self,
        query: RecordQuery,
        filters: Filters | None,
        entity: EntityDescriptor,
        options: dict[str, Any] | None = None,
    ) -> RecordQuery:
        if filters is None:
            return query
        options = options or {}
        table = entity.backing_table

        # ── ID filter (short-circuit) ─────────────────────────────────────────
        if filters.id is not None:
            resolved = await self.resolve_id_filter_value(filters.id, options)
            if resolved is not None:
                query.where("id", resolved)
                log.debug("id_filter_applied", id=resolved, raw_id=filters.id)
            else:
                log.warning("id_filter_unresolved", raw_id=filters.id)
            return query

        # ── Date filter ───────────────────────────────────────────────────────
        date_field = filters.date_field or entity.filter_config.date_field
        if date_field and filters.date_value:
            if await self.source.has_column(table, date_field):
                if filters.date_operator == "between" and filters.date_end:
                    query.where_between(date_field, filters.date_value, filters.date_end, date_only=True)
                else:
                    op = "=" if filters.date_operator == "between" else filters.date_operator
                    query.where(date_field, filters.date_value, op, date_only=True)

        # ── Status filter ─────────────────────────────────────────────────────
        if filters.status:
            status_field = filters.status_field or entity.filter_config.status_field or "status"
            if await self.source.has_column(table, status_field):
                query.where(status_field, filters.status)

        # ── Amount range ──────────────────────────────────────────────────────
        if filters.amount_min is not None or filters.amount_max is not None:
            amount_field = filters.amount_field or entity.filter_config.amount_field
            if amount_field and await self.source.has_column(table, amount_field):
                if filters.amount_min is not None:
                    query.where(amount_field, filters.amount_min, ">=")
                if filters.amount_max is not None:
                    query.where(amount_field, filters.amount_max, "<=")

        return query

    async def apply_user_scope(
        self,
        query: RecordQuery,
        config: EntityConfig,
        user_id: Any,
        filter_config: FilterConfig,
    ) -> RecordQuery:
        """Ownership predicate, applied before any AI filters."""
        if callable(config.scope_for_user):
            return config.scope_for_user(query, user_id)

        user_field = filter_config.user_field
        if user_field and await self.source.has_column(query.table, user_field):
            query.where(user_field, user_id)
        return query

    # ── ID resolution ─────────────────────────────────────────────────────────

    async def resolve_id_filter_value(self, raw_id: Any, options: dict[str, Any] | None = None) -> int | None:
        """
        Resolve a model-supplied ID filter value.

        Accepts raw IDs (42, "42", "#42"), ordinal words ("second"), ordinal
        suffixes ("2nd") and positional placeholders ("use 2nd ID from ENTITY
        IDS"). A bare number without ordinal context is a literal ID.
        """
        options = options or {}
        if isinstance(raw_id, bool):
            return None
        if isinstance(raw_id, int):
            return raw_id if raw_id > 0 else None
        if isinstance(raw_id, float):
            return int(raw_id) if raw_id > 0 else None
        if not isinstance(raw_id, str) or not raw_id.strip():
            return None

        text = raw_id.strip().lower()

        match = _NUMBER.search(text)
        if match:
            number = int(match.group(1))
            if "entity ids" in text or _ORDINAL_SUFFIX.search(text):
                resolved = await self.resolve_id_from_position(number, options)
                if resolved is not None:
                    return resolved
            if number > 0:
                return number

        word = _ORDINAL_WORD.search(text)
        if word:
            return await self.resolve_id_from_position(ORDINAL_WORDS[word.group(1)], options)

        return None

    async def resolve_id_from_position(self, position: int, options: dict[str, Any] | None = None) -> int | None:
        """
        Map a 1-based display position to a record ID from the visible list.

        Tries absolute positioning first (position 12 with start_position 11
        is the 2nd cached ID), then a position relative to the current page.
        """
        if position <= 0:
            return None
        options = options or {}

        entity_ids: list[int] = []
        start_position = 1

        visible = options.get("last_entity_list")
        if isinstance(visible, dict):
            entity_ids = list(visible.get("entity_ids") or [])
            start_position = int(visible.get("start_position") or 1)

        if not entity_ids and self.session_store is not None and options.get("session_id"):
            state = await self.session_store.get(options["session_id"])
            if state is not None:
                entity_ids = list(state.entity_ids)
                start_position = state.start_position

        if not entity_ids:
            return None

        if position >= start_position:
            index = position - start_position
            if index < len(entity_ids):
                return int(entity_ids[index])

        relative = position - 1
        if relative < len(entity_ids):
            return int(entity_ids[relative])

        return None
