"""
Query executor — structured list / count / aggregate / next-page queries
against entities resolved through the catalog.

Every public method returns a ToolResult. An entity that is not registered
locally but is listed by a remote node yields a routing signal
(should_route_to_node) instead of a failure. Record-source exceptions are
logged and turned into a generic failure so driver internals never reach
the response text.
"""

import math
from numbers import Number
from typing import Any, Callable

from autonomous_rag.catalog.builder import CatalogBuilder
from autonomous_rag.catalog.models import EntityDescriptor
from autonomous_rag.catalog.registry import EntityConfig
from autonomous_rag.core.config import Settings, clamp, option
from autonomous_rag.core.errors import EntityNotFoundError, UnknownFieldError
from autonomous_rag.core.logging import get_logger
from autonomous_rag.memory.query_state import EntitySummary, QueryState, SessionStore
from autonomous_rag.rag.filters import FilterService
from autonomous_rag.rag.schemas import AggregateParams, CountParams, Filters, ListParams, NextPageParams, ToolResult
from autonomous_rag.records.query import RecordQuery
from autonomous_rag.records.source import Record, RecordSource

log = get_logger(__name__)

_AGGREGATE_LABELS = {"sum": "Total", "avg": "Average", "min": "Minimum", "max": "Maximum", "count": "Count"}

# option keys replayed by db_query_next
_REPLAY_OPTIONS = ("per_page", "entities")


class QueryExecutor:
    def __init__(
        self,
        catalog: CatalogBuilder,
        source: RecordSource,
        filters: FilterService,
        session_store: SessionStore,
        settings: Settings,
    ):
        self.catalog = catalog
        self.source = source
        self.filters = filters
        self.session_store = session_store
        self.settings = settings

    def per_page(self, options: dict[str, Any] | None = None) -> int:
        return int(clamp(option(options, "per_page", self.settings.per_page), 1, 100, 10))

    def ttl_seconds(self) -> int:
        return max(1, self.settings.query_state_ttl_minutes) * 60

    # ── db_query ──────────────────────────────────────────────────────────────

    async def list_query(self, params: ListParams, user_id: Any, options: dict[str, Any], page: int = 1) -> ToolResult:
        resolved = self._resolve(params.model, "db_query")
        if isinstance(resolved, ToolResult):
            return resolved
        config, entity = resolved
        session_id = options.get("session_id")
        filters = params.filters

        try:
            query = await self._base_query(config, entity, user_id, filters, options)
            per_page = self.per_page(options)
            total_count = await self.source.count(query.unpaged())
            total_pages = math.ceil(total_count / per_page)
            offset = (page - 1) * per_page

            await self._order(query, entity)
            items = await self.source.fetch(query.page(offset, per_page))

            if not items:
                return self._empty_result(entity.name, page, total_pages, total_count)

            single = total_count == 1 and filters.id is not None
            if session_id:
                await self._store_query_state(
                    session_id, config, entity, filters, user_id, options,
                    page, total_pages, total_count, items, offset, single,
                )

            response = self._format_list(config, entity.name, items, offset, total_count, page, total_pages, single)
        except Exception as exc:
            log.error("db_query_failed", entity=entity.name, error=str(exc), exc_info=True)
            return ToolResult.fail(f"I couldn't retrieve {entity.name}s right now. Please try again.", tool="db_query")

        return ToolResult(
            success=True,
            response=response.strip(),
            tool="db_query",
            fast_path=True,
            count=len(items),
            page=page,
            total_pages=total_pages,
            total_count=total_count,
            has_more=page < total_pages,
            entity_ids=[int(item["id"]) for item in items],
            entity_type=entity.name,
            items=items,
        )

    # ── db_query_next ─────────────────────────────────────────────────────────

    async def next_page(self, params: NextPageParams, user_id: Any, options: dict[str, Any]) -> ToolResult:
        session_id = options.get("session_id")
        if not session_id:
            return ToolResult.fail("No session ID provided for pagination.", tool="db_query_next")

        state = await self.session_store.get(session_id)
        if state is None:
            return ToolResult.fail("No previous query to continue. Please make a query first.", tool="db_query_next")

        next_page = state.page + 1
        if next_page > state.total_pages:
            return ToolResult(
                success=True,
                response=f"You've reached the end. All {state.total_count} {state.entity_name}s have been shown.",
                tool="db_query_next",
                fast_path=True,
                count=0,
                page=state.page,
                total_pages=state.total_pages,
                total_count=state.total_count,
                has_more=False,
            )

        replay = {**state.options, "session_id": session_id}
        return await self.list_query(
            ListParams(model=state.entity_name, filters=Filters.model_validate(state.filters)),
            state.user_id,
            replay,
            next_page,
        )

    # ── db_count ──────────────────────────────────────────────────────────────

    async def count(self, params: CountParams, user_id: Any, options: dict[str, Any]) -> ToolResult:
        resolved = self._resolve(params.model, "db_count")
        if isinstance(resolved, ToolResult):
            return resolved
        config, entity = resolved

        try:
            query = await self._base_query(config, entity, user_id, params.filters, options, eager=False)
            count = await self.source.count(query)
        except Exception as exc:
            log.error("db_count_failed", entity=entity.name, error=str(exc), exc_info=True)
            return ToolResult.fail(f"I couldn't count {entity.name}s right now. Please try again.", tool="db_count")

        return ToolResult(
            success=True,
            response=f"You have **{count}** {entity.name}(s).",
            tool="db_count",
            fast_path=True,
            count=count,
            entity_type=entity.name,
        )

    # ── db_aggregate ──────────────────────────────────────────────────────────

    async def aggregate(self, params: AggregateParams, user_id: Any, options: dict[str, Any]) -> ToolResult:
        resolved = self._resolve(params.model, "db_aggregate")
        if isinstance(resolved, ToolResult):
            return resolved
        config, entity = resolved

        operation = params.aggregate.operation
        field = params.aggregate.field or entity.filter_config.amount_field
        if not field:
            return ToolResult.fail("No field specified for aggregation", tool="db_aggregate")

        try:
            query = await self._base_query(config, entity, user_id, params.filters, options)

            if await self.source.has_column(entity.backing_table, field):
                # fast path: aggregate in the record source
                result = await self.source.aggregate(query.unpaged(), operation, field)
                count = await self.source.count(query.unpaged())
                method = "database"
            else:
                calculate = config.computed_fields().get(field)
                if calculate is None:
                    raise UnknownFieldError(field, entity.name)
                # slow path: materialise and reduce per-record values
                records = await self.source.fetch(query.unpaged())
                count = len(records)
                result = reduce_values(operation, [calculate(r) for r in records])
                method = "model_method"
        except UnknownFieldError as exc:
            return ToolResult.fail(str(exc), tool="db_aggregate")
        except Exception as exc:
            log.error("db_aggregate_failed", entity=entity.name, field=field, error=str(exc), exc_info=True)
            return ToolResult.fail(
                f"I couldn't calculate the {operation} of {field} right now. Please try again.",
                tool="db_aggregate",
            )

        log.info(
            "aggregate_completed",
            entity=entity.name,
            operation=operation,
            field=field,
            result=result,
            count=count,
            method=method,
        )

        label = _AGGREGATE_LABELS[operation]
        if operation == "count":
            formatted = f"{int(result or 0):,}"
        else:
            currency = option(options, "currency_symbol", self.settings.currency_symbol)
            formatted = f"{currency}{float(result or 0):,.2f}"

        return ToolResult(
            success=True,
            response=f"**{label} {field}**: {formatted} (from {count} {entity.name}s)",
            tool="db_aggregate",
            fast_path=method == "database",
            count=count,
            entity_type=entity.name,
            result=result,
            operation=operation,
            field=field,
            calculation_method=method,
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _resolve(self, name: str | None, tool: str) -> tuple[EntityConfig, EntityDescriptor] | ToolResult:
        if not name:
            return ToolResult.fail("No model specified", tool=tool)

        config = self.catalog.resolve(name)
        if config is not None:
            entity = self.catalog.describe(config)
            if entity is not None:
                return config, entity

        node = self.catalog.remote_node_for(name)
        if node is not None:
            log.info("entity_not_local", entity=name, node=node.slug, tool=tool)
            return ToolResult(
                success=False,
                error=f"Model {name} not available locally",
                tool=tool,
                should_route_to_node=True,
                route_node=node.slug,
            )

        return ToolResult.fail(str(EntityNotFoundError(name)), tool=tool)

    async def _base_query(
        self,
        config: EntityConfig,
        entity: EntityDescriptor,
        user_id: Any,
        filters: Filters,
        options: dict[str, Any],
        eager: bool = True,
    ) -> RecordQuery:
        query = RecordQuery(entity.backing_table)

        if eager:
            for relation in entity.filter_config.eager_load:
                related = self.catalog.resolve(relation)
                table = self.catalog.table_for(related) if related is not None else f"{relation}s"
                query.with_related(relation, f"{relation}_id", table)

        query = await self.filters.apply_user_scope(query, config, user_id, entity.filter_config)
        return await self.filters.apply(query, filters, entity, options)

    async def _order(self, query: RecordQuery, entity: EntityDescriptor) -> None:
        order_field = entity.filter_config.order_field
        if order_field and await self.source.has_column(entity.backing_table, order_field):
            query.order_by(order_field)
        else:
            query.order_by("id")

    def _empty_result(self, name: str, page: int, total_pages: int, total_count: int) -> ToolResult:
        if page > 1:
            return ToolResult(
                success=True,
                response=f"No more {name}s to show. You've seen all {total_count} results.",
                tool="db_query",
                fast_path=True,
                count=0,
                page=page,
                total_pages=total_pages,
                total_count=total_count,
                has_more=False,
            )
        return ToolResult(
            success=True,
            response=f"No {name}s found matching your criteria.",
            tool="db_query",
            fast_path=True,
            count=0,
            total_count=total_count,
        )

    async def _store_query_state(
        self,
        session_id: str,
        config: EntityConfig,
        entity: EntityDescriptor,
        filters: Filters,
        user_id: Any,
        options: dict[str, Any],
        page: int,
        total_pages: int,
        total_count: int,
        items: list[Record],
        offset: int,
        single: bool,
    ) -> None:
        start_position = offset + 1
        end_position = offset + len(items)

        state = QueryState(
            entity_name=entity.name,
            backing_reference=entity.backing_table,
            filters=filters.as_dict(),
            user_id=user_id,
            options={k: options[k] for k in _REPLAY_OPTIONS if options.get(k) is not None},
            page=page,
            total_pages=total_pages,
            total_count=total_count,
            entity_ids=[int(item["id"]) for item in items],
            entity_summaries=[
                EntitySummary(position=start_position + i, id=int(item["id"]), summary=config.summarize(item))
                for i, item in enumerate(items)
            ],
            start_position=start_position,
            end_position=end_position,
            selected_entity=(
                {"entity_id": int(items[0]["id"]), "entity_type": entity.name, "entity_data": _plain(items[0])}
                if single else None
            ),
        )
        await self.session_store.put(session_id, state, self.ttl_seconds())

        log.info(
            "query_state_stored",
            session_id=session_id,
            entity=entity.name,
            page=page,
            total_pages=total_pages,
            positions=f"{start_position}-{end_position}",
        )

    def _format_list(
        self,
        config: EntityConfig,
        name: str,
        items: list[Record],
        offset: int,
        total_count: int,
        page: int,
        total_pages: int,
        single: bool,
    ) -> str:
        if single:
            return config.render_detail(items[0])

        start, end = offset + 1, offset + len(items)
        lines = [f"**{name.title()}s** (showing {start}-{end} of {total_count}):", ""]
        for i, item in enumerate(items):
            lines.append(f"{offset + i + 1}. {config.summarize(item)}")

        if page < total_pages:
            lines += ["", "---", '*Say "show more" or "next" to see more results.*']
        return "\n".join(lines)


def reduce_values(operation: str, values: list[Any]) -> float | int | None:
    numbers = [v for v in values if isinstance(v, Number) and not isinstance(v, bool)]
    if operation == "count":
        return len(numbers)
    if operation == "sum":
        return sum(numbers)
    if not numbers:
        return None
    reducers: dict[str, Callable[[list], Any]] = {
        "avg": lambda xs: sum(xs) / len(xs),
        "min": min,
        "max": max,
    }
    return reducers[operation](numbers)


def _plain(record: Record) -> dict[str, Any]:
    """JSON-safe copy of a record for session storage."""
    out = {}
    for key, value in record.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            out[key] = value
        elif isinstance(value, dict):
            out[key] = _plain(value)
        else:
            out[key] = str(value)
    return out
