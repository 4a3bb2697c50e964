"""
Tool dispatcher — executes a Decision and returns one ToolResult.

    Decision ──▶ typed params ──▶ tool ──▶ post-execution policy ──▶ ToolResult

Post-execution policy runs once, after whichever tool executed:
  - vector_search with no usable context and a named model is re-run as
    db_query against that model (tagged fallback_from="vector_search")
  - a node-routable tool that failed because its data is not available
    locally gets should_route_to_node / route_model. The remote call
    itself belongs to the caller.
"""

import inspect
from typing import Any

from autonomous_rag.catalog.builder import CatalogBuilder
from autonomous_rag.catalog.models import ToolSpec
from autonomous_rag.core.config import Settings, clamp
from autonomous_rag.core.errors import AgentError, EntityNotFoundError, PermissionDeniedError
from autonomous_rag.core.logging import get_logger
from autonomous_rag.memory.query_state import QueryState, SessionStore
from autonomous_rag.rag.executor import QueryExecutor
from autonomous_rag.rag.schemas import (
    AnswerParams,
    Decision,
    ExitParams,
    ListParams,
    ModelToolParams,
    RouteParams,
    ToolName,
    ToolResult,
    VectorSearchParams,
)
from autonomous_rag.rag.semantic import SemanticSearch

log = get_logger(__name__)

NODE_ROUTABLE_TOOLS = frozenset({
    ToolName.DB_QUERY,
    ToolName.DB_COUNT,
    ToolName.DB_AGGREGATE,
    ToolName.MODEL_TOOL,
})

_MUTATING_OPERATIONS = ("delete", "create", "update")


class ToolDispatcher:
    def __init__(
        self,
        executor: QueryExecutor,
        catalog: CatalogBuilder,
        session_store: SessionStore,
        settings: Settings,
        semantic_search: SemanticSearch | None = None,
    ):
        self.executor = executor
        self.catalog = catalog
        self.session_store = session_store
        self.settings = settings
        self.semantic_search = semantic_search

    async def dispatch(
        self,
        decision: Decision | dict[str, Any],
        message: str,
        session_id: str,
        user_id: Any,
        history: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> ToolResult:
        decision = Decision.coerce(decision)
        tool = decision.tool
        params = decision.typed_parameters()
        options = {**(options or {}), "session_id": session_id}

        log.info("tool_dispatch", tool=tool.value, session_id=session_id, reasoning=decision.reasoning[:200])

        result = await self._execute(tool, params, message, user_id, options)
        model = getattr(params, "model", None)

        # ── vector_search → db_query ──────────────────────────────────────────
        if tool == ToolName.VECTOR_SEARCH and model and _is_empty_search(result):
            log.info("vector_search_fallback", model=model, session_id=session_id)
            result = await self.executor.list_query(ListParams(model=model), user_id, options)
            result.fallback_from = ToolName.VECTOR_SEARCH.value
            tool = ToolName.DB_QUERY

        # ── Remote routing signal ─────────────────────────────────────────────
        if tool in NODE_ROUTABLE_TOOLS and not result.success and result.should_route_to_node:
            log.info("node_routing_signal", tool=tool.value, model=model, session_id=session_id)
            result.route_model = model

        return result

    async def _execute(
        self,
        tool: ToolName,
        params: Any,
        message: str,
        user_id: Any,
        options: dict[str, Any],
    ) -> ToolResult:
        if tool == ToolName.ANSWER_FROM_CONTEXT:
            return self.answer_from_context(params)
        if tool == ToolName.DB_QUERY:
            return await self.executor.list_query(params, user_id, options)
        if tool == ToolName.DB_QUERY_NEXT:
            return await self.executor.next_page(params, user_id, options)
        if tool == ToolName.DB_COUNT:
            return await self.executor.count(params, user_id, options)
        if tool == ToolName.DB_AGGREGATE:
            return await self.executor.aggregate(params, user_id, options)
        if tool == ToolName.VECTOR_SEARCH:
            return await self.vector_search(params, message, user_id, options)
        if tool == ToolName.MODEL_TOOL:
            return await self.model_tool(params, user_id, options)
        if tool == ToolName.ROUTE_TO_NODE:
            return self.route_to_node(params)
        return self.exit_to_orchestrator(params, message)

    # ── Tools ─────────────────────────────────────────────────────────────────

    def answer_from_context(self, params: AnswerParams) -> ToolResult:
        if not params.answer:
            return ToolResult.fail("No answer provided in parameters", tool=ToolName.ANSWER_FROM_CONTEXT.value)
        return ToolResult(
            success=True,
            response=params.answer,
            tool=ToolName.ANSWER_FROM_CONTEXT.value,
            fast_path=True,
        )

    async def vector_search(
        self,
        params: VectorSearchParams,
        message: str,
        user_id: Any,
        options: dict[str, Any],
    ) -> ToolResult:
        tool = ToolName.VECTOR_SEARCH.value
        if self.semantic_search is None:
            return ToolResult.fail("Semantic search is not configured", tool=tool)

        collections = None
        entity_type = None
        if params.model:
            config = self.catalog.resolve(params.model)
            if config is not None:
                collections = [self.catalog.table_for(config)]
                entity_type = config.name.lower()

        limit = int(clamp(params.limit or self.settings.decision_fallback_limit, 1, 50, 10))
        try:
            found = await self.semantic_search.search(
                params.query or message,
                collections=collections,
                user_id=user_id,
                limit=limit,
            )
        except Exception as exc:
            log.error("vector_search_failed", collections=collections, error=str(exc), exc_info=True)
            return ToolResult.fail("Semantic search is unavailable right now.", tool=tool)

        return ToolResult(
            success=True,
            response=found.content,
            tool=tool,
            entity_type=entity_type,
            metadata=found.metadata,
        )

    async def model_tool(self, params: ModelToolParams, user_id: Any, options: dict[str, Any]) -> ToolResult:
        tool = ToolName.MODEL_TOOL.value
        if not params.model or not params.tool_name:
            return ToolResult.fail("Model and tool_name required", tool=tool)

        state = await self._query_state(options)
        if state is not None and state.from_node:
            return ToolResult(
                success=False,
                error=f"Model {params.model} data is on remote node",
                tool=tool,
                should_route_to_node=True,
                route_node=state.from_node,
            )

        config = self.catalog.resolve(params.model)
        if config is None:
            node = self.catalog.remote_node_for(params.model)
            if node is not None:
                return ToolResult(
                    success=False,
                    error=f"Model {params.model} not available locally",
                    tool=tool,
                    should_route_to_node=True,
                    route_node=node.slug,
                )
            return ToolResult.fail(str(EntityNotFoundError(params.model)), tool=tool)

        try:
            tools = config.tools()
        except Exception as exc:
            log.error("model_tools_unavailable", model=params.model, error=str(exc))
            return ToolResult.fail(f"No tools available for {params.model}", tool=tool)

        spec = tools.get(params.tool_name)
        if spec is None:
            return ToolResult.fail(f"Tool {params.tool_name} not found for {params.model}", tool=tool)
        if spec.handler is None or not callable(spec.handler):
            return ToolResult.fail(f"Tool {params.tool_name} has no handler", tool=tool)

        operation = required_operation(params.tool_name, spec)
        if operation is not None and operation not in config.allowed_operations(user_id):
            log.warning("permission_denied", model=params.model, tool_name=params.tool_name, operation=operation, user_id=user_id)
            return ToolResult.fail(str(PermissionDeniedError(operation)), tool=tool, tool_name=params.tool_name)

        final_params = dict(params.tool_params)
        confirmed = final_params.pop("confirmed", None) is True or options.get("confirmed") is True
        selected = options.get("selected_entity") or (state.selected_entity if state is not None else None)
        if isinstance(selected, dict) and selected.get("entity_data"):
            final_params["entity_data"] = selected["entity_data"]
            if selected.get("entity_id") is not None:
                final_params.setdefault("id", selected["entity_id"])

        if spec.requires_confirmation and not confirmed:
            log.info("model_tool_confirmation_required", model=params.model, tool_name=params.tool_name)
            target = f" #{final_params['id']}" if final_params.get("id") is not None else ""
            return ToolResult(
                success=False,
                response=f"Please confirm: {spec.description or spec.name}{target}?",
                error="Confirmation required",
                tool=tool,
                tool_name=params.tool_name,
                requires_confirmation=True,
                pending_params=final_params,
            )

        log.info("model_tool_execute", model=params.model, tool_name=params.tool_name, params=sorted(final_params))

        try:
            outcome = spec.handler(final_params)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except AgentError as exc:
            return ToolResult.fail(str(exc), tool=tool, tool_name=params.tool_name)
        except Exception as exc:
            log.error("model_tool_failed", model=params.model, tool_name=params.tool_name, error=str(exc), exc_info=True)
            return ToolResult.fail(f"Tool {params.tool_name} failed", tool=tool, tool_name=params.tool_name)

        if isinstance(outcome, dict):
            success = bool(outcome.get("success", True))
            extra: dict[str, Any] = {"data": outcome}
            if isinstance(outcome.get("suggested_actions"), list):
                extra["suggested_actions"] = outcome["suggested_actions"]
            return ToolResult(
                success=success,
                response=str(outcome.get("message") or ("Operation completed" if success else "Operation failed")),
                error=None if success else str(outcome.get("error") or outcome.get("message") or "Operation failed"),
                tool=tool,
                tool_name=params.tool_name,
                fast_path=True,
                **extra,
            )

        return ToolResult(
            success=True,
            response=f"Tool {params.tool_name} executed successfully",
            tool=tool,
            tool_name=params.tool_name,
            fast_path=True,
            result=outcome,
        )

    def route_to_node(self, params: RouteParams) -> ToolResult:
        node = params.node
        if not node and params.model:
            remote = self.catalog.remote_node_for(params.model)
            node = remote.slug if remote is not None else None

        log.info("node_routing_signal", tool=ToolName.ROUTE_TO_NODE.value, model=params.model, node=node)
        return ToolResult(
            success=False,
            error=f"Model {params.model or 'unknown'} is served by a remote node",
            tool=ToolName.ROUTE_TO_NODE.value,
            should_route_to_node=True,
            route_model=params.model,
            route_node=node,
        )

    def exit_to_orchestrator(self, params: ExitParams, message: str) -> ToolResult:
        return ToolResult(
            success=True,
            tool=ToolName.EXIT_TO_ORCHESTRATOR.value,
            exit_to_orchestrator=True,
            message=params.message or message,
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _query_state(self, options: dict[str, Any]) -> QueryState | None:
        session_id = options.get("session_id")
        if not session_id:
            return None
        return await self.session_store.get(session_id)


def required_operation(tool_name: str, spec: ToolSpec) -> str | None:
    """Explicit required_operation first, else a create/update/delete keyword in the tool name."""
    if spec.required_operation:
        return spec.required_operation if spec.required_operation in _MUTATING_OPERATIONS else None

    name = tool_name.lower()
    for operation in _MUTATING_OPERATIONS:
        if operation in name:
            return operation
    return None


def _is_empty_search(result: ToolResult) -> bool:
    if not result.success or not result.response.strip():
        return True
    return result.metadata is not None and result.metadata.get("context_count") == 0
