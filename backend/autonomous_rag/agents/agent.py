"""
Autonomous RAG agent — the per-turn entry point.

    process(message, session_id, user_id, history, options) -> ToolResult

Runs the compiled turn graph (context → decide → dispatch). The agent owns
no state between turns; cross-turn memory lives in the session store.
"""

import time
from typing import Any

from autonomous_rag.agents.graph import build_turn_graph
from autonomous_rag.catalog.builder import CatalogBuilder
from autonomous_rag.catalog.registry import EntityRegistry, default_registry
from autonomous_rag.core.config import Settings, get_settings
from autonomous_rag.core.graph_state import TurnState
from autonomous_rag.core.llm import LangChainTextGenerator, TextGenerator
from autonomous_rag.core.logging import get_logger
from autonomous_rag.memory.query_state import InMemorySessionStore, RedisSessionStore, SessionStore
from autonomous_rag.rag.decision import DecisionService, summarize_conversation
from autonomous_rag.rag.dispatcher import ToolDispatcher
from autonomous_rag.rag.executor import QueryExecutor
from autonomous_rag.rag.filters import FilterService
from autonomous_rag.rag.schemas import ToolResult
from autonomous_rag.rag.semantic import SemanticSearch
from autonomous_rag.records.memory import InMemoryRecordSource
from autonomous_rag.records.postgres import PostgresRecordSource
from autonomous_rag.records.source import RecordSource

log = get_logger(__name__)


class AutonomousRAGAgent:
    def __init__(
        self,
        catalog: CatalogBuilder,
        decision_service: DecisionService,
        dispatcher: ToolDispatcher,
        session_store: SessionStore,
        settings: Settings,
    ):
        self.catalog = catalog
        self.decision_service = decision_service
        self.dispatcher = dispatcher
        self.session_store = session_store
        self.settings = settings
        self.graph = build_turn_graph(self)

    async def process(
        self,
        message: str,
        session_id: str,
        user_id: Any = None,
        history: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> ToolResult:
        final = await self.graph.ainvoke({
            "message": message or "",
            "session_id": session_id,
            "user_id": user_id,
            "history": list(history or []),
            "options": dict(options or {}),
            "metadata": {},
        })
        return final["result"]

    # ── Graph nodes ───────────────────────────────────────────────────────────

    async def context_node(self, state: TurnState) -> dict:
        """Pure data loading; no LLM call."""
        options = state.get("options") or {}
        session_id = state.get("session_id")

        query_state = await self.session_store.get(session_id) if session_id else None

        last_entity_list = options.get("last_entity_list")
        if not last_entity_list and query_state is not None and query_state.entity_ids:
            last_entity_list = query_state.visible_list()

        selected_entity = options.get("selected_entity")
        if not selected_entity and query_state is not None:
            selected_entity = query_state.selected_entity

        context = {
            "models": self.catalog.describe_entities(options),
            "nodes": [node.model_dump() for node in self.catalog.available_nodes()],
            "conversation": summarize_conversation(
                state.get("history"),
                window=self.settings.history_window,
                truncate=self.settings.history_truncate_chars,
            ),
            "last_entity_list": last_entity_list,
            "selected_entity": selected_entity,
        }

        log.debug(
            "turn_context",
            session_id=session_id,
            models=len(context["models"]),
            has_visible_list=bool(last_entity_list),
            has_selected_entity=bool(selected_entity),
        )
        return {"context": context}

    async def decide_node(self, state: TurnState) -> dict:
        options = state.get("options") or {}
        started = time.perf_counter()

        decision = await self.decision_service.decide(
            state["message"],
            state["context"],
            model=options.get("model"),
            options=options,
        )

        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        log.info(
            "decision_made",
            session_id=state.get("session_id"),
            tool=decision.tool.value,
            reasoning=decision.reasoning[:200],
            duration_ms=duration_ms,
        )
        return {"decision": decision, "metadata": {**(state.get("metadata") or {}), "decision_ms": duration_ms}}

    async def dispatch_node(self, state: TurnState) -> dict:
        options = dict(state.get("options") or {})
        context = state.get("context") or {}
        # positional references resolve against what the user actually saw
        if context.get("last_entity_list") and not options.get("last_entity_list"):
            options["last_entity_list"] = context["last_entity_list"]

        result = await self.dispatcher.dispatch(
            state["decision"],
            state["message"],
            state["session_id"],
            state.get("user_id"),
            state.get("history"),
            options,
        )
        return {"result": result}


def build_agent(
    settings: Settings | None = None,
    *,
    registry: EntityRegistry | None = None,
    source: RecordSource | None = None,
    session_store: SessionStore | None = None,
    generator: TextGenerator | None = None,
    semantic_search: SemanticSearch | None = None,
) -> AutonomousRAGAgent:
    """Wire the default collaborators; any of them can be passed in instead."""
    settings = settings or get_settings()

    if session_store is None:
        if settings.session_store == "redis":
            session_store = RedisSessionStore.from_url(settings.redis_url)
        else:
            session_store = InMemorySessionStore()

    if source is None:
        source = PostgresRecordSource(settings.database_url) if settings.database_url else InMemoryRecordSource()

    if semantic_search is None and settings.database_url:
        from autonomous_rag.rag.pipeline import LlamaIndexSemanticSearch
        semantic_search = LlamaIndexSemanticSearch(settings)

    catalog = CatalogBuilder(registry if registry is not None else default_registry, settings.remote_nodes)
    filters = FilterService(source, session_store)
    executor = QueryExecutor(catalog, source, filters, session_store, settings)

    log.info(
        "agent_built",
        session_store=type(session_store).__name__,
        record_source=type(source).__name__,
        semantic_search=type(semantic_search).__name__ if semantic_search else None,
    )

    return AutonomousRAGAgent(
        catalog=catalog,
        decision_service=DecisionService(generator or LangChainTextGenerator(), settings),
        dispatcher=ToolDispatcher(executor, catalog, session_store, settings, semantic_search),
        session_store=session_store,
        settings=settings,
    )
