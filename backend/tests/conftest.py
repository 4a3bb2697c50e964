"""
Shared fixtures — an invoice/customer catalog over the in-memory record
source, an in-memory session store, a scripted LLM and a fake semantic
search. Nothing here touches the network or a database.

Invoices for user 7, newest first: 101, 102, 103. Invoice 104 belongs to
user 8 and must never show up in user 7's results.
"""

import json
from typing import Any

import pytest

from autonomous_rag.agents.agent import build_agent
from autonomous_rag.catalog.builder import CatalogBuilder
from autonomous_rag.catalog.models import CollectorDeclaration, FilterConfig, ToolSpec
from autonomous_rag.catalog.registry import EntityConfig, EntityRegistry
from autonomous_rag.core.config import RemoteNode, Settings
from autonomous_rag.memory.query_state import InMemorySessionStore
from autonomous_rag.rag.decision import DecisionService
from autonomous_rag.rag.dispatcher import ToolDispatcher
from autonomous_rag.rag.executor import QueryExecutor
from autonomous_rag.rag.filters import FilterService
from autonomous_rag.rag.semantic import SemanticSearchResponse
from autonomous_rag.records.memory import InMemoryRecordSource

USER_ID = 7
OTHER_USER_ID = 8


# ── Entities ──────────────────────────────────────────────────────────────────

class InvoiceConfig(EntityConfig):
    name = "invoice"
    description = "Customer invoices"
    table = "invoices"
    vectorized = True
    field_schema = {
        "id": "int",
        "number": "str",
        "status": "str",
        "amount": "float",
        "created_at": "date",
        "customer_id": "int",
    }
    filter_config = FilterConfig(
        user_field="user_id",
        date_field="created_at",
        status_field="status",
        amount_field="amount",
        eager_load=["customer"],
    )

    def __init__(self):
        self.calls: list[dict[str, Any]] = []

    def tools(self):
        return {
            "mark_paid": ToolSpec(
                name="mark_paid",
                description="Mark an invoice as paid",
                required_operation="update",
                handler=self._mark_paid,
            ),
            "delete_invoice": ToolSpec(name="delete_invoice", handler=self._delete),
            "send_reminder": ToolSpec(name="send_reminder", handler=self._send_reminder),
        }

    def computed_fields(self):
        return {
            "amount": lambda r: r["amount"],
            "amount_with_tax": lambda r: round(r["amount"] * 1.2, 2),
        }

    def _mark_paid(self, params):
        self.calls.append({"tool": "mark_paid", **params})
        return {
            "success": True,
            "message": f"Invoice #{params.get('id')} marked as paid",
            "suggested_actions": ["send_receipt"],
        }

    def _delete(self, params):
        self.calls.append({"tool": "delete_invoice", **params})
        return {"success": True, "message": "Invoice deleted"}

    async def _send_reminder(self, params):
        self.calls.append({"tool": "send_reminder", **params})
        return "queued"


class CustomerConfig(EntityConfig):
    name = "customer"
    description = "Customers"
    table = "customers"
    field_schema = {"id": "int", "name": "str"}


def invoice_rows() -> list[dict[str, Any]]:
    return [
        {"id": 101, "number": "INV-101", "status": "paid", "amount": 100.0,
         "created_at": "2024-03-03", "customer_id": 1, "user_id": USER_ID},
        {"id": 102, "number": "INV-102", "status": "unpaid", "amount": 250.5,
         "created_at": "2024-03-02", "customer_id": 2, "user_id": USER_ID},
        {"id": 103, "number": "INV-103", "status": "paid", "amount": 49.5,
         "created_at": "2024-03-01", "customer_id": 1, "user_id": USER_ID},
        {"id": 104, "number": "INV-104", "status": "paid", "amount": 999.0,
         "created_at": "2024-03-04", "customer_id": 2, "user_id": OTHER_USER_ID},
    ]


def customer_rows() -> list[dict[str, Any]]:
    return [
        {"id": 1, "name": "Acme Ltd"},
        {"id": 2, "name": "Globex"},
    ]


# ── Collaborator fakes ────────────────────────────────────────────────────────

class ScriptedGenerator:
    """TextGenerator returning queued responses; an Exception in the queue is raised."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def queue_decision(self, tool: str, **parameters: Any) -> None:
        self.responses.append(json.dumps({"tool": tool, "reasoning": "scripted", "parameters": parameters}))

    async def generate(self, prompt, *, model, temperature, max_tokens, json_mode=False):
        self.calls.append({
            "prompt": prompt,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "json_mode": json_mode,
        })
        response = self.responses.pop(0) if self.responses else ""
        if isinstance(response, Exception):
            raise response
        return response


class FakeSemanticSearch:
    def __init__(self, response: SemanticSearchResponse | None = None):
        self.response = response or SemanticSearchResponse()
        self.calls: list[dict[str, Any]] = []

    async def search(self, query, *, collections=None, user_id=None, limit=5):
        self.calls.append({"query": query, "collections": collections, "user_id": user_id, "limit": limit})
        return self.response


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def settings():
    return Settings(_env_file=None, environment="test", session_store="memory", database_url="")


@pytest.fixture
def invoice_config():
    return InvoiceConfig()


@pytest.fixture
def registry(invoice_config):
    registry = EntityRegistry()
    registry.register(invoice_config)
    registry.register(CustomerConfig())
    registry.register_collector(
        CollectorDeclaration(name="customer", table="customers", filter_config=FilterConfig(order_field="name"))
    )
    return registry


@pytest.fixture
def remote_nodes():
    return [RemoteNode(slug="eu-logistics", name="EU Logistics", models=["shipment", "warehouse"])]


@pytest.fixture
def source():
    return InMemoryRecordSource({"invoices": invoice_rows(), "customers": customer_rows()})


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def catalog(registry, remote_nodes):
    return CatalogBuilder(registry, remote_nodes)


@pytest.fixture
def filter_service(source, session_store):
    return FilterService(source, session_store)


@pytest.fixture
def executor(catalog, source, filter_service, session_store, settings):
    return QueryExecutor(catalog, source, filter_service, session_store, settings)


@pytest.fixture
def semantic_search():
    return FakeSemanticSearch()


@pytest.fixture
def dispatcher(executor, catalog, session_store, settings, semantic_search):
    return ToolDispatcher(executor, catalog, session_store, settings, semantic_search)


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def decision_service(generator, settings):
    return DecisionService(generator, settings)


@pytest.fixture
def agent(settings, registry, remote_nodes, source, session_store, generator, semantic_search):
    settings = settings.model_copy(update={"remote_nodes": remote_nodes})
    return build_agent(
        settings,
        registry=registry,
        source=source,
        session_store=session_store,
        generator=generator,
        semantic_search=semantic_search,
    )
