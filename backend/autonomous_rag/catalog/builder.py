"""
Entity catalog builder.

Single source of truth for "given an entity name, what config / table / tools
/ filter hints does it map to?" and for the catalog shown to the decision
model. Pure read of registered configuration; never raises. An entity whose
config cannot be introspected is logged and left out of the catalog.
"""

from typing import Any

from autonomous_rag.catalog.models import Capabilities, EntityDescriptor, FilterConfig
from autonomous_rag.catalog.registry import EntityConfig, EntityRegistry
from autonomous_rag.core.config import RemoteNode
from autonomous_rag.core.logging import get_logger

log = get_logger(__name__)


class CatalogBuilder:
    def __init__(self, registry: EntityRegistry, nodes: list[RemoteNode] | None = None):
        self.registry = registry
        self.nodes = list(nodes or [])

    # ── Catalog ───────────────────────────────────────────────────────────────

    def describe_entities(self, context: dict[str, Any] | None = None) -> list[EntityDescriptor]:
        """
        Describe every registered entity.

        context["entities"] (optional) restricts the catalog to the named
        entities, e.g. a chat widget scoped to invoices only.
        """
        wanted = {str(n).strip().lower() for n in (context or {}).get("entities") or []}
        descriptors = []

        for config in self.registry.entities():
            if wanted and config.name.lower() not in wanted:
                continue
            descriptor = self.describe(config)
            if descriptor is not None:
                descriptors.append(descriptor)

        return descriptors

    def describe(self, config: EntityConfig) -> EntityDescriptor | None:
        try:
            tools = config.tools()
            return EntityDescriptor(
                name=config.name.lower(),
                description=config.description or f"Model for {config.name} data",
                backing_table=config.table or f"{config.name.lower()}s",
                field_schema=dict(config.field_schema),
                filter_config=self.filter_config(config),
                tools=tools,
                capabilities=Capabilities(
                    structured_query=True,
                    semantic_search=bool(config.vectorized),
                    mutation=bool(tools),
                ),
            )
        except Exception as exc:
            log.warning("catalog_entity_skipped", entity=getattr(config, "name", None), error=str(exc))
            return None

    # ── Resolution ────────────────────────────────────────────────────────────

    def resolve(self, name: str | None) -> EntityConfig | None:
        """Exact name first, then plural/singular and substring matches."""
        requested = (name or "").strip().lower()
        if not requested:
            return None

        exact = self.registry.get(requested)
        if exact is not None:
            return exact

        for config in self.registry.entities():
            if name_matches(config.name.lower(), requested):
                return config
        return None

    def filter_config(self, config: EntityConfig) -> FilterConfig:
        """Entity's own filter config, else a matching collector declaration, else defaults."""
        if config.filter_config is not None:
            return config.filter_config

        table = config.table or f"{config.name.lower()}s"
        for collector in self.registry.collectors():
            if collector.name.lower() == config.name.lower() or (collector.table and collector.table == table):
                return collector.filter_config
        return FilterConfig()

    def table_for(self, config: EntityConfig) -> str:
        return config.table or f"{config.name.lower()}s"

    # ── Remote partitions ─────────────────────────────────────────────────────

    def available_nodes(self) -> list[RemoteNode]:
        return list(self.nodes)

    def remote_node_for(self, name: str | None) -> RemoteNode | None:
        requested = (name or "").strip().lower()
        if not requested:
            return None
        for node in self.nodes:
            if any(name_matches(m.lower(), requested) for m in node.models):
                return node
        return None


def name_matches(candidate: str, requested: str) -> bool:
    if not candidate or not requested:
        return False
    return (
        candidate == requested
        or candidate == f"{requested}s"
        or f"{candidate}s" == requested
        or requested in candidate
    )
