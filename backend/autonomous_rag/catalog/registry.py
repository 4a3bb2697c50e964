"""
Entity registry — explicit name → config mapping, populated at startup.

Applications describe each queryable entity with an EntityConfig subclass and
register it:

    @register_entity
    class InvoiceConfig(EntityConfig):
        name = "invoice"
        table = "invoices"
        filter_config = FilterConfig(user_field="user_id", amount_field="total")

Modules listed in settings.entity_modules are imported by load_entity_modules()
so their decorators run before the first request.
"""

import importlib
import json
from typing import Any, Callable

from autonomous_rag.catalog.models import CollectorDeclaration, FilterConfig, ToolSpec
from autonomous_rag.core.config import Settings
from autonomous_rag.core.logging import get_logger
from autonomous_rag.records.query import RecordQuery
from autonomous_rag.records.source import Record

log = get_logger(__name__)

_SUMMARY_FIELD_LIMIT = 4


class EntityConfig:
    """Declarative description of one entity. Override what differs from the defaults."""

    name: str = ""
    description: str = ""
    table: str = ""
    vectorized: bool = False
    field_schema: dict[str, str] = {}
    filter_config: FilterConfig | None = None   # None → collector discovery

    # Optional ownership hook: (query, user_id) -> query
    scope_for_user: Callable[[RecordQuery, Any], RecordQuery] | None = None

    def tools(self) -> dict[str, ToolSpec]:
        return {}

    def allowed_operations(self, user_id: Any) -> list[str]:
        if not user_id:
            return ["list"]
        return ["list", "create", "update", "delete"]

    def computed_fields(self) -> dict[str, Callable[[Record], Any]]:
        """Per-record calculations usable as aggregate fields (slow path)."""
        return {}

    def summarize(self, record: Record) -> str:
        parts = [
            f"{key}: {value}"
            for key, value in record.items()
            if key != "id" and _is_scalar(value)
        ][:_SUMMARY_FIELD_LIMIT]
        head = f"{self.display_name} #{record.get('id')}"
        return f"{head}: {' | '.join(parts)}" if parts else head

    def render_detail(self, record: Record) -> str:
        lines = [f"**{self.display_name} #{record.get('id')}**", ""]
        for key, value in record.items():
            if key == "id":
                continue
            if _is_scalar(value):
                lines.append(f"- **{key}**: {value}")
            elif isinstance(value, dict):
                lines.append(f"- **{key}**: {json.dumps(value, default=str)}")
        return "\n".join(lines)

    @property
    def display_name(self) -> str:
        return self.name.replace("_", " ").title()


class EntityRegistry:
    def __init__(self):
        self._entities: dict[str, EntityConfig] = {}
        self._collectors: list[CollectorDeclaration] = []

    def register(self, config: EntityConfig) -> EntityConfig:
        key = (config.name or "").strip().lower()
        if not key:
            raise ValueError(f"{type(config).__name__} has no name")
        self._entities[key] = config
        return config

    def register_collector(self, declaration: CollectorDeclaration) -> None:
        self._collectors.append(declaration)

    def entities(self) -> list[EntityConfig]:
        return list(self._entities.values())

    def collectors(self) -> list[CollectorDeclaration]:
        return list(self._collectors)

    def get(self, name: str) -> EntityConfig | None:
        return self._entities.get((name or "").strip().lower())

    def clear(self) -> None:
        self._entities.clear()
        self._collectors.clear()


default_registry = EntityRegistry()


def register_entity(cls: type[EntityConfig]) -> type[EntityConfig]:
    """Class decorator: instantiate and add to the default registry."""
    default_registry.register(cls())
    return cls


def load_entity_modules(settings: Settings) -> None:
    for module in settings.entity_modules:
        try:
            importlib.import_module(module)
            log.info("entity_module_loaded", module=module)
        except Exception as exc:
            log.error("entity_module_failed", module=module, error=str(exc))


def _is_scalar(value: Any) -> bool:
    return value is not None and not isinstance(value, (dict, list, tuple, set))
