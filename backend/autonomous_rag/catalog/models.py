"""Catalog schemas: what the decision prompt and the executors know about an entity."""

from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

Operation = Literal["read", "create", "update", "delete"]


class FilterConfig(BaseModel):
    """Per-entity query hints."""
    user_field: str | None = None        # ownership column for user scoping
    date_field: str | None = None
    status_field: str | None = None
    amount_field: str | None = None      # default aggregate / amount-range field
    eager_load: list[str] = []           # relation names, foreign key "<relation>_id"
    order_field: str = "created_at"      # recency ordering for list queries


class ToolSpec(BaseModel):
    """A mutation tool declared by an entity config. Invoked, never mutated."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    parameter_schema: dict[str, Any] = {}
    required_operation: Operation | None = None   # None → inferred from the tool name
    requires_confirmation: bool = False
    handler: Callable[..., Any] | None = None


class Capabilities(BaseModel):
    structured_query: bool = True
    semantic_search: bool = False
    mutation: bool = False


class EntityDescriptor(BaseModel):
    """Built fresh per decision cycle; never persisted."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    backing_table: str
    field_schema: dict[str, str] = {}
    filter_config: FilterConfig = Field(default_factory=FilterConfig)
    tools: dict[str, ToolSpec] = {}
    capabilities: Capabilities = Field(default_factory=Capabilities)
    location: str = "local"

    def prompt_view(self) -> dict[str, Any]:
        """Compact JSON-able view used in the decision prompt."""
        return {
            "name": self.name,
            "description": self.description or f"Model for {self.name} data",
            "table": self.backing_table,
            "capabilities": {
                "db_query": self.capabilities.structured_query,
                "db_count": self.capabilities.structured_query,
                "vector_search": self.capabilities.semantic_search,
                "crud": self.capabilities.mutation,
            },
            "key_fields": list(self.field_schema),
            "tools": list(self.tools),
            "location": self.location,
        }


class CollectorDeclaration(BaseModel):
    """Legacy data-collector declaration, consulted when an entity has no filter config."""
    name: str
    table: str | None = None
    filter_config: FilterConfig = Field(default_factory=FilterConfig)
