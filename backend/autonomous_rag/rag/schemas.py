"""
Decision and result schemas.

A Decision is produced once per turn by the decision service and consumed
once by the dispatcher. Its parameters are loose JSON from the model; the
dispatcher validates them into one typed params model per tool, so nothing
downstream does ad-hoc key lookups.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from autonomous_rag.core.logging import get_logger

log = get_logger(__name__)


class ToolName(str, Enum):
    ANSWER_FROM_CONTEXT = "answer_from_context"
    DB_QUERY = "db_query"
    DB_QUERY_NEXT = "db_query_next"
    DB_COUNT = "db_count"
    DB_AGGREGATE = "db_aggregate"
    VECTOR_SEARCH = "vector_search"
    MODEL_TOOL = "model_tool"
    ROUTE_TO_NODE = "route_to_node"
    EXIT_TO_ORCHESTRATOR = "exit_to_orchestrator"


DEFAULT_TOOL = ToolName.DB_QUERY


def normalize_tool(value: Any) -> ToolName:
    """Unknown or missing tool names map to the default structured query."""
    if isinstance(value, ToolName):
        return value
    try:
        return ToolName(str(value or "").strip().lower())
    except ValueError:
        return DEFAULT_TOOL


# ── Parameters ────────────────────────────────────────────────────────────────

class _Params(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _number_or_none(value: Any) -> float | None:
    value = _blank_to_none(value)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).replace(",", "").lstrip("$"))
    except ValueError:
        return None


class Filters(_Params):
    id: int | str | None = None
    date_field: str | None = None
    date_value: str | None = None
    date_operator: str = "="
    date_end: str | None = None
    status: str | None = None
    status_field: str | None = None
    amount_field: str | None = None
    amount_min: float | None = None
    amount_max: float | None = None

    @field_validator("id", "date_field", "date_value", "date_end", "status", "status_field", "amount_field", mode="before")
    @classmethod
    def _blank(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    @field_validator("date_value", "date_end", "status", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @field_validator("date_operator", mode="before")
    @classmethod
    def _operator(cls, value: Any) -> str:
        op = str(value or "=").strip().lower()
        return op if op in ("=", ">=", "<=", "between") else "="

    @field_validator("amount_min", "amount_max", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> float | None:
        return _number_or_none(value)

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude_defaults=True)


class AggregateSpec(_Params):
    operation: str = "sum"
    field: str | None = None

    @field_validator("operation", mode="before")
    @classmethod
    def _operation(cls, value: Any) -> str:
        op = str(value or "sum").strip().lower()
        return op if op in ("sum", "avg", "min", "max", "count") else "sum"


class ListParams(_Params):
    model: str | None = None
    filters: Filters = Field(default_factory=Filters)

    @field_validator("filters", mode="before")
    @classmethod
    def _filters(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, Filters)) else {}


class CountParams(ListParams):
    pass


class AggregateParams(ListParams):
    aggregate: AggregateSpec = Field(default_factory=AggregateSpec)

    @field_validator("aggregate", mode="before")
    @classmethod
    def _aggregate(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, AggregateSpec)) else {}


class NextPageParams(_Params):
    pass


class VectorSearchParams(_Params):
    query: str | None = None
    model: str | None = None
    limit: int | None = None


class ModelToolParams(_Params):
    model: str | None = None
    tool_name: str | None = None
    tool_params: dict[str, Any] = {}

    @field_validator("tool_params", mode="before")
    @classmethod
    def _tool_params(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}


class AnswerParams(_Params):
    answer: str | None = None


class RouteParams(_Params):
    model: str | None = None
    node: str | None = None


class ExitParams(_Params):
    message: str | None = None


PARAMS_BY_TOOL: dict[ToolName, type[_Params]] = {
    ToolName.ANSWER_FROM_CONTEXT: AnswerParams,
    ToolName.DB_QUERY: ListParams,
    ToolName.DB_QUERY_NEXT: NextPageParams,
    ToolName.DB_COUNT: CountParams,
    ToolName.DB_AGGREGATE: AggregateParams,
    ToolName.VECTOR_SEARCH: VectorSearchParams,
    ToolName.MODEL_TOOL: ModelToolParams,
    ToolName.ROUTE_TO_NODE: RouteParams,
    ToolName.EXIT_TO_ORCHESTRATOR: ExitParams,
}


# ── Decision ──────────────────────────────────────────────────────────────────

class Decision(BaseModel):
    tool: ToolName = DEFAULT_TOOL
    reasoning: str = ""
    parameters: dict[str, Any] = {}

    @field_validator("tool", mode="before")
    @classmethod
    def _tool(cls, value: Any) -> ToolName:
        return normalize_tool(value)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("parameters", mode="before")
    @classmethod
    def _parameters(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @classmethod
    def coerce(cls, value: "Decision | dict[str, Any] | None") -> "Decision":
        if isinstance(value, Decision):
            return value
        return cls.model_validate(value if isinstance(value, dict) else {})

    def typed_parameters(self) -> _Params:
        """Validate parameters into the params model of this tool; invalid fields are dropped."""
        params_cls = PARAMS_BY_TOOL[self.tool]
        try:
            return params_cls.model_validate(self.parameters)
        except ValidationError as exc:
            log.warning("decision_params_invalid", tool=self.tool.value, errors=exc.error_count())
            bad = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
            cleaned = {k: v for k, v in self.parameters.items() if k not in bad}
            return params_cls.model_validate(cleaned)


# ── Result envelope ───────────────────────────────────────────────────────────

class ToolResult(BaseModel):
    """Uniform envelope returned by every tool. Extra keys are kept as metadata."""
    model_config = ConfigDict(extra="allow")

    success: bool
    response: str = ""
    tool: str = ""
    error: str | None = None
    count: int | None = None
    page: int | None = None
    total_pages: int | None = None
    total_count: int | None = None
    has_more: bool | None = None
    entity_ids: list[int] | None = None
    entity_type: str | None = None
    should_route_to_node: bool | None = None
    route_model: str | None = None
    fallback_from: str | None = None
    fast_path: bool | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def fail(cls, error: str, tool: str = "", **extra: Any) -> "ToolResult":
        return cls(success=False, error=error, tool=tool, **extra)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
