from functools import lru_cache
from typing import Any

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class RemoteNode(BaseModel):
    """A remote partition that serves entities not available locally."""
    slug: str
    name: str = ""
    description: str = ""
    models: list[str] = []


class Settings(BaseSettings):
    # ── Database ───────────────────────────────────────────────────────────────
    # empty → in-memory record source (dev / tests)
    database_url: str = ""

    # ── LiteLLM ───────────────────────────────────────────────────────────────
    # mode: "proxy" = external LiteLLM container (dev default)
    #       "library" = litellm imported directly (production, no network hop)
    litellm_mode: str = "proxy"
    litellm_base_url: str = "http://litellm:4000/v1"
    litellm_master_key: str = ""

    # ── Models ────────────────────────────────────────────────────────────────
    decision_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"

    # ── Decision ──────────────────────────────────────────────────────────────
    decision_temperature: float = 0.1
    decision_max_tokens: int = 1000
    decision_timeout_seconds: float = 30.0
    decision_fallback_tool: str = "vector_search"   # vector_search | db_query
    decision_fallback_limit: int = 10
    decision_prompt_template: str | None = None
    default_aggregate_field: str = "amount"
    function_calling: str = "off"
    function_calling_model_patterns: list[str] = [
        "gpt-4", "gpt-4-turbo", "gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo",
    ]

    # ── Conversation context ──────────────────────────────────────────────────
    history_window: int = 6
    history_truncate_chars: int = 200
    context_preview_max_chars: int = 3000

    # ── Query execution ───────────────────────────────────────────────────────
    per_page: int = 10
    query_state_ttl_minutes: int = 30
    currency_symbol: str = "$"

    # ── Catalog ───────────────────────────────────────────────────────────────
    entity_modules: list[str] = []
    remote_nodes: list[RemoteNode] = []

    # ── Session store ─────────────────────────────────────────────────────────
    session_store: str = "memory"   # memory | redis
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: str = ""

    # ── App ───────────────────────────────────────────────────────────────────
    environment: str = "development"
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def redis_url(self) -> str:
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/0"
        return f"redis://{self.redis_host}:{self.redis_port}/0"


def option(options: dict[str, Any] | None, key: str, default: Any) -> Any:
    """Per-call override lookup: options[key] when present and not None, else default."""
    if options and options.get(key) is not None:
        return options[key]
    return default


def clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = default
    return max(low, min(high, number))


@lru_cache
def get_settings() -> Settings:
    return Settings()
