from typing import Any, TypedDict

from autonomous_rag.rag.schemas import Decision, ToolResult


class TurnState(TypedDict, total=False):
    """State passed between the nodes of one user turn."""
    message:    str
    session_id: str
    user_id:    Any
    history:    list[dict[str, Any]]   # [{role, content}, ...] oldest first
    options:    dict[str, Any]         # per-call overrides
    context:    dict[str, Any]         # decision context built by the context node
    decision:   Decision
    result:     ToolResult
    metadata:   dict[str, Any]         # per-turn timings
