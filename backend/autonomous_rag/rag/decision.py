"""
Decision service — picks the single tool that answers a user turn.

decide():
    1. Build the decision prompt (message, conversation summary, visible
       list, selected entity, entity catalog, remote nodes)
    2. Call the LLM with a timeout
    3. Parse the JSON decision (code fences stripped, first {...} block as
       a second chance)
    4. On call failure, timeout or unparsable output → deterministic
       heuristic fallback

decide() never raises for model-side problems; the turn always gets a
Decision whose tool is one of the nine ToolName values.
"""

import asyncio
import json
import re
from typing import Any

from autonomous_rag.catalog.models import EntityDescriptor
from autonomous_rag.core.config import Settings, clamp, option
from autonomous_rag.core.errors import DecisionParseError
from autonomous_rag.core.llm import TextGenerator
from autonomous_rag.core.logging import get_logger
from autonomous_rag.rag.filters import ORDINAL_WORDS
from autonomous_rag.rag.schemas import Decision, ToolName

log = get_logger(__name__)


DEFAULT_PROMPT_TEMPLATE = """\
You are the tool router of a data assistant.
Pick the single best tool for the user's request and reply with valid JSON only.

=== DECISION TREE (check in order, the FIRST rule that matches wins) ===

1. ANSWER ALREADY VISIBLE
   The visible list or the selected entity below already holds what the user
   asks for, so no new query is needed → "answer_from_context".
   Put the answer in parameters.answer.
   e.g. "what is the status of that invoice?" while that invoice is shown.

2. PAGINATION
   "next", "more", "show more", "continue", "next page" with NO new filter
   → "db_query_next" (no parameters).

3. ACTION ON DATA
   The user wants to create, update, delete, send, mark or otherwise change
   records → "model_tool".
   Set parameters.model, parameters.tool_name and parameters.tool_params.

4. COUNTING
   "how many ...", "count of ...", "number of ..." → "db_count".
   Set parameters.model and optional parameters.filters.

5. AGGREGATION
   "total", "sum of", "average", "highest", "lowest", "min", "max" over a
   numeric field → "db_aggregate".
   Set parameters.model, parameters.aggregate.operation (sum|avg|min|max)
   and parameters.aggregate.field.

6. STRUCTURED RETRIEVAL
   List, show, find, get or fetch records of a known model, or any request
   with field filters (id, date, status, amount range) → "db_query".
   "list <model>" and "show my <model>" are ALWAYS db_query.
   A position in the visible list ("2", "the 2nd one") is db_query with
   parameters.filters.id set to "use <N> ID from ENTITY IDS".
   Set parameters.model and parameters.filters (id, status, date_field,
   date_value, date_operator, date_end, amount_field, amount_min, amount_max).
   If the model is listed ONLY under a remote node and not among the
   available models → "route_to_node" with parameters.model and
   parameters.node (the node slug).

7. SEMANTIC SEARCH
   A meaning-based question, a request for similar content, or anything
   that cannot be written as field filters → "vector_search".
   Set parameters.query and optionally parameters.model.
   db_query:      "invoices with status paid"        (field match)
   vector_search: "invoices about building materials" (meaning)

8. MULTI-MODEL OR PLANNING
   The request spans several models or needs a multi-step plan
   → "exit_to_orchestrator".

9. NOTHING ELSE MATCHES
   → "db_query" with the most likely model.

=== CONTEXT ===

User message:
:message

Conversation summary:
:conversation

:last_entity_context
:selected_entity_context

Available models:
:models

Available remote nodes:
:nodes

=== RESPONSE FORMAT (JSON only, no markdown) ===

{
  "tool": "<tool name>",
  "reasoning": "<one sentence>",
  "parameters": { ... }
}
"""

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.MULTILINE)
_FENCE_CLOSE = re.compile(r"\s*```$", re.MULTILINE)
_DECODER = json.JSONDecoder()

_COUNT_INTENT = re.compile(r"\b(how many|count|number of)\b", re.IGNORECASE)
_AGGREGATE_INTENT = re.compile(r"\b(total|sum|average|avg|minimum|min|maximum|max)\b", re.IGNORECASE)
_NEXT_INTENT = re.compile(r"\b(next|more|show more|continue)\b", re.IGNORECASE)

_AGGREGATE_OPERATIONS = {
    "total": "sum", "sum": "sum",
    "average": "avg", "avg": "avg",
    "minimum": "min", "min": "min",
    "maximum": "max", "max": "max",
}

# "2", "#2", "no. 2", "2nd", "the 2nd one", "second", "the second one"
_BARE_POSITION = re.compile(
    r"^(?:the\s+|no\.?\s*|number\s+|#\s*)?"
    r"(?:(?P<num>\d{1,4})(?:st|nd|rd|th)?|(?P<word>" + "|".join(ORDINAL_WORDS) + r"))"
    r"(?:\s+one)?[.!?]?$",
    re.IGNORECASE,
)

_FUNCTION_CALLING_OFF = ("off", "false", "0", "disabled")


class DecisionService:
    def __init__(self, generator: TextGenerator, settings: Settings):
        self.generator = generator
        self.settings = settings

    # ── Public API ────────────────────────────────────────────────────────────

    async def decide(
        self,
        message: str,
        context: dict[str, Any],
        model: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> Decision:
        options = options or {}
        model = model or self.settings.decision_model
        prompt = self.build_prompt(message, context)
        log.debug("decision_prompt", prompt_length=len(prompt), model=model)

        try:
            content = await asyncio.wait_for(
                self.generator.generate(
                    prompt,
                    model=model,
                    temperature=self.temperature(options),
                    max_tokens=self.max_tokens(options),
                    json_mode=self.should_use_function_calling(model, options),
                ),
                timeout=self.settings.decision_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.error("decision_llm_timeout", model=model, timeout=self.settings.decision_timeout_seconds)
            return self.fallback(message, context, options)
        except Exception as exc:
            log.error("decision_llm_failed", model=model, error=str(exc))
            return self.fallback(message, context, options)

        content = (content or "").strip()
        log.debug("decision_response", content=content[:1000])

        try:
            return Decision.coerce(self.parse(content))
        except DecisionParseError:
            log.warning("decision_parse_failed", content=content[:300])
            return self.fallback(message, context, options)

    def should_use_function_calling(self, model: str, options: dict[str, Any] | None = None) -> bool:
        mode = option(options, "function_calling", self.settings.function_calling)
        if isinstance(mode, str):
            normalized = mode.strip().lower()
        else:
            normalized = "on" if mode else "off"
        if normalized in _FUNCTION_CALLING_OFF:
            return False

        model = (model or "").lower()
        return any(p.lower() in model for p in self.settings.function_calling_model_patterns)

    # ── Prompt ────────────────────────────────────────────────────────────────

    def build_prompt(self, message: str, context: dict[str, Any]) -> str:
        models = [_model_view(m) for m in context.get("models") or []]
        nodes = [_node_view(n) for n in context.get("nodes") or []]
        template = self.settings.decision_prompt_template or DEFAULT_PROMPT_TEMPLATE

        replacements = {
            ":message": message,
            ":conversation": context.get("conversation") or "(none)",
            ":last_entity_context": self.visible_list_context(context),
            ":selected_entity_context": self.selected_entity_context(context),
            ":models": json.dumps(models, indent=2, default=str),
            ":nodes": json.dumps(nodes, indent=2, default=str),
        }
        # single pass so a placeholder inside the user message is left alone
        pattern = re.compile("|".join(re.escape(k) for k in sorted(replacements, key=len, reverse=True)))
        return pattern.sub(lambda m: replacements[m.group(0)], template)

    def visible_list_context(self, context: dict[str, Any]) -> str:
        visible = context.get("last_entity_list")
        if not isinstance(visible, dict):
            return ""

        entity_data = visible.get("entity_data") or []
        if not entity_data:
            return ""

        entity_ids = visible.get("entity_ids") or []
        entity_type = visible.get("entity_type") or "item"
        start = visible.get("start_position") or 1
        end = visible.get("end_position") or len(entity_ids)

        text = f"CURRENTLY VISIBLE {entity_type}s (positions {start}-{end}):\n"
        if entity_ids:
            text += f"ENTITY IDS: {json.dumps(entity_ids)}\n"
        text += f"DATA PREVIEW:\n{self.json_preview(entity_data)}\n"
        return text

    def selected_entity_context(self, context: dict[str, Any]) -> str:
        selected = context.get("selected_entity")
        if not isinstance(selected, dict) or not selected:
            return ""
        return f"SELECTED ENTITY:\n{self.json_preview(selected)}\n"

    def json_preview(self, value: Any) -> str:
        try:
            text = json.dumps(value, indent=2, default=str)
        except (TypeError, ValueError):
            return "{}"

        max_chars = int(clamp(self.settings.context_preview_max_chars, 500, 12000, 3000))
        if len(text) <= max_chars:
            return text
        return text[:max_chars] + "\n... [truncated]"

    # ── Parsing ───────────────────────────────────────────────────────────────

    @staticmethod
    def parse(content: str) -> dict[str, Any]:
        """Extract the decision object; raises DecisionParseError when there is none."""
        clean = _FENCE_OPEN.sub("", (content or "").strip())
        clean = _FENCE_CLOSE.sub("", clean)

        # first decodable object carrying a "tool" key, scanning each "{" in turn
        start = clean.find("{")
        while start != -1:
            try:
                decision, _ = _DECODER.raw_decode(clean, start)
            except ValueError:
                decision = None
            if isinstance(decision, dict) and "tool" in decision:
                return decision
            start = clean.find("{", start + 1)

        raise DecisionParseError("No decision object in model response")

    # ── Fallback ──────────────────────────────────────────────────────────────

    def fallback(self, message: str, context: dict[str, Any], options: dict[str, Any] | None = None) -> Decision:
        """Heuristic decision used whenever the model gives nothing usable."""
        options = options or {}
        message = message or ""
        model = self.detect_model(message, context)

        position = self._bare_position(message, context)
        if position is not None:
            visible = context["last_entity_list"]
            return Decision(
                tool=ToolName.DB_QUERY,
                reasoning="Fallback: message refers to a position in the visible list",
                parameters={
                    "model": visible.get("entity_type") or model,
                    "filters": {"id": f"entity ids position {position}"},
                },
            )

        if _COUNT_INTENT.search(message):
            return Decision(
                tool=ToolName.DB_COUNT,
                reasoning="Fallback: detected counting intent",
                parameters={"model": model or "unknown"},
            )

        aggregate = _AGGREGATE_INTENT.search(message)
        if aggregate:
            return Decision(
                tool=ToolName.DB_AGGREGATE,
                reasoning="Fallback: detected aggregation intent",
                parameters={
                    "model": model or "unknown",
                    "aggregate": {
                        "operation": _AGGREGATE_OPERATIONS.get(aggregate.group(1).lower(), "sum"),
                        "field": self.settings.default_aggregate_field,
                    },
                },
            )

        if _NEXT_INTENT.search(message):
            return Decision(
                tool=ToolName.DB_QUERY_NEXT,
                reasoning="Fallback: detected pagination intent",
            )

        if self.fallback_tool(options) == ToolName.VECTOR_SEARCH:
            params: dict[str, Any] = {"query": message, "limit": self.fallback_limit(options)}
            if model is not None:
                params["model"] = model
            return Decision(
                tool=ToolName.VECTOR_SEARCH,
                reasoning="Fallback: using vector_search as default",
                parameters=params,
            )

        return Decision(
            tool=ToolName.DB_QUERY,
            reasoning="Fallback: using db_query as default",
            parameters={"model": model or "unknown"},
        )

    @staticmethod
    def detect_model(message: str, context: dict[str, Any]) -> str | None:
        """First catalog entity named in the message, else the only entity when there is one."""
        names = [_model_view(m).get("name") for m in context.get("models") or []]
        names = [n for n in names if isinstance(n, str) and n.strip()]
        text = (message or "").lower()

        for name in names:
            if name.lower() in text:
                return name
        if len(names) == 1:
            return names[0]
        return None

    @staticmethod
    def _bare_position(message: str, context: dict[str, Any]) -> int | None:
        visible = context.get("last_entity_list")
        if not isinstance(visible, dict) or not visible.get("entity_ids"):
            return None

        match = _BARE_POSITION.match(message.strip())
        if not match:
            return None
        if match.group("num"):
            position = int(match.group("num"))
        else:
            position = ORDINAL_WORDS[match.group("word").lower()]
        return position if position > 0 else None

    # ── Config helpers ────────────────────────────────────────────────────────

    def fallback_tool(self, options: dict[str, Any] | None = None) -> ToolName:
        tool = str(option(options, "decision_fallback_tool", self.settings.decision_fallback_tool)).strip().lower()
        return ToolName.DB_QUERY if tool == ToolName.DB_QUERY.value else ToolName.VECTOR_SEARCH

    def fallback_limit(self, options: dict[str, Any] | None = None) -> int:
        return int(clamp(option(options, "decision_fallback_limit", self.settings.decision_fallback_limit), 1, 50, 10))

    def temperature(self, options: dict[str, Any] | None = None) -> float:
        return clamp(option(options, "decision_temperature", self.settings.decision_temperature), 0.0, 1.0, 0.1)

    def max_tokens(self, options: dict[str, Any] | None = None) -> int:
        return int(clamp(option(options, "decision_max_tokens", self.settings.decision_max_tokens), 64, 4000, 1000))


def summarize_conversation(history: list[dict[str, Any]] | None, window: int = 6, truncate: int = 200) -> str:
    """Last `window` messages as "- role: content", each cut to `truncate` chars."""
    if not history:
        return "No previous conversation."

    lines = ["Recent conversation:"]
    for entry in history[-max(1, window):]:
        role = str(entry.get("role") or "user")
        content = str(entry.get("content") or "")
        if len(content) > truncate:
            content = content[:truncate] + "..."
        lines.append(f"- {role}: {content}")
    return "\n".join(lines)


def _model_view(model: EntityDescriptor | dict[str, Any]) -> dict[str, Any]:
    if isinstance(model, EntityDescriptor):
        return model.prompt_view()
    return dict(model) if isinstance(model, dict) else {}


def _node_view(node: Any) -> dict[str, Any]:
    if hasattr(node, "model_dump"):
        return node.model_dump()
    return dict(node) if isinstance(node, dict) else {"slug": str(node)}
