"""
Tests for DecisionService.

Covers:
- Parsing fenced / mixed-text JSON decisions (first decision object wins)
- LLM failure, timeout and garbage output falling back deterministically
- Heuristic fallback priority (count > aggregate > pagination > default)
- Positional guard for bare list positions
- Prompt assembly (visible list, selected entity, catalog, override template)
- Function-calling and knob clamping
- Conversation summary
"""

import asyncio
import json

import pytest

from autonomous_rag.core.errors import DecisionParseError
from autonomous_rag.rag.decision import DecisionService, summarize_conversation
from autonomous_rag.rag.schemas import ToolName

from tests.conftest import ScriptedGenerator


@pytest.fixture
def context(catalog):
    return {
        "models": catalog.describe_entities(),
        "nodes": [n.model_dump() for n in catalog.available_nodes()],
        "conversation": "No previous conversation.",
        "last_entity_list": None,
        "selected_entity": None,
    }


@pytest.fixture
def list_context(context):
    return {
        **context,
        "last_entity_list": {
            "entity_type": "invoice",
            "entity_ids": [101, 102, 103],
            "entity_data": [
                {"position": 1, "id": 101, "summary": "Invoice #101"},
                {"position": 2, "id": 102, "summary": "Invoice #102"},
                {"position": 3, "id": 103, "summary": "Invoice #103"},
            ],
            "start_position": 1,
            "end_position": 3,
        },
    }


class TestParse:
    def test_plain_json(self):
        decision = DecisionService.parse('{"tool": "db_count", "parameters": {"model": "invoice"}}')
        assert decision["tool"] == "db_count"

    def test_code_fences(self):
        content = '```json\n{"tool": "db_query", "reasoning": "list", "parameters": {}}\n```'
        assert DecisionService.parse(content)["tool"] == "db_query"

    def test_json_inside_prose(self):
        content = 'Sure! Here is my decision: {"tool": "vector_search", "parameters": {"query": "x"}} Hope it helps.'
        assert DecisionService.parse(content)["tool"] == "vector_search"

    def test_braces_after_the_decision(self):
        content = '{"tool": "db_count", "parameters": {"model": "invoice"}} Note: use {model} for the entity.'
        assert DecisionService.parse(content)["tool"] == "db_count"

    def test_first_decision_wins(self):
        content = 'Option A: {"tool": "db_query", "parameters": {}} Option B: {"tool": "db_count", "parameters": {}}'
        assert DecisionService.parse(content)["tool"] == "db_query"

    def test_skips_broken_leading_object(self):
        content = 'Thinking {not json} then {"tool": "vector_search", "parameters": {"query": "roofing"}}'
        decision = DecisionService.parse(content)
        assert decision["tool"] == "vector_search"
        assert decision["parameters"] == {"query": "roofing"}

    @pytest.mark.parametrize("content", ["", "no json here", '{"reasoning": "missing tool"}', "[1, 2]", "{broken"])
    def test_unusable(self, content):
        with pytest.raises(DecisionParseError):
            DecisionService.parse(content)


class TestDecide:
    async def test_returns_model_decision(self, generator, decision_service, context):
        generator.queue_decision("db_count", model="invoice", filters={"status": "paid"})
        decision = await decision_service.decide("how many paid invoices", context)

        assert decision.tool == ToolName.DB_COUNT
        assert decision.parameters["filters"] == {"status": "paid"}

    async def test_unknown_tool_becomes_db_query(self, generator, decision_service, context):
        generator.queue(json.dumps({"tool": "teleport", "parameters": {"model": "invoice"}}))
        decision = await decision_service.decide("list invoices", context)
        assert decision.tool == ToolName.DB_QUERY

    async def test_llm_failure_falls_back(self, generator, decision_service, context):
        generator.queue(RuntimeError("proxy down"))
        decision = await decision_service.decide("how many invoices", context)
        assert decision.tool == ToolName.DB_COUNT
        assert decision.reasoning.startswith("Fallback")

    async def test_garbage_falls_back(self, generator, decision_service, context):
        generator.queue("I think you want invoices")
        decision = await decision_service.decide("show more", context)
        assert decision.tool == ToolName.DB_QUERY_NEXT

    async def test_timeout_falls_back(self, settings, context):
        class SlowGenerator(ScriptedGenerator):
            async def generate(self, prompt, **kwargs):
                await asyncio.sleep(1)
                return '{"tool": "db_query"}'

        service = DecisionService(SlowGenerator(), settings.model_copy(update={"decision_timeout_seconds": 0.01}))
        decision = await service.decide("total invoices", context)
        assert decision.tool == ToolName.DB_AGGREGATE

    async def test_passes_clamped_knobs(self, generator, decision_service, context):
        generator.queue_decision("db_query", model="invoice")
        await decision_service.decide(
            "list invoices", context, model="gpt-4o",
            options={"decision_temperature": 3, "decision_max_tokens": 10, "function_calling": "on"},
        )
        call = generator.calls[0]
        assert call["model"] == "gpt-4o"
        assert call["temperature"] == 1.0
        assert call["max_tokens"] == 64
        assert call["json_mode"] is True

    async def test_default_model_from_settings(self, generator, decision_service, context, settings):
        generator.queue_decision("db_query", model="invoice")
        await decision_service.decide("list invoices", context)
        assert generator.calls[0]["model"] == settings.decision_model
        assert generator.calls[0]["json_mode"] is False


class TestFallback:
    @pytest.mark.parametrize("message", [
        "", "   ", "list invoices", "how many", "2", "?!", "next", "delete everything",
        "average of nothing", "éèà", "x" * 5000,
    ])
    def test_always_a_known_tool(self, decision_service, context, message):
        decision = decision_service.fallback(message, context)
        assert decision is not None
        assert decision.tool in set(ToolName)

    def test_count_beats_aggregate(self, decision_service, context):
        decision = decision_service.fallback("how many invoices have a total over 100", context)
        assert decision.tool == ToolName.DB_COUNT
        assert decision.parameters["model"] == "invoice"

    @pytest.mark.parametrize("message, operation", [
        ("total of my invoices", "sum"),
        ("sum invoices", "sum"),
        ("average invoice", "avg"),
        ("avg invoice", "avg"),
        ("minimum invoice", "min"),
        ("min invoice", "min"),
        ("maximum invoice", "max"),
        ("max invoice", "max"),
    ])
    def test_aggregate_operations(self, decision_service, context, message, operation):
        decision = decision_service.fallback(message, context)
        assert decision.tool == ToolName.DB_AGGREGATE
        assert decision.parameters["aggregate"] == {"operation": operation, "field": "amount"}

    def test_aggregate_field_is_configurable(self, generator, settings, context):
        service = DecisionService(generator, settings.model_copy(update={"default_aggregate_field": "total"}))
        decision = service.fallback("average invoice", context)
        assert decision.parameters["aggregate"]["field"] == "total"

    def test_aggregate_beats_pagination(self, decision_service, context):
        assert decision_service.fallback("show more total amounts", context).tool == ToolName.DB_AGGREGATE

    @pytest.mark.parametrize("message", ["next", "show more", "continue please", "more"])
    def test_pagination(self, decision_service, context, message):
        decision = decision_service.fallback(message, context)
        assert decision.tool == ToolName.DB_QUERY_NEXT
        assert decision.parameters == {}

    def test_default_vector_search(self, decision_service, context):
        decision = decision_service.fallback("invoices about roofing", context)
        assert decision.tool == ToolName.VECTOR_SEARCH
        assert decision.parameters == {"query": "invoices about roofing", "limit": 10, "model": "invoice"}

    def test_default_vector_search_without_model(self, decision_service, context):
        decision = decision_service.fallback("anything about roofing", context)
        assert "model" not in decision.parameters

    def test_default_db_query_option(self, decision_service, context):
        decision = decision_service.fallback("customers in Berlin", context, {"decision_fallback_tool": "db_query"})
        assert decision.tool == ToolName.DB_QUERY
        assert decision.parameters == {"model": "customer"}

    def test_invalid_fallback_tool_is_vector_search(self, decision_service, context):
        decision = decision_service.fallback("hello", context, {"decision_fallback_tool": "model_tool"})
        assert decision.tool == ToolName.VECTOR_SEARCH

    def test_fallback_limit_clamped(self, decision_service, context):
        assert decision_service.fallback("hello", context, {"decision_fallback_limit": 500}).parameters["limit"] == 50
        assert decision_service.fallback("hello", context, {"decision_fallback_limit": 0}).parameters["limit"] == 1

    def test_unknown_model_placeholder(self, decision_service, context):
        assert decision_service.fallback("how many", context).parameters["model"] == "unknown"

    def test_single_entity_shortcut(self, decision_service):
        context = {"models": [{"name": "invoice"}]}
        assert DecisionService.detect_model("how many are unpaid", context) == "invoice"
        assert decision_service.fallback("how many are unpaid", context).parameters["model"] == "invoice"


class TestPositionalGuard:
    @pytest.mark.parametrize("message, position", [
        ("2", 2), ("#3", 3), ("2nd", 2), ("the 2nd one", 2), ("second", 2), ("The third one.", 3),
    ])
    def test_bare_position_with_visible_list(self, decision_service, list_context, message, position):
        decision = decision_service.fallback(message, list_context)
        assert decision.tool == ToolName.DB_QUERY
        assert decision.parameters["model"] == "invoice"
        assert decision.parameters["filters"] == {"id": f"entity ids position {position}"}

    def test_no_visible_list(self, decision_service, context):
        assert decision_service.fallback("2", context).tool == ToolName.VECTOR_SEARCH

    def test_sentence_is_not_a_position(self, decision_service, list_context):
        assert decision_service.fallback("show 2 more", list_context).tool == ToolName.DB_QUERY_NEXT


class TestPrompt:
    def test_contains_context(self, decision_service, list_context):
        prompt = decision_service.build_prompt("the 2nd one", list_context)

        assert "the 2nd one" in prompt
        assert "No previous conversation." in prompt
        assert "CURRENTLY VISIBLE invoices (positions 1-3):" in prompt
        assert "ENTITY IDS: [101, 102, 103]" in prompt
        assert '"name": "invoice"' in prompt
        assert '"vector_search": true' in prompt
        assert '"slug": "eu-logistics"' in prompt
        assert "route_to_node" in prompt

    def test_without_visible_list(self, decision_service, context):
        prompt = decision_service.build_prompt("hi", context)
        assert "CURRENTLY VISIBLE" not in prompt
        assert "SELECTED ENTITY" not in prompt

    def test_selected_entity(self, decision_service, context):
        context["selected_entity"] = {"entity_id": 102, "entity_type": "invoice", "entity_data": {"status": "unpaid"}}
        assert "SELECTED ENTITY:" in decision_service.build_prompt("mark it paid", context)

    def test_override_template(self, generator, settings, context):
        service = DecisionService(generator, settings.model_copy(update={"decision_prompt_template": "Q=:message M=:models"}))
        prompt = service.build_prompt("hello", context)
        assert prompt.startswith("Q=hello M=[")

    def test_placeholders_in_message_are_left_alone(self, decision_service, context):
        prompt = decision_service.build_prompt("what does :models mean", context)
        assert "what does :models mean" in prompt

    def test_preview_truncated(self, generator, settings):
        service = DecisionService(generator, settings.model_copy(update={"context_preview_max_chars": 100}))
        preview = service.json_preview([{"summary": "x" * 50}] * 50)
        # clamped to the 500 char minimum
        assert len(preview) == 500 + len("\n... [truncated]")
        assert preview.endswith("\n... [truncated]")


class TestFunctionCalling:
    @pytest.mark.parametrize("mode", ["off", "false", "0", "disabled", "OFF", False])
    def test_disabled(self, decision_service, mode):
        assert decision_service.should_use_function_calling("gpt-4o", {"function_calling": mode}) is False

    def test_enabled_for_matching_model(self, decision_service):
        assert decision_service.should_use_function_calling("openai/GPT-4o-mini", {"function_calling": "on"})

    def test_enabled_but_model_not_matching(self, decision_service):
        assert not decision_service.should_use_function_calling("claude-3-haiku", {"function_calling": True})


class TestConversationSummary:
    def test_empty(self):
        assert summarize_conversation([]) == "No previous conversation."
        assert summarize_conversation(None) == "No previous conversation."

    def test_window_and_truncation(self):
        history = [{"role": "user", "content": f"message {i}"} for i in range(10)]
        history.append({"role": "assistant", "content": "y" * 250})

        summary = summarize_conversation(history, window=3, truncate=200)
        lines = summary.splitlines()

        assert lines[0] == "Recent conversation:"
        assert lines[1:3] == ["- user: message 8", "- user: message 9"]
        assert lines[3] == "- assistant: " + "y" * 200 + "..."
