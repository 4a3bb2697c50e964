"""
Turn graph — one decision and one tool execution per user message.

    START → context → decide → dispatch → END

context:  catalog, remote nodes, conversation summary, visible list and
          selected entity for the decision prompt
decide:   DecisionService.decide (LLM with deterministic fallback)
dispatch: ToolDispatcher.dispatch (tool + post-execution policy)
"""

from typing import TYPE_CHECKING

from langgraph.graph import END, START, StateGraph

from autonomous_rag.core.graph_state import TurnState

if TYPE_CHECKING:
    from autonomous_rag.agents.agent import AutonomousRAGAgent


def build_turn_graph(agent: "AutonomousRAGAgent"):
    """Compile the turn graph around an agent's node methods. Safe to reuse across turns."""
    workflow = StateGraph(TurnState)

    workflow.add_node("context", agent.context_node)
    workflow.add_node("decide", agent.decide_node)
    workflow.add_node("dispatch", agent.dispatch_node)

    workflow.add_edge(START, "context")
    workflow.add_edge("context", "decide")
    workflow.add_edge("decide", "dispatch")
    workflow.add_edge("dispatch", END)

    return workflow.compile()
