from functools import lru_cache

from autonomous_rag.agents.agent import AutonomousRAGAgent, build_agent
from autonomous_rag.core.config import get_settings


@lru_cache
def get_agent() -> AutonomousRAGAgent:
    """Process-wide agent. Tests replace it through app.dependency_overrides."""
    return build_agent(get_settings())
