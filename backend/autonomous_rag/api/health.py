from fastapi import APIRouter, Depends

from autonomous_rag.agents.agent import AutonomousRAGAgent
from autonomous_rag.api.deps import get_agent
from autonomous_rag.memory.query_state import RedisSessionStore

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(agent: AutonomousRAGAgent = Depends(get_agent)):
    """Health check endpoint.  Verifies the session store is reachable."""
    store = agent.session_store
    if isinstance(store, RedisSessionStore):
        try:
            await store.ping()
            store_status = "ok"
        except Exception as exc:
            store_status = f"error: {exc}"
    else:
        store_status = "memory"

    return {"status": "ok", "session_store": store_status}
