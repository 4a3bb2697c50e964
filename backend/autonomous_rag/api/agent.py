"""
Agent API endpoint.

One POST per user turn; the response is the ToolResult payload with unset
fields dropped. Callers keep the session_id to continue a conversation
(pagination, "the 2nd one", actions on the record just shown).
"""

import uuid
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from autonomous_rag.agents.agent import AutonomousRAGAgent
from autonomous_rag.api.deps import get_agent
from autonomous_rag.core.logging import bind_turn, get_logger
from autonomous_rag.middleware.sanitize import sanitize_message

log = get_logger(__name__)
router = APIRouter(prefix="/api/agent", tags=["agent"])


class HistoryMessage(BaseModel):
    role: str
    content: str = ""


class ProcessRequest(BaseModel):
    message: str
    session_id: str | None = None
    user_id: str | int | None = None
    conversation_history: list[HistoryMessage] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)


@router.post("/process")
async def process_message(req: ProcessRequest, agent: AutonomousRAGAgent = Depends(get_agent)):
    """Run one turn and return the result envelope plus the session id."""
    message = sanitize_message(req.message, req.user_id)
    session_id = req.session_id or str(uuid.uuid4())
    bind_turn(session_id=session_id, user_id=req.user_id)

    log.info("agent_process", message_length=len(message))

    result = await agent.process(
        message,
        session_id,
        req.user_id,
        [m.model_dump() for m in req.conversation_history],
        req.options,
    )
    return {**result.to_payload(), "session_id": session_id}
