"""
Rule builder router: conversational rule-building sessions.
"""
import logging
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from rule_builder import get_rule_builder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rule-builder", tags=["Rule Builder"])


class StartSessionRequest(BaseModel):
    library_id: int
    media_type: Optional[str] = None


class MessageRequest(BaseModel):
    message: str


class GenerateRuleRequest(BaseModel):
    name: Optional[str] = None


@router.post("/sessions")
async def start_session(request: StartSessionRequest):
    return await get_rule_builder().start_session(request.library_id, request.media_type)


@router.get("/sessions/{session_id}")
async def get_session_state(session_id: str):
    return await get_rule_builder().get_session(session_id)


@router.post("/sessions/{session_id}/messages")
async def send_message(session_id: str, request: MessageRequest):
    return await get_rule_builder().process_message(session_id, request.message)


@router.post("/sessions/{session_id}/generate")
async def generate_rule(session_id: str, request: Optional[GenerateRuleRequest] = None):
    """Compile the conversation into a saved rule; the session ends."""
    name = request.name if request else None
    return await get_rule_builder().generate_rule(session_id, name=name)


@router.delete("/sessions/{session_id}")
async def end_session(session_id: str):
    await get_rule_builder().end_session(session_id)
    return {"status": "ended", "session_id": session_id}
