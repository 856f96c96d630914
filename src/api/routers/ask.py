"""POST /ask -- chat endpoint, plus dry-run planning, deep dives and session memory."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field
from fastapi import APIRouter, Depends, HTTPException

from src.copilot.deep_dive import DEEP_DIVES
from src.copilot.formatter import ChatResponse
from src.copilot.memory import get_memory_store
from src.copilot.service import ask as copilot_ask, deep_dive as copilot_deep_dive
from src.core.errors import CopilotError
from src.db.executor import QueryExecutor, get_executor
from src.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()



class AskRequest(BaseModel):
    question: str = Field(..., min_length=2, max_length=500, description="Natural-language engagement question")
    mode: str = Field("mock", description="mock | openai | anthropic")
    session_id: str | None = Field(None, max_length=128, description="Conversation id for follow-up questions")


class DeepDiveRequest(AskRequest):
    kind: str = Field(..., description="quarterly | assignment | regional")


class SessionResponse(BaseModel):
    session_id: str
    memory: dict[str, Any]



@router.post("", response_model=ChatResponse)
def ask_endpoint(req: AskRequest, executor: QueryExecutor = Depends(get_executor)):
    """Full pipeline: question -> plan -> safety check -> execute -> narrative."""
    try:
        return copilot_ask(req.question, session_id=req.session_id, mode=req.mode, executor=executor)
    except CopilotError:
        raise
    except Exception as exc:
        logger.exception("Copilot.ask failed")
        raise HTTPException(status_code=500, detail=str(exc))


@router.post("/plan", response_model=ChatResponse)
def plan_endpoint(req: AskRequest, executor: QueryExecutor = Depends(get_executor)):
    """Dry-run: question -> plan and SQL, nothing executed."""
    try:
        return copilot_ask(req.question, session_id=req.session_id, mode=req.mode, execute=False, executor=executor)
    except CopilotError:
        raise
    except Exception as exc:
        logger.exception("Copilot.plan failed")
        raise HTTPException(status_code=500, detail=str(exc))


@router.post("/deep-dive", response_model=ChatResponse)
def deep_dive_endpoint(req: DeepDiveRequest, executor: QueryExecutor = Depends(get_executor)):
    """Run one deep dive for the question's context."""
    if req.kind not in DEEP_DIVES:
        raise HTTPException(status_code=404, detail=f"Unknown deep dive '{req.kind}'")
    return copilot_deep_dive(req.question, req.kind, session_id=req.session_id, mode=req.mode, executor=executor)


@router.get("/deep-dives")
def list_deep_dives() -> dict:
    return {"deep_dives": [o.to_dict() for o in DEEP_DIVES.values()]}


@router.get("/session/{session_id}", response_model=SessionResponse)
def session_endpoint(session_id: str):
    """Return what the conversation has remembered so far."""
    return SessionResponse(session_id=session_id, memory=get_memory_store().get(session_id).to_dict())


@router.delete("/session/{session_id}")
def clear_session_endpoint(session_id: str):
    """Forget a conversation."""
    return {"cleared": get_memory_store().drop(session_id)}
