from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from backend.api.services.query_engine import QueryEngine
from backend.dependencies import get_query_engine

router = APIRouter()


class AskPayload(BaseModel):
    question: str = Field(..., min_length=1)
    mode: Literal["sql", "rag"] = "sql"


class ChatPayload(BaseModel):
    message: str = Field(..., min_length=1)


class RagPayload(BaseModel):
    query: str = Field(..., min_length=1)


def _require_text(text: str) -> str:
    text = (text or "").strip()
    if not text:
        raise HTTPException(status_code=400, detail="Question must not be empty")
    return text


@router.post("/ask")
def ask(payload: AskPayload, engine: QueryEngine = Depends(get_query_engine)):
    return engine.ask_question(_require_text(payload.question), mode=payload.mode)


@router.post("/sql-chat")
def sql_chat(payload: ChatPayload, engine: QueryEngine = Depends(get_query_engine)):
    return engine.ask_question(_require_text(payload.message), mode="sql")


@router.post("/rag/query")
def rag_query(payload: RagPayload, engine: QueryEngine = Depends(get_query_engine)):
    return engine.ask_question(_require_text(payload.query), mode="rag")


@router.get("/query/history")
def query_history(limit: int = 20, engine: QueryEngine = Depends(get_query_engine)):
    return {"ok": True, "history": engine.recent_history(limit)}


@router.get("/metrics")
def metrics(engine: QueryEngine = Depends(get_query_engine)):
    return {"ok": True, "metrics": engine.get_metrics()}


@router.post("/metrics/reset")
def metrics_reset(engine: QueryEngine = Depends(get_query_engine)):
    return engine.reset_metrics()
