from __future__ import annotations

from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.api.services.llm_providers import (
    RECOMMENDED_OLLAMA_MODELS,
    GenerationConfig,
    check_ollama_connection,
    list_ollama_models,
)
from backend.dependencies import get_generation_config

router = APIRouter(prefix="/settings")


class ModelsPayload(BaseModel):
    models: List[str]


class OllamaPayload(BaseModel):
    base_url: str | None = None
    enabled: bool | None = None
    model: str | None = None


@router.get("/models")
def get_models(config: GenerationConfig = Depends(get_generation_config)):
    return {"ok": True, "models": config.cloud_models}


@router.put("/models")
def put_models(payload: ModelsPayload, config: GenerationConfig = Depends(get_generation_config)):
    if not any(m.strip() for m in payload.models):
        raise HTTPException(status_code=400, detail="At least one model id is required")
    return {"ok": True, "models": config.set_cloud_models(payload.models)}


@router.get("/ollama")
def get_ollama(config: GenerationConfig = Depends(get_generation_config)):
    return {"ok": True, "config": asdict(config.offline), "recommended_models": RECOMMENDED_OLLAMA_MODELS}


@router.put("/ollama")
def put_ollama(payload: OllamaPayload, config: GenerationConfig = Depends(get_generation_config)):
    offline = config.update_offline(base_url=payload.base_url, enabled=payload.enabled, model=payload.model)
    return {"ok": True, "config": asdict(offline)}


@router.get("/ollama/status")
def ollama_status(config: GenerationConfig = Depends(get_generation_config)):
    return {"ok": True, **check_ollama_connection(config.offline.base_url)}


@router.get("/ollama/models")
def ollama_models(config: GenerationConfig = Depends(get_generation_config)):
    return {"ok": True, **list_ollama_models(config.offline.base_url)}
