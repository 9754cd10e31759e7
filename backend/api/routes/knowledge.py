from __future__ import annotations

from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field

from backend.api.services.document_processor import DocumentProcessor, detect_doc_type
from backend.api.services.errors import NotFoundError
from backend.api.services.knowledge_store import KnowledgeStore
from backend.api.services.retrieval import HybridRetriever
from backend.dependencies import get_document_processor, get_knowledge_store, get_retriever

router = APIRouter(prefix="/knowledge")


class SearchPayload(BaseModel):
    query: str = Field(..., min_length=1)
    top_k: int | None = Field(default=None, ge=1, le=50)


@router.post("/documents")
async def upload_documents(
    background_tasks: BackgroundTasks,
    files: List[UploadFile] = File(...),
    processor: DocumentProcessor = Depends(get_document_processor),
):
    """Register each file as a processing document and extract/chunk/embed it in the background."""
    payload = []
    for f in files:
        if detect_doc_type(f.filename or "") is None:
            raise HTTPException(status_code=400, detail=f"Unsupported file type: {f.filename}")
        payload.append((f.filename, await f.read()))

    documents = []
    for filename, data in payload:
        doc = processor.register_upload(filename)
        background_tasks.add_task(processor.process, doc.id, data, filename)
        documents.append(doc.to_dict())
    return {"ok": True, "documents": documents}


@router.get("/documents")
def list_documents(store: KnowledgeStore = Depends(get_knowledge_store)):
    return {"ok": True, "documents": [d.to_dict() for d in store.list_documents()]}


@router.get("/documents/{document_id}")
def get_document(document_id: int, store: KnowledgeStore = Depends(get_knowledge_store)):
    try:
        doc = store.get_document(document_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return {"ok": True, "document": doc.to_dict()}


@router.delete("/documents/{document_id}")
def delete_document(document_id: int, store: KnowledgeStore = Depends(get_knowledge_store)):
    try:
        store.delete_document(document_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return {"ok": True}


@router.get("/stats")
def knowledge_stats(store: KnowledgeStore = Depends(get_knowledge_store)):
    return {"ok": True, **store.stats()}


@router.post("/search")
def search(payload: SearchPayload, retriever: HybridRetriever = Depends(get_retriever)):
    return {"ok": True, **retriever.search(payload.query, payload.top_k).to_dict()}
