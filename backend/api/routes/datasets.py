from __future__ import annotations

import os

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from backend.api.services.dataset_service import DatasetService
from backend.api.services.errors import DatasetIngestionError, NotFoundError, QueryExecutionError
from backend.api.services.query_engine import coerce_rows
from backend.dependencies import get_dataset_service

router = APIRouter(prefix="/datasets")


@router.post("")
async def upload_dataset(
    file: UploadFile = File(...),
    name: str | None = Form(default=None),
    service: DatasetService = Depends(get_dataset_service),
):
    filename = file.filename or "dataset.csv"
    if not filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Only CSV files can be uploaded as datasets")
    data = await file.read()
    dataset_name = (name or "").strip() or os.path.splitext(os.path.basename(filename))[0]
    try:
        dataset = service.ingest_csv(dataset_name, data)
    except DatasetIngestionError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return {"ok": True, "dataset": dataset.to_dict()}


@router.get("")
def list_datasets(service: DatasetService = Depends(get_dataset_service)):
    return {"ok": True, "datasets": [d.to_dict() for d in service.list_datasets()]}


@router.get("/{dataset_id}/rows")
def dataset_rows(dataset_id: int, limit: int = 100, offset: int = 0, service: DatasetService = Depends(get_dataset_service)):
    try:
        rows = service.preview_rows(dataset_id, limit=min(max(limit, 1), 1000), offset=max(offset, 0))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except QueryExecutionError as e:
        raise HTTPException(status_code=500, detail=e.message)
    return {"ok": True, "rows": coerce_rows(rows), "limit": limit, "offset": offset}


@router.delete("/{dataset_id}")
def delete_dataset(dataset_id: int, service: DatasetService = Depends(get_dataset_service)):
    try:
        service.delete_dataset(dataset_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return {"ok": True}
