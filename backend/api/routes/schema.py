from fastapi import APIRouter, Depends

from backend.api.services.query_engine import QueryEngine
from backend.dependencies import get_query_engine

router = APIRouter()


@router.get("/schema")
def schema(engine: QueryEngine = Depends(get_query_engine)):
    description = engine.schema_discovery.describe_schema()
    return {"ok": True, "schema": description.to_dict()}
