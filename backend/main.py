from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.api.routes.datasets import router as datasets_router
from backend.api.routes.knowledge import router as knowledge_router
from backend.api.routes.query import router as query_router
from backend.api.routes.schema import router as schema_router
from backend.api.routes.settings import router as settings_router
from backend.config import get_settings
from backend.dependencies import get_relational_engine
from backend.logger import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings().log_level)
    # creates tables and seeds products/sales on first start
    get_relational_engine()
    yield


app = FastAPI(title="NLP Query Chatbot", lifespan=lifespan)

# CORS for local dev (adjust in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(query_router, prefix="/api", tags=["query"])
app.include_router(schema_router, prefix="/api", tags=["schema"])
app.include_router(knowledge_router, prefix="/api", tags=["knowledge"])
app.include_router(datasets_router, prefix="/api", tags=["datasets"])
app.include_router(settings_router, prefix="/api", tags=["settings"])


@app.get("/")
async def root():
    return {"status": "ok", "service": "nlp-query-chatbot"}


if __name__ == "__main__":
    import uvicorn
    # Start uvicorn server in-process (no reloader, no subprocess spawn)
    config = uvicorn.Config(app=app, host="127.0.0.1", port=8000, reload=False)
    server = uvicorn.Server(config)
    server.run()
