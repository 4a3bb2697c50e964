from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

# Must come after load_dotenv so env vars are available
from autonomous_rag.api import agent, health                      # noqa: E402
from autonomous_rag.catalog.registry import load_entity_modules   # noqa: E402
from autonomous_rag.core.config import get_settings               # noqa: E402
from autonomous_rag.core.logging import configure_logging, get_logger  # noqa: E402

configure_logging()
log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    load_entity_modules(settings)
    log.info("startup", version="0.1.0", environment=settings.environment)
    yield
    log.info("shutdown")


app = FastAPI(
    title="Autonomous RAG Agent",
    description="Decision-and-dispatch engine for a conversational data assistant",
    version="0.1.0",
    lifespan=lifespan,
)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(agent.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("autonomous_rag.main:app", host="0.0.0.0", port=8000, reload=True)
