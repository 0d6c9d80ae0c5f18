"""
Status API: read-only view over checkpoints and the run audit trail
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from sqlalchemy.engine import make_url
from api.routes import health, runs
from core.config import settings
from core.logging import setup_logging
import logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    url = make_url(settings.DATABASE_URL)
    logger.info(f"Status API up ({settings.ENVIRONMENT}), store {url.drivername}://{url.host or ''}/{url.database}")
    yield
    logger.info("Status API shutting down")


app = FastAPI(
    title="Crawl-Ingest Status API",
    description="Checkpoints and run history of the crawl-ingest pipelines",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(runs.router)


@app.get("/")
async def root():
    return {
        "service": "crawl-ingest",
        "version": app.version,
        "endpoints": {"health": "/health", "runs": "/runs"},
    }
