"""
GET /health: store connectivity plus the checkpoint of every source
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, CheckpointInfo
from models.base import ETLStatus
from models.checkpoint import ETLCheckpoint
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


async def _load_checkpoints(db: AsyncSession):
    result = await db.execute(select(ETLCheckpoint).order_by(ETLCheckpoint.source_name))
    return [CheckpointInfo.model_validate(row) for row in result.scalars().all()]


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Report whether the store answers and where each source's cursor stands.

    A source whose last run failed keeps its cursor; it is counted in
    ``failed_sources`` until a later run succeeds.
    """
    try:
        await db.execute(text("SELECT 1"))
        checkpoints = await _load_checkpoints(db)
    except SQLAlchemyError as e:
        logger.error(f"Health check could not read the store: {e}")
        return HealthCheckResponse(database_connected=False)

    failed = [c for c in checkpoints if c.status == ETLStatus.FAILED.value]
    succeeded = [c for c in checkpoints if c.status == ETLStatus.SUCCESS.value]

    return HealthCheckResponse(
        database_connected=True,
        checkpoints=checkpoints,
        total_sources=len(checkpoints),
        successful_sources=len(succeeded),
        failed_sources=len(failed),
    )
