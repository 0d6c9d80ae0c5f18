"""
Run history endpoint
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from api.dependencies import get_db
from schemas.api import RunListResponse, RunSummary
from models.etl_run import ETLRun
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Runs"])


@router.get("/runs", response_model=RunListResponse)
async def list_runs(
    source_name: Optional[str] = Query(None, description="Filter by source name"),
    limit: int = Query(20, ge=1, le=200, description="Maximum number of runs"),
    db: AsyncSession = Depends(get_db)
):
    """Most recent pipeline runs first."""
    query = select(ETLRun)
    if source_name:
        query = query.where(ETLRun.source_name == source_name)
    query = query.order_by(ETLRun.started_at.desc(), ETLRun.id.desc()).limit(limit)

    result = await db.execute(query)
    runs = [RunSummary.model_validate(run) for run in result.scalars().all()]

    logger.debug(f"GET /runs - source_name={source_name}, returned {len(runs)}")
    return RunListResponse(runs=runs, count=len(runs))
