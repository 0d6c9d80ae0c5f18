"""
Durable cursor per source and the run audit trail.

Every operation opens its own short session and commits before returning,
so a checkpoint write never shares a transaction with a batch write.
"""

from typing import Any, Dict, Optional
from datetime import datetime
from sqlalchemy import select, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from models.checkpoint import ETLCheckpoint
from models.etl_run import ETLRun
from models.base import SourceType, ETLStatus
from core.exceptions import CheckpointError
from ingestion.state import RunState
import json
import logging
import uuid

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Checkpoint management for one (source_type, source_name).

    Lifecycle of the stored row:
    - mark_running: run started (row created on first use)
    - save: a batch committed, cursor now points at the next batch
    - mark_retry: a retryable failure, retry marker persisted
    - mark_done: source exhausted, cursor reset so the next run starts over
    - mark_failed: run aborted, cursor kept for the next run to resume from
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        source_type: SourceType,
        source_name: str,
        checkpoint_type: str = "page",
        initial_cursor: int = 0
    ):
        self.session_factory = session_factory
        self.source_type = source_type
        self.source_name = source_name
        self.checkpoint_type = checkpoint_type
        self.initial_cursor = initial_cursor

    def _context(self, operation: str, **extra: Any) -> Dict[str, Any]:
        return {"source_name": self.source_name, "operation": operation, **extra}

    async def _get(self, session) -> Optional[ETLCheckpoint]:
        result = await session.execute(
            select(ETLCheckpoint).where(
                and_(
                    ETLCheckpoint.source_type == self.source_type,
                    ETLCheckpoint.source_name == self.source_name
                )
            )
        )
        return result.scalar_one_or_none()

    async def _update(self, operation: str, **values: Any) -> None:
        """Get-or-create the row and apply values in one short transaction."""
        try:
            async with self.session_factory() as session, session.begin():
                checkpoint = await self._get(session)
                if checkpoint is None:
                    checkpoint = ETLCheckpoint(
                        source_type=self.source_type,
                        source_name=self.source_name,
                        checkpoint_type=self.checkpoint_type,
                        checkpoint_value=str(self.initial_cursor),
                        retry_count=0,
                        total_runs=0,
                        total_records_processed=0,
                        last_records_processed=0,
                    )
                    session.add(checkpoint)

                for key, value in values.items():
                    if callable(value):
                        value = value(checkpoint)
                    setattr(checkpoint, key, value)
                checkpoint.updated_at = datetime.utcnow()
        except SQLAlchemyError as e:
            raise CheckpointError(
                f"Checkpoint {operation} failed for {self.source_name}",
                context=self._context(operation),
                original_exception=e
            )

    async def load(self) -> RunState:
        """
        Read the cursor to start from.

        Returns the initial cursor when no row exists; a retry marker left by
        a previous run is returned as retry_count with resumed=True.
        """
        try:
            async with self.session_factory() as session:
                checkpoint = await self._get(session)
        except SQLAlchemyError as e:
            raise CheckpointError(
                f"Checkpoint load failed for {self.source_name}",
                context=self._context("load"),
                original_exception=e
            )

        if checkpoint is None or checkpoint.checkpoint_value in (None, ""):
            return RunState(cursor=self.initial_cursor)

        retry_count = checkpoint.retry_count or 0
        return RunState(
            cursor=int(checkpoint.checkpoint_value),
            retry_count=retry_count,
            resumed=retry_count > 0,
        )

    async def save(self, state: RunState, records_processed: int = 0) -> None:
        """Persist the cursor after a batch committed."""
        await self._update(
            "save",
            checkpoint_value=str(state.cursor),
            retry_count=state.retry_count,
            total_records_processed=lambda c: (c.total_records_processed or 0) + records_processed,
            last_records_processed=lambda c: (c.last_records_processed or 0) + records_processed,
        )
        logger.debug(f"Checkpoint saved for {self.source_name}: cursor={state.cursor}")

    async def mark_running(self) -> None:
        await self._update(
            "mark_running",
            status=ETLStatus.RUNNING,
            last_run_at=datetime.utcnow(),
            total_runs=lambda c: (c.total_runs or 0) + 1,
            last_records_processed=0,
            error_message=None,
        )

    async def mark_retry(self, state: RunState, error: Exception) -> None:
        await self._update(
            "mark_retry",
            status=ETLStatus.RETRYING,
            retry_count=state.retry_count,
            error_message=str(error),
        )

    async def mark_done(self) -> None:
        await self._update(
            "mark_done",
            status=ETLStatus.SUCCESS,
            checkpoint_value=str(self.initial_cursor),
            retry_count=0,
            last_success_at=datetime.utcnow(),
            error_message=None,
        )

    async def mark_failed(self, error: Exception) -> None:
        await self._update(
            "mark_failed",
            status=ETLStatus.FAILED,
            retry_count=0,
            last_failure_at=datetime.utcnow(),
            error_message=str(error),
        )


class RunTracker:
    """Writes one etl_runs row per pipeline run."""

    def __init__(self, session_factory: async_sessionmaker, source_type: SourceType, source_name: str):
        self.session_factory = session_factory
        self.source_type = source_type
        self.source_name = source_name
        self.run_pk: Optional[int] = None
        self.run_id: Optional[uuid.UUID] = None

    def _failed(self, operation: str, error: SQLAlchemyError) -> CheckpointError:
        return CheckpointError(
            f"Run record {operation} failed for {self.source_name}",
            context={"source_name": self.source_name, "operation": operation, "run_id": str(self.run_id)},
            original_exception=error
        )

    async def start(self, checkpoint_before: Optional[str] = None, config_snapshot: Optional[Dict[str, Any]] = None) -> uuid.UUID:
        """Create ETL run record"""
        run = ETLRun(
            run_id=uuid.uuid4(),
            source_type=self.source_type,
            source_name=self.source_name,
            status=ETLStatus.RUNNING,
            started_at=datetime.utcnow(),
            checkpoint_before=checkpoint_before,
            config_snapshot=config_snapshot,
        )
        try:
            async with self.session_factory() as session, session.begin():
                session.add(run)
                await session.flush()
                self.run_pk = run.id
                self.run_id = run.run_id
        except SQLAlchemyError as e:
            raise self._failed("start", e)
        return self.run_id

    async def complete(
        self,
        status: ETLStatus,
        stats: Dict[str, Any],
        checkpoint_after: Optional[str] = None,
        error: Optional[Exception] = None
    ) -> None:
        """Complete ETL run with statistics"""
        if self.run_pk is None:
            return

        try:
            async with self.session_factory() as session, session.begin():
                run = await session.get(ETLRun, self.run_pk)
                if run is None:
                    return
                run.status = status
                run.completed_at = datetime.utcnow()
                run.duration_seconds = (run.completed_at - run.started_at).total_seconds()
                run.records_fetched = stats.get("records_fetched", 0)
                run.records_skipped = stats.get("records_skipped", 0)
                run.records_rejected = stats.get("records_rejected", 0)
                run.records_loaded = stats.get("records_loaded", 0)
                run.batches = stats.get("batches", 0)
                run.attempts = stats.get("attempts", 0)
                run.checkpoint_after = checkpoint_after
                if error is not None:
                    run.error_message = str(error)
                    details = error.to_dict() if hasattr(error, "to_dict") else {"error_type": type(error).__name__}
                    run.error_details = json.loads(json.dumps(details, default=str))
        except SQLAlchemyError as e:
            raise self._failed("complete", e)
