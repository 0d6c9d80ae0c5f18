# ============================================================================
# File: ingestion/runner.py
# Description: Pipeline driver with checkpointed cursor and retry/backoff
# ============================================================================
"""
Pipeline Driver - Orchestrates fetch -> filter -> transform -> write ->
checkpoint -> pacing, in a loop, until the source is exhausted.

This module provides:
- An explicit state machine (INIT, FETCHING, FILTERING, TRANSFORMING,
  WRITING, CHECKPOINTING, PACING, DONE, FAILED)
- Outer retry with exponential backoff; every retry restarts the loop
  from the last persisted cursor
- Per-record skips that never fail the batch
- Run audit rows and terminal notifications
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging

from ingestion.base import SourceAdapter
from ingestion.checkpoint import CheckpointStore, RunTracker
from ingestion.filters.dedup import DedupFilter
from ingestion.loaders.postgres_loader import BatchWriter, WriteResult
from ingestion.state import PipelineState, RunState, FetchResult
from ingestion.transformers.normalizer import RecordTransformer
from models.base import ETLStatus
from core.config import settings
from core.notifications import Notifier
from core.exceptions import (
    PipelineError,
    RetryableError,
    FatalError,
    RecordSkipped
)

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]
AfterCommitHook = Callable[[List[Any], WriteResult], Awaitable[Any]]


class PipelineDriver:
    """
    Drives one source through the pipeline.

    Responsibilities:
    - Own the RunState for the duration of one run
    - Advance the cursor only after the batch it covers has committed
    - Retry retryable failures with bounded exponential backoff
    - Fail immediately on fatal errors
    - Record run statistics and notify on terminal states

    Args:
        source: Source adapter to pull batches from
        transformer: Maps raw records to entities
        writer: Transactional batch writer
        checkpoints: Durable cursor store for the source
        dedup: Optional filter skipping records already stored
        tracker: Optional etl_runs audit writer
        notifier: Optional terminal-state notifier
        max_retries: Retries allowed per run before failing
        min_delay / max_delay: Backoff bounds in seconds
        sleep: Cancellable sleep used for pacing and backoff
        after_commit: Called with the entities and WriteResult of each
            committed batch
    """

    def __init__(
        self,
        source: SourceAdapter,
        transformer: RecordTransformer,
        writer: BatchWriter,
        checkpoints: CheckpointStore,
        dedup: Optional[DedupFilter] = None,
        tracker: Optional[RunTracker] = None,
        notifier: Optional[Notifier] = None,
        max_retries: Optional[int] = None,
        min_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep: SleepFunc = asyncio.sleep,
        after_commit: Optional[AfterCommitHook] = None
    ):
        self.source = source
        self.transformer = transformer
        self.writer = writer
        self.checkpoints = checkpoints
        self.dedup = dedup
        self.tracker = tracker
        self.notifier = notifier
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.min_delay = settings.RETRY_MIN_DELAY if min_delay is None else min_delay
        self.max_delay = settings.RETRY_MAX_DELAY if max_delay is None else max_delay
        self.sleep = sleep
        self.after_commit = after_commit

        self.state = RunState()
        self.stats: Dict[str, Any] = {}
        self._started = False

    @property
    def name(self) -> str:
        return self.source.source_name

    def _enter(self, state: RunState, phase: PipelineState) -> None:
        state.phase = phase
        logger.info(f"[{self.name}] {phase.value} (cursor={state.cursor})")

    def backoff_delay(self, attempt: int, error: Optional[RetryableError] = None) -> float:
        """
        Delay before retry number `attempt` (1-based).

        min(max_delay, min_delay * 2^(attempt-1)), raised to the error's
        retry_after when the source asked for a longer wait.
        """
        delay = min(self.max_delay, self.min_delay * 2 ** (attempt - 1))
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    def _as_retryable(self, error: Exception) -> RetryableError:
        if isinstance(error, RetryableError):
            return error
        # Anything not classified is treated as transient
        return RetryableError(
            f"Unexpected {type(error).__name__} in pipeline loop",
            context={
                "source_name": self.name,
                "cursor": self.state.cursor,
                "phase": self.state.phase.value,
            },
            original_exception=error
        )

    # ------------------------------------------------------------------
    # Attempt setup
    # ------------------------------------------------------------------

    async def _start_attempt(self, previous: RunState) -> RunState:
        self._enter(previous, PipelineState.INIT)
        saved = await self.checkpoints.load()

        if not self._started:
            if saved.resumed:
                logger.info(
                    f"[{self.name}] Resuming from cursor={saved.cursor} "
                    f"after {saved.retry_count} earlier retries"
                )
            await self.checkpoints.mark_running()
            if self.tracker is not None:
                await self.tracker.start(
                    checkpoint_before=str(saved.cursor),
                    config_snapshot=self.source.describe()
                )
            self._started = True
            state = saved
            state.retry_count = max(saved.retry_count, previous.retry_count)
        else:
            state = RunState(
                cursor=saved.cursor,
                retry_count=previous.retry_count,
                resumed=True,
            )

        state.phase = PipelineState.INIT
        self.state = state
        return state

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _filter(self, records: List[Any]) -> Tuple[List[Any], int]:
        if self.dedup is None:
            return list(records), 0

        survivors, skipped = [], 0
        for record in records:
            if await self.dedup.should_skip(self.dedup.key_of(record)):
                skipped += 1
                continue
            survivors.append(record)
        return survivors, skipped

    async def _transform(self, records: List[Any]) -> Tuple[List[Any], int]:
        entities, skipped = [], 0
        for record in records:
            try:
                entities.extend(await self.transformer.transform(record))
            except RecordSkipped as e:
                skipped += 1
                logger.info(f"[{self.name}] Skipped {record.natural_key}: {e.reason}")
        return entities, skipped

    async def _run_batch(self, state: RunState) -> None:
        # --------------------------------------------------
        # FETCHING
        # --------------------------------------------------
        self._enter(state, PipelineState.FETCHING)
        result: FetchResult = await self.source.fetch(state.cursor)
        for reason in result.rejected:
            logger.warning(f"[{self.name}] Rejected raw record: {reason}")

        # --------------------------------------------------
        # FILTERING
        # --------------------------------------------------
        self._enter(state, PipelineState.FILTERING)
        survivors, duplicates = await self._filter(result.records)
        if duplicates:
            logger.info(f"[{self.name}] {duplicates} of {len(result.records)} records already stored")

        # --------------------------------------------------
        # TRANSFORMING
        # --------------------------------------------------
        self._enter(state, PipelineState.TRANSFORMING)
        entities, skipped = await self._transform(survivors)

        # --------------------------------------------------
        # WRITING
        # --------------------------------------------------
        if entities:
            self._enter(state, PipelineState.WRITING)
            written = await self.writer.write(entities)
            if self.after_commit is not None:
                await self.after_commit(entities, written)

        # --------------------------------------------------
        # CHECKPOINTING
        # --------------------------------------------------
        batch_is_empty = not result.records and result.next_cursor == state.cursor
        if not batch_is_empty:
            self._enter(state, PipelineState.CHECKPOINTING)
            advanced = RunState(
                cursor=result.next_cursor,
                retry_count=state.retry_count,
                has_more=result.has_more,
                resumed=state.resumed,
                phase=state.phase,
            )
            await self.checkpoints.save(advanced, records_processed=len(entities))
        state.cursor = result.next_cursor
        state.has_more = result.has_more

        self.stats["records_fetched"] += len(result.records)
        self.stats["records_rejected"] += len(result.rejected)
        self.stats["records_skipped"] += duplicates + skipped
        self.stats["records_loaded"] += len(entities)
        self.stats["batches"] += 1
        self.stats["cursor"] = state.cursor

    async def _run_loop(self, state: RunState) -> None:
        await self.source.prepare(state)

        while state.has_more:
            await self._run_batch(state)

            # --------------------------------------------------
            # PACING
            # --------------------------------------------------
            if state.has_more and self.source.pacing_seconds > 0:
                self._enter(state, PipelineState.PACING)
                await self.sleep(self.source.pacing_seconds)

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    async def _finish(self, status: ETLStatus, error: Optional[Exception] = None) -> None:
        # Bookkeeping failures are logged; the notification still goes out
        try:
            if status == ETLStatus.SUCCESS:
                await self.checkpoints.mark_done()
            else:
                await self.checkpoints.mark_failed(error)
        except PipelineError as e:
            logger.error(f"[{self.name}] Could not record terminal checkpoint: {e}")

        if self.tracker is not None:
            try:
                await self.tracker.complete(
                    status=status,
                    stats=self.stats,
                    checkpoint_after=str(self.state.cursor),
                    error=error
                )
            except PipelineError as e:
                logger.error(f"[{self.name}] Could not close run record: {e}")

        if self.notifier is not None:
            if status == ETLStatus.SUCCESS:
                await self.notifier.notify(
                    text=(
                        f"Fetched {self.stats['records_fetched']}, loaded {self.stats['records_loaded']}, "
                        f"skipped {self.stats['records_skipped']} in {self.stats['batches']} batches"
                    ),
                    title=f"{self.name} crawl finished",
                    severity="success"
                )
            else:
                await self.notifier.notify(
                    text=f"Stopped at cursor {self.state.cursor} after {self.stats['attempts']} attempts: {error}",
                    title=f"{self.name} crawl failed",
                    severity="error"
                )

    async def run(self) -> Dict[str, Any]:
        """
        Run the pipeline until the source is exhausted or the run fails.

        Returns:
            Dictionary with run statistics:
            - status: "success" or "failed"
            - records_fetched / records_skipped / records_rejected / records_loaded
            - batches: Committed batches
            - attempts: Loop attempts (1 + retries)
            - cursor: Cursor reached
            - error: Error message (failed runs only)
        """
        self.stats = {
            "source_name": self.name,
            "status": None,
            "records_fetched": 0,
            "records_skipped": 0,
            "records_rejected": 0,
            "records_loaded": 0,
            "batches": 0,
            "attempts": 0,
            "cursor": None,
        }
        self._started = False
        state = RunState()

        try:
            while True:
                self.stats["attempts"] += 1
                try:
                    state = await self._start_attempt(state)
                    await self._run_loop(state)
                    break

                except FatalError:
                    raise

                except Exception as e:
                    error = self._as_retryable(e)
                    state.retry_count += 1
                    if state.retry_count > self.max_retries:
                        logger.error(f"[{self.name}] Giving up after {self.max_retries} retries: {error}")
                        raise error

                    delay = self.backoff_delay(state.retry_count, error)
                    logger.warning(
                        f"[{self.name}] Attempt {self.stats['attempts']} failed in {state.phase.value}, "
                        f"retry {state.retry_count}/{self.max_retries} in {delay:.1f}s: {error}"
                    )
                    if self._started:
                        try:
                            await self.checkpoints.mark_retry(state, error)
                        except PipelineError as marker_error:
                            logger.error(f"[{self.name}] Could not persist retry marker: {marker_error}")
                    await self.sleep(delay)

        except PipelineError as e:
            self._enter(self.state, PipelineState.FAILED)
            logger.error(
                f"[{self.name}] Pipeline failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            self.stats["status"] = "failed"
            self.stats["error"] = str(e)
            self.stats["cursor"] = self.state.cursor
            await self._finish(ETLStatus.FAILED, e)
            return self.stats

        except asyncio.CancelledError:
            logger.warning(f"[{self.name}] Run cancelled at cursor={self.state.cursor}")
            raise

        self._enter(state, PipelineState.DONE)
        self.stats["status"] = "success"
        self.stats["cursor"] = state.cursor
        await self._finish(ETLStatus.SUCCESS)

        logger.info(
            f"[{self.name}] Run completed - Fetched: {self.stats['records_fetched']}, "
            f"Loaded: {self.stats['records_loaded']}, Skipped: {self.stats['records_skipped']}, "
            f"Batches: {self.stats['batches']}"
        )
        return self.stats
