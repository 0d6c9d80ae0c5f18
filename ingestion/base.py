"""
Abstract base class for source adapters
"""

from abc import ABC, abstractmethod
from typing import Optional
from models.base import SourceType
from ingestion.state import FetchResult, RunState
import logging

logger = logging.getLogger(__name__)


class SourceAdapter(ABC):
    """
    Abstract base class for all sources.

    A source turns a cursor into one batch of raw records. It never creates
    or mutates entities; everything it returns is transient.

    Attributes:
        source_type: Kind of source (api, browser, database)
        source_name: Name the checkpoint and the records are keyed by
        checkpoint_type: What the cursor counts ("page", "page_index", "id")
        pacing_seconds: Delay the driver observes between fetches
    """

    checkpoint_type: str = "page"
    initial_cursor: int = 0

    def __init__(
        self,
        source_type: SourceType,
        source_name: str,
        pacing_seconds: float = 0.0
    ):
        self.source_type = source_type
        self.source_name = source_name
        self.pacing_seconds = pacing_seconds

    @abstractmethod
    async def fetch(self, cursor: int) -> FetchResult:
        """
        Fetch the batch at cursor.

        Returns:
            FetchResult with the raw records, whether more batches follow,
            the cursor of the next batch and the reasons for any raw items
            rejected by their field contract

        Raises:
            RetryableError: transient failure, safe to refetch
            FatalError: the run cannot continue
        """
        pass

    async def prepare(self, state: RunState) -> None:
        """One-time setup before the first fetch of an attempt (login, browser launch)."""
        return None

    async def aclose(self) -> None:
        """Release network or browser resources."""
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def describe(self) -> Optional[dict]:
        """Configuration snapshot stored with the run record."""
        return {
            "source_type": self.source_type.value,
            "source_name": self.source_name,
            "checkpoint_type": self.checkpoint_type,
            "pacing_seconds": self.pacing_seconds,
        }
