"""
Exception hierarchy for the crawl-ingest pipeline.

The pipeline driver only cares about which side of the retry line an error
falls on:

    RetryableError  discard the batch, back off, refetch from the last cursor
    FatalError      record the failure and stop the run
    RecordSkipped   drop one record, keep the batch

Hierarchy:
    PipelineError
    ├── SourceError
    │   └── PageExtractionError
    ├── RecordSkipped
    ├── WriteError
    │   └── UpsertError
    ├── RetryableError
    │   ├── CheckpointError
    │   ├── NetworkError, RateLimitError, NavigationError
    │   └── DatabaseConnectionError, TransactionError
    └── FatalError
        ├── AuthenticationError, ResourceNotFoundError
        └── SchemaValidationError, BotChallengeError
"""

from typing import Optional, Dict, Any
from datetime import datetime


class PipelineError(Exception):
    """
    Root of every error the pipeline raises on purpose.

    ``context`` carries whatever identifies the failing unit of work
    (source name, cursor, url, sku) and is persisted with the run record
    through ``to_dict``.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()
        if original_exception is not None:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        text = f"{type(self).__name__}: {self.message}"
        if self.context:
            text += " | " + ", ".join(f"{key}={value}" for key, value in self.context.items())
        if self.original_exception is not None:
            cause = self.original_exception
            text += f" | caused by {type(cause).__name__}: {cause}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form stored in ``etl_runs.error_details``."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": repr(self.original_exception) if self.original_exception else None,
        }


# ----------------------------------------------------------------------------
# Stage families
# ----------------------------------------------------------------------------

class SourceError(PipelineError):
    """A source adapter could not produce a batch."""


class PageExtractionError(SourceError):
    """A rendered page is missing an element the adapter waits for (context: url, selector)."""


class RecordSkipped(PipelineError):
    """
    One record cannot be turned into an entity.

    The transformer raises it, the driver logs ``reason`` and counts the
    record as skipped; the rest of the batch is still written.
    """

    def __init__(self, reason: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(reason, context)
        self.reason = reason


class WriteError(PipelineError):
    """The batch writer could not persist an entity."""


class UpsertError(WriteError):
    """No upsert exists for the entity handed to the writer."""


# ----------------------------------------------------------------------------
# Retry classification
# ----------------------------------------------------------------------------

class RetryableError(PipelineError):
    """
    Transient failure. The driver sleeps and restarts the fetch-write loop
    from the persisted cursor.

    ``retry_after`` is a lower bound on that sleep, in seconds, when the
    remote side asked for one.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class FatalError(PipelineError):
    """Permanent failure. The run is marked failed without another attempt."""


class CheckpointError(RetryableError):
    """Reading or saving a cursor failed (context: source_name, cursor, operation)."""


class NetworkError(RetryableError, SourceError):
    """Transport failure, timeout or 5xx from a remote source."""


class RateLimitError(RetryableError, SourceError):
    """HTTP 429."""


class NavigationError(RetryableError, PageExtractionError):
    """Browser navigation or a selector wait timed out."""


class DatabaseConnectionError(RetryableError, WriteError):
    """The store could not be reached."""


class TransactionError(RetryableError, WriteError):
    """A batch transaction failed and was rolled back as a whole."""


class AuthenticationError(FatalError, SourceError):
    """Credentials rejected (HTTP 401/403) or the browser session is signed out."""


class ResourceNotFoundError(FatalError, SourceError):
    """HTTP 404 on an endpoint the adapter was configured with."""


class SchemaValidationError(FatalError, SourceError):
    """The source answered with a payload shape the adapter does not understand."""


class BotChallengeError(FatalError, PageExtractionError):
    """A bot-verification challenge survived the bounded bypass attempts."""
