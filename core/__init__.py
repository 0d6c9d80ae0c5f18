"""
Shared plumbing for every pipeline and the status API.

    config         settings read from the environment and .env
    database       async engine and session factory
    exceptions     retryable / fatal / skipped error classification
    logging        stdout logging setup
    notifications  webhook message on terminal run states

Pipelines never share a session: each store operation opens its own
``async with async_session_maker() as session, session.begin():`` block.
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    "Notifier",
    "PipelineError",
    "RetryableError",
    "FatalError",
    "RecordSkipped",
]
