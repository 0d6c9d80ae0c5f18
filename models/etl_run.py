from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Index, Uuid
from datetime import datetime
import uuid
from models.base import Base, BigIntPK, JSONType, SourceType, ETLStatus


class ETLRun(Base):
    """
    One row per driver run, opened before the first fetch and closed with
    the terminal status.

    ``checkpoint_before`` and ``checkpoint_after`` bracket the cursor range
    the run covered. Counters reflect committed batches only; ``attempts``
    counts fetch-write loops including retries.
    """
    __tablename__ = "etl_runs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(Uuid, default=uuid.uuid4, unique=True, nullable=False, index=True)
    source_type = Column(Enum(SourceType), nullable=False, index=True)
    source_name = Column(String(100), nullable=False, index=True)
    status = Column(Enum(ETLStatus), nullable=False, default=ETLStatus.PENDING, index=True)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    records_fetched = Column(Integer, default=0)
    records_rejected = Column(Integer, default=0)
    records_skipped = Column(Integer, default=0)
    records_loaded = Column(Integer, default=0)
    batches = Column(Integer, default=0)
    attempts = Column(Integer, default=0)

    checkpoint_before = Column(String(255), nullable=True)
    checkpoint_after = Column(String(255), nullable=True)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)  # PipelineError.to_dict()
    config_snapshot = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_etl_run_source_started", "source_name", "started_at"),
    )
