from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, BigInteger, UniqueConstraint
from datetime import datetime
from models.base import Base, SourceType, ETLStatus


class ETLCheckpoint(Base):
    """
    Resumable cursor of one named source.

    ``checkpoint_value`` is the cursor of the next batch to fetch, stored as
    text whatever its kind (``checkpoint_type``: page number, page index or
    row id). It only moves after the batch before it committed.

    A run that stops while backing off leaves ``status=RETRYING`` and a
    positive ``retry_count``; the next run resumes from the same cursor.
    """
    __tablename__ = "etl_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_type = Column(Enum(SourceType), nullable=False)
    source_name = Column(String(100), nullable=False)

    checkpoint_type = Column(String(50), nullable=False)
    checkpoint_value = Column(String(255), nullable=True)
    status = Column(Enum(ETLStatus), nullable=False, default=ETLStatus.PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # Per-source counters, surfaced by GET /health
    total_runs = Column(Integer, default=0)
    total_records_processed = Column(BigInteger, default=0)
    last_records_processed = Column(Integer, default=0)
    last_run_at = Column(DateTime, nullable=True, index=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("source_type", "source_name", name="uq_checkpoint_source"),
    )
