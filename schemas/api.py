"""
Response models of the status API
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime
from models.base import SourceType, ETLStatus


class CheckpointInfo(BaseModel):
    """Cursor and last outcome of one source, read from etl_checkpoints"""
    source_type: SourceType
    source_name: str
    status: ETLStatus
    checkpoint_type: str
    checkpoint_value: Optional[str]
    retry_count: int = 0
    total_runs: int = 0
    total_records_processed: int = 0
    last_records_processed: int = 0
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class HealthCheckResponse(BaseModel):
    status: str = Field("healthy", description="healthy, degraded or unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    checkpoints: List[CheckpointInfo] = Field(default_factory=list)
    total_sources: int = 0
    successful_sources: int = 0
    failed_sources: int = 0

    @model_validator(mode="after")
    def derive_status(self):
        # Unhealthy when the store is down or every known source failed
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.failed_sources == 0:
            self.status = "healthy"
        elif self.failed_sources < self.total_sources:
            self.status = "degraded"
        else:
            self.status = "unhealthy"
        return self


class RunSummary(BaseModel):
    """One row of the run audit trail"""
    run_id: str
    source_type: SourceType
    source_name: str
    status: ETLStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_fetched: int = 0
    records_rejected: int = 0
    records_skipped: int = 0
    records_loaded: int = 0
    batches: int = 0
    attempts: int = 0
    checkpoint_before: Optional[str] = None
    checkpoint_after: Optional[str] = None
    error_message: Optional[str] = None

    @field_validator("run_id", mode="before")
    @classmethod
    def stringify_run_id(cls, value):
        return str(value)

    @field_validator(
        "records_fetched", "records_rejected", "records_skipped",
        "records_loaded", "batches", "attempts", mode="before"
    )
    @classmethod
    def null_counter_is_zero(cls, value):
        return value or 0

    class Config:
        from_attributes = True
        use_enum_values = True


class RunListResponse(BaseModel):
    runs: List[RunSummary]
    count: int
