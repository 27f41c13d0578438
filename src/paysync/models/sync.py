"""Sync job model: one execution attempt of the import against one Connection."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel

from paysync.models.base import new_id, utcnow

FINCH_PAYROLL_SYNC = "finch_payroll_sync"


class SyncJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATUSES = (SyncJobStatus.PENDING.value, SyncJobStatus.PROCESSING.value)
TERMINAL_STATUSES = (SyncJobStatus.COMPLETED.value, SyncJobStatus.FAILED.value)

_IN_FLIGHT_PREDICATE = text("status IN ('pending', 'processing')")


class SyncJob(SQLModel, table=True):
    """Immutable once completed/failed; a retry is always a new row."""

    # At most one pending/processing job per connection, enforced by the database
    __table_args__ = (
        Index(
            "uq_syncjob_in_flight",
            "connection_id",
            unique=True,
            sqlite_where=_IN_FLIGHT_PREDICATE,
            postgresql_where=_IN_FLIGHT_PREDICATE,
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    connection_id: str = Field(foreign_key="connection.id", index=True)
    job_type: str = FINCH_PAYROLL_SYNC
    status: str = Field(default=SyncJobStatus.PENDING.value, index=True)

    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    records_processed: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None  # terminal failure only

    # JSON list of {"record_type", "provider_record_id", "reason"}
    diagnostics_json: str = "[]"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
