"""Summaries returned across the inbound boundary (service and HTTP API)."""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from paysync.models.connection import Connection
from paysync.models.sync import SyncJob


class ConnectionSummary(BaseModel):
    id: str
    provider: str
    status: str
    provider_account_id: Optional[str]
    scopes: List[str]
    last_sync_at: Optional[datetime]
    created_at: datetime
    metadata: Dict[str, Any]

    @classmethod
    def from_connection(cls, connection: Connection) -> "ConnectionSummary":
        return cls(
            id=connection.id,
            provider=connection.provider,
            status=connection.status,
            provider_account_id=connection.provider_account_id,
            scopes=connection.scopes,
            last_sync_at=connection.last_sync_at,
            created_at=connection.created_at,
            metadata=json.loads(connection.metadata_json or "{}"),
        )


class SyncStarted(BaseModel):
    job_id: str
    status: str


class JobStatus(BaseModel):
    job_id: str
    connection_id: str
    status: str
    records_processed: int
    records_failed: int
    error_message: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    diagnostics: List[Dict[str, str]]

    @classmethod
    def from_job(cls, job: SyncJob) -> "JobStatus":
        return cls(
            job_id=job.id,
            connection_id=job.connection_id,
            status=job.status,
            records_processed=job.records_processed,
            records_failed=job.records_failed,
            error_message=job.error_message,
            started_at=job.started_at,
            completed_at=job.completed_at,
            diagnostics=json.loads(job.diagnostics_json or "[]"),
        )


class ConnectStarted(BaseModel):
    authorization_url: str
    state: str
