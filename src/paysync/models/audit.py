"""Append-only audit log model."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Index
from sqlmodel import Field, SQLModel

from paysync.models.base import new_id, utcnow


class AuditEvent(SQLModel, table=True):
    """Never updated or deleted. Written in the same commit as the change it records."""

    __table_args__ = (Index("ix_auditevent_entity", "entity_type", "entity_id"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    event_type: str  # "integration.connected", "sync.completed", ...
    actor_id: Optional[str] = None
    entity_type: str  # "connection", "sync_job"
    entity_id: str
    action: str  # "create", "update"
    metadata_json: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
