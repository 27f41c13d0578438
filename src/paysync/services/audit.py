"""
Audit sink: append-only event log.

record() only adds the event to the caller's session; the caller commits it
together with the state change it describes, so an audited change and its
event land atomically or not at all.
"""
import json
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from paysync.models.audit import AuditEvent

INTEGRATION_CONNECTED = "integration.connected"
INTEGRATION_ERROR = "integration.error"
INTEGRATION_DISCONNECTED = "integration.disconnected"
SYNC_STARTED = "sync.started"
SYNC_COMPLETED = "sync.completed"
SYNC_FAILED = "sync.failed"


class AuditSink:
    def record(
        self,
        session: Session,
        *,
        event_type: str,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            metadata_json=json.dumps(metadata, default=str) if metadata is not None else None,
        )
        session.add(event)
        return event

    def events_for(self, session: Session, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Operational read: every event about one entity, oldest first."""
        return list(session.exec(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.created_at)
        ).all())
