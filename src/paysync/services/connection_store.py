"""
ConnectionStore: persists delegated-access grants to payroll providers.

Connection lifecycle:

    (code exchange) ──► active ──► error     provider rejected the credential
                          │
                          └──────► revoked   explicit disconnect

Tokens are encrypted with the injected CredentialVault before they touch the
database. Every state change is written together with its AuditEvent in a
single commit.
"""
import json
import logging
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, select

from paysync.errors import ConnectionNotFound, ProviderAuthError
from paysync.models.base import utcnow
from paysync.models.connection import Connection, ConnectionStatus, OwnerRef
from paysync.providers.base import AuthError, ProviderClient, ProviderError
from paysync.services.audit import (
    INTEGRATION_CONNECTED,
    INTEGRATION_DISCONNECTED,
    INTEGRATION_ERROR,
    AuditSink,
)
from paysync.vault import CredentialVault

logger = logging.getLogger(__name__)

ENTITY_TYPE = "connection"


class ConnectionStore:
    """Create, read and transition Connection rows."""

    def __init__(self, engine, vault: CredentialVault, audit: Optional[AuditSink] = None):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            vault: CredentialVault used for token envelopes.
            audit: AuditSink; a default one is created if omitted.
        """
        self.engine = engine
        self.vault = vault
        self.audit = audit or AuditSink()

    async def create_from_exchange(
        self,
        owner: OwnerRef,
        client: ProviderClient,
        auth_code: str,
        *,
        correlation_id: Optional[str] = None,
    ) -> Connection:
        """
        Exchange an OAuth code and persist the resulting Connection.

        Args:
            owner: Taxpayer or business granting access (exactly one).
            client: Provider client for the connection's provider.
            auth_code: Authorization code from the provider's redirect.
            correlation_id: Request id carried into metadata and the audit event.

        Returns:
            The new Connection in `active` status.

        Raises:
            ValidationError: if the owner reference is empty or ambiguous.
            ProviderAuthError: if the provider rejects the code.
        """
        owner.validate()
        try:
            grant = await client.exchange_code(auth_code)
        except AuthError as exc:
            raise ProviderAuthError(f"{client.provider} rejected the authorization code") from exc

        metadata = {"correlationId": correlation_id}
        try:
            company = await client.fetch_company(grant.access_token)
            metadata.update({"company_name": company.legal_name, "ein": company.ein})
        except ProviderError as exc:
            # Company details are display-only; the grant itself is valid
            logger.warning("Could not fetch company info for new %s connection: %s", client.provider, exc)

        connection = Connection(
            taxpayer_id=owner.taxpayer_id,
            business_id=owner.business_id,
            provider=client.provider,
            provider_account_id=grant.provider_account_id,
            access_token_encrypted=self.vault.encrypt(grant.access_token),
            refresh_token_encrypted=(
                self.vault.encrypt(grant.refresh_token) if grant.refresh_token else None
            ),
            token_expires_at=grant.expires_at,
            scopes_json=json.dumps(grant.scopes),
            status=ConnectionStatus.ACTIVE.value,
            metadata_json=json.dumps(metadata),
        )

        with Session(self.engine) as s:
            s.add(connection)
            self.audit.record(
                s,
                event_type=INTEGRATION_CONNECTED,
                actor_id=owner.actor_id,
                entity_type=ENTITY_TYPE,
                entity_id=connection.id,
                action="create",
                metadata={
                    "provider": client.provider,
                    "companyId": grant.provider_account_id,
                    "correlationId": correlation_id,
                },
            )
            s.commit()
            s.refresh(connection)

        logger.info("Created %s connection %s", client.provider, connection.id)
        return connection

    def get(self, connection_id: str, owner: Optional[OwnerRef] = None) -> Connection:
        """
        Fetch a connection, scoped to `owner` when given.

        Raises:
            ConnectionNotFound: if absent or not owned by `owner`.
        """
        with Session(self.engine) as s:
            connection = s.get(Connection, connection_id)
        if connection is None or (owner is not None and not owner.owns(connection)):
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        return connection

    def list_for_owner(self, owner: OwnerRef) -> List[Connection]:
        """All connections granted by `owner`, newest first."""
        owner.validate()
        query = select(Connection).order_by(Connection.created_at.desc())
        if owner.taxpayer_id:
            query = query.where(Connection.taxpayer_id == owner.taxpayer_id)
        else:
            query = query.where(Connection.business_id == owner.business_id)
        with Session(self.engine) as s:
            return list(s.exec(query).all())

    def mark_error(self, connection_id: str, reason: str) -> Connection:
        """
        Move a connection to `error`. No-op if it is already error or revoked.

        Raises:
            ConnectionNotFound: if the connection does not exist.
        """
        with Session(self.engine) as s:
            connection = s.get(Connection, connection_id)
            if connection is None:
                raise ConnectionNotFound(f"Connection {connection_id} not found")
            if connection.status in (ConnectionStatus.ERROR.value, ConnectionStatus.REVOKED.value):
                return connection

            connection.status = ConnectionStatus.ERROR.value
            connection.status_reason = reason
            connection.updated_at = utcnow()
            s.add(connection)
            self.audit.record(
                s,
                event_type=INTEGRATION_ERROR,
                entity_type=ENTITY_TYPE,
                entity_id=connection.id,
                action="update",
                metadata={"reason": reason},
            )
            s.commit()
            s.refresh(connection)

        logger.warning("Connection %s marked error: %s", connection_id, reason)
        return connection

    def revoke(self, connection_id: str, owner: Optional[OwnerRef] = None) -> Connection:
        """
        Disconnect: move a connection to `revoked`. Idempotent.

        The stored tokens are wiped; a revoked grant is never used again.

        Raises:
            ConnectionNotFound: if absent or not owned by `owner`.
        """
        with Session(self.engine) as s:
            connection = s.get(Connection, connection_id)
            if connection is None or (owner is not None and not owner.owns(connection)):
                raise ConnectionNotFound(f"Connection {connection_id} not found")
            if connection.status == ConnectionStatus.REVOKED.value:
                return connection

            connection.status = ConnectionStatus.REVOKED.value
            connection.status_reason = "disconnected"
            connection.access_token_encrypted = None
            connection.refresh_token_encrypted = None
            connection.updated_at = utcnow()
            s.add(connection)
            self.audit.record(
                s,
                event_type=INTEGRATION_DISCONNECTED,
                actor_id=owner.actor_id if owner else None,
                entity_type=ENTITY_TYPE,
                entity_id=connection.id,
                action="update",
            )
            s.commit()
            s.refresh(connection)

        logger.info("Connection %s revoked", connection_id)
        return connection

    @staticmethod
    def touch_last_sync(session: Session, connection_id: str, when: datetime) -> None:
        """Stamp last_sync_at inside the caller's unit of work."""
        connection = session.get(Connection, connection_id)
        if connection is not None:
            connection.last_sync_at = when
            connection.updated_at = when
            session.add(connection)
