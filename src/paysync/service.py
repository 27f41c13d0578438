"""
IntegrationService: the inbound boundary of paysync.

The HTTP layer (or any other caller holding a verified identity) talks to
the core only through this class:

    begin_connect      → authorization URL + opaque state
    complete_connect   → OAuth callback: decode state, exchange the code
    start_connection   → exchange a code for an explicit owner
    list_connections   → connections of one owner
    disconnect         → revoke a connection
    start_sync         → create a job, dispatch it, return its id at once
    get_job_status     → poll a job

The OAuth `state` parameter is a CredentialVault envelope around
{taxpayerId, businessId, timestamp, correlationId}; it cannot be forged or
altered without the key, which stands in for the CSRF check.
"""
import json
import logging
import time
import uuid
from typing import Callable, List, Optional, Tuple

from paysync.config import Settings
from paysync.errors import ValidationError
from paysync.models.connection import OwnerRef
from paysync.providers.base import ProviderClient
from paysync.providers.registry import get_provider_client
from paysync.scheduler.dispatcher import SyncDispatcher
from paysync.schemas import ConnectionSummary, ConnectStarted, JobStatus, SyncStarted
from paysync.services.audit import AuditSink
from paysync.services.connection_store import ConnectionStore
from paysync.services.sync_engine import SyncEngine
from paysync.vault import CredentialVault, CryptoError

logger = logging.getLogger(__name__)


class IntegrationService:
    def __init__(
        self,
        engine,
        vault: CredentialVault,
        settings: Settings,
        *,
        client_factory: Optional[Callable[[str], ProviderClient]] = None,
        dispatcher: Optional[SyncDispatcher] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.settings = settings
        self.vault = vault
        self.client_factory = client_factory or (lambda provider: get_provider_client(provider, settings))
        self.store = ConnectionStore(engine, vault, audit)
        self.sync_engine = SyncEngine(
            engine,
            vault,
            self.store,
            self.client_factory,
            max_concurrency=settings.sync_max_concurrency,
            lookback_days=settings.sync_lookback_days,
            stale_after_seconds=settings.sync_stale_after_seconds,
        )
        self.dispatcher = dispatcher or SyncDispatcher(self.sync_engine)

    # ─── Connections ──────────────────────────────────────────────────────────

    def begin_connect(
        self, owner: OwnerRef, provider: str, correlation_id: Optional[str] = None
    ) -> ConnectStarted:
        owner.validate()
        client = self.client_factory(provider)
        state = self.encode_state(owner, correlation_id or str(uuid.uuid4()))
        return ConnectStarted(authorization_url=client.authorization_url(state), state=state)

    def encode_state(self, owner: OwnerRef, correlation_id: str) -> str:
        payload = {
            "taxpayerId": owner.taxpayer_id,
            "businessId": owner.business_id,
            "timestamp": int(time.time()),
            "correlationId": correlation_id,
        }
        return self.vault.encrypt(json.dumps(payload))

    def decode_state(self, state: str) -> Tuple[OwnerRef, Optional[str]]:
        """
        Raises:
            ValidationError: state is forged, corrupt or too old.
        """
        try:
            payload = json.loads(self.vault.decrypt(state))
        except (CryptoError, ValueError) as exc:
            raise ValidationError("Invalid OAuth state") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Invalid OAuth state")

        max_age = self.settings.oauth_state_max_age_seconds
        if max_age is not None and time.time() - payload.get("timestamp", 0) > max_age:
            raise ValidationError("OAuth state has expired")

        owner = OwnerRef(taxpayer_id=payload.get("taxpayerId"), business_id=payload.get("businessId"))
        return owner.validate(), payload.get("correlationId")

    async def start_connection(
        self,
        owner: OwnerRef,
        provider: str,
        authorization_code: str,
        correlation_id: Optional[str] = None,
    ) -> ConnectionSummary:
        owner.validate()
        if not authorization_code:
            raise ValidationError("authorization code required")
        client = self.client_factory(provider)
        connection = await self.store.create_from_exchange(
            owner, client, authorization_code, correlation_id=correlation_id
        )
        return ConnectionSummary.from_connection(connection)

    async def complete_connect(self, provider: str, state: str, code: str) -> ConnectionSummary:
        owner, correlation_id = self.decode_state(state)
        return await self.start_connection(owner, provider, code, correlation_id)

    def list_connections(self, owner: OwnerRef) -> List[ConnectionSummary]:
        return [ConnectionSummary.from_connection(c) for c in self.store.list_for_owner(owner)]

    def disconnect(self, connection_id: str, owner: OwnerRef) -> ConnectionSummary:
        return ConnectionSummary.from_connection(self.store.revoke(connection_id, owner))

    # ─── Sync ─────────────────────────────────────────────────────────────────

    def start_sync(self, connection_id: str, owner: Optional[OwnerRef] = None) -> SyncStarted:
        job = self.sync_engine.start_sync(connection_id, owner)
        self.dispatcher.submit(job.id)
        return SyncStarted(job_id=job.id, status=job.status)

    def get_job_status(self, job_id: str, owner: Optional[OwnerRef] = None) -> JobStatus:
        return JobStatus.from_job(self.sync_engine.get_job(job_id, owner))

    def list_jobs(self, connection_id: str, owner: Optional[OwnerRef] = None) -> List[JobStatus]:
        self.store.get(connection_id, owner)
        return [JobStatus.from_job(j) for j in self.sync_engine.list_jobs(connection_id)]


def build_service(engine=None, settings: Optional[Settings] = None) -> IntegrationService:
    """
    Wire the production service from settings.

    Raises:
        CryptoError: if ENCRYPTION_KEY is absent or malformed.
    """
    from paysync.config import get_settings
    from paysync.db.engine import get_engine

    settings = settings or get_settings()
    vault = CredentialVault(settings.encryption_key)
    return IntegrationService(engine or get_engine(), vault, settings)
