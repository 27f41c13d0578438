"""
SyncEngine: imports provider-owned payroll records for one Connection.

Job state machine (terminal states are final; a retry is a new job):

    pending ──► processing ──► completed
                    │
                    └────────► failed

Flow for one job (run_job):
  0. Claim the job: pending → processing. Any other state is a no-op.
  1. Decrypt the connection's credential. Failure → job failed
     ("credential error"), connection → error.
  2. Fetch the full directory and the pay-run listing. Any failure here fails
     the whole job; only an auth rejection touches the connection status.
  3. For every directory individual and every pay run, independently and
     under a bounded worker pool: fetch → normalize → upsert by natural key
     (connection_id, provider_record_id). A failed record increments
     records_failed, leaves a diagnostic, and the batch moves on.
  4. completed if nothing failed or anything succeeded; failed only when
     every record failed. completed stamps the connection's last_sync_at.
  5. The terminal transition and its sync.completed / sync.failed audit
     event are written in one commit.

Every status change is a compare-and-set on the job's current status. A job
that start_sync abandoned while it was still running is failed already; its
late record writes, counter bumps and terminal transition all match no row
and are dropped.

Idempotency: upserts are single INSERT ... ON CONFLICT DO UPDATE statements
on the natural key, so re-running a job over unchanged provider data leaves
row counts unchanged, and two writers on one record cannot tear it.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, col, select

from paysync.errors import ConnectionNotActive, ConnectionNotFound, JobNotFound, SyncAlreadyRunning
from paysync.models.base import new_id, utcnow
from paysync.models.connection import Connection, ConnectionStatus, OwnerRef
from paysync.models.payroll import Employee, PayRun, PayStatement
from paysync.models.sync import (
    FINCH_PAYROLL_SYNC,
    IN_FLIGHT_STATUSES,
    SyncJob,
    SyncJobStatus,
)
from paysync.providers.base import (
    AuthError,
    DirectoryEntry,
    NormalizationError,
    ProviderClient,
    ProviderError,
    ProviderRecord,
)
from paysync.services.audit import SYNC_COMPLETED, SYNC_FAILED, SYNC_STARTED, AuditSink
from paysync.services.connection_store import ConnectionStore
from paysync.vault import CredentialVault, CryptoError, DecryptionError

logger = logging.getLogger(__name__)

ENTITY_TYPE = "sync_job"
NATURAL_KEY = ("connection_id", "provider_record_id")
INSERT_ONLY_COLUMNS = ("id", "created_at", "connection_id", "provider_record_id")

CREDENTIAL_ERROR = "credential error"
CREDENTIAL_REJECTED = "credential rejected by provider"

_DIALECT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


@dataclass
class _JobContext:
    """In-memory state of one running job. Never persisted as a whole."""

    job_id: str
    connection_id: str
    processed: int = 0
    failed: int = 0
    diagnostics: List[Dict[str, str]] = field(default_factory=list)
    auth_failure: Optional[AuthError] = None
    superseded: bool = False  # job left `processing` under us (e.g. abandoned)


class SyncEngine:
    """Creates sync jobs and drives them to a terminal state."""

    def __init__(
        self,
        engine,
        vault: CredentialVault,
        store: ConnectionStore,
        client_factory: Callable[[str], ProviderClient],
        *,
        max_concurrency: int = 5,
        lookback_days: int = 365,
        stale_after_seconds: int = 6 * 60 * 60,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            vault: CredentialVault used to open the connection's credential.
            store: ConnectionStore, for error transitions.
            client_factory: provider tag → ProviderClient (AsyncMock in tests).
            max_concurrency: per-job bound on in-flight provider record fetches.
            lookback_days: pay-run window ending today.
            stale_after_seconds: in-flight jobs older than this are abandoned
                and superseded by start_sync instead of blocking it.
        """
        self.engine = engine
        self.vault = vault
        self.store = store
        self.client_factory = client_factory
        self.max_concurrency = max(1, max_concurrency)
        self.lookback_days = lookback_days
        self.stale_after_seconds = stale_after_seconds
        self.audit = audit or store.audit
        self.clock = clock

    # ─── Job creation and reads ───────────────────────────────────────────────

    def start_sync(self, connection_id: str, owner: Optional[OwnerRef] = None) -> SyncJob:
        """
        Create a pending job for a connection. Does not run it.

        Raises:
            ConnectionNotFound: absent or not visible to `owner`.
            ConnectionNotActive: connection is revoked or in error.
            SyncAlreadyRunning: another job for the connection is in flight.
        """
        now = self.clock()
        with Session(self.engine) as s:
            connection = s.get(Connection, connection_id)
            if connection is None or (owner is not None and not owner.owns(connection)):
                raise ConnectionNotFound(f"Connection {connection_id} not found")
            if connection.status != ConnectionStatus.ACTIVE.value:
                raise ConnectionNotActive(connection_id, connection.status)

            for running in self._in_flight(s, connection_id):
                since = running.started_at or running.created_at
                if (now - since).total_seconds() < self.stale_after_seconds:
                    raise SyncAlreadyRunning(connection_id, running.id)
                logger.warning("Superseding abandoned sync job %s (in flight since %s)", running.id, since)
                self._apply_terminal(
                    s, running.id, SyncJobStatus.FAILED, now,
                    expected=IN_FLIGHT_STATUSES,
                    error_message="abandoned",
                )

            job = SyncJob(
                connection_id=connection_id,
                job_type=FINCH_PAYROLL_SYNC,
                status=SyncJobStatus.PENDING.value,
                created_at=now,
            )
            s.add(job)
            self.audit.record(
                s,
                event_type=SYNC_STARTED,
                actor_id=owner.actor_id if owner else None,
                entity_type=ENTITY_TYPE,
                entity_id=job.id,
                action="create",
                metadata={"connectionId": connection_id},
            )
            try:
                s.commit()
            except IntegrityError:
                # Another process created an in-flight job between our check and
                # insert; the partial unique index on syncjob rejected ours.
                s.rollback()
                running_id = s.exec(
                    select(SyncJob.id).where(
                        SyncJob.connection_id == connection_id,
                        col(SyncJob.status).in_(IN_FLIGHT_STATUSES),
                    )
                ).first()
                raise SyncAlreadyRunning(connection_id, running_id)
            s.refresh(job)

        logger.info("Created sync job %s for connection %s", job.id, connection_id)
        return job

    @staticmethod
    def _in_flight(session: Session, connection_id: str) -> List[SyncJob]:
        return list(session.exec(
            select(SyncJob).where(
                SyncJob.connection_id == connection_id,
                col(SyncJob.status).in_(IN_FLIGHT_STATUSES),
            )
        ).all())

    def get_job(self, job_id: str, owner: Optional[OwnerRef] = None) -> SyncJob:
        """
        Raises:
            JobNotFound: absent, or its connection is not visible to `owner`.
        """
        with Session(self.engine) as s:
            job = s.get(SyncJob, job_id)
            if job is not None and owner is not None:
                connection = s.get(Connection, job.connection_id)
                if connection is None or not owner.owns(connection):
                    job = None
        if job is None:
            raise JobNotFound(f"Sync job {job_id} not found")
        return job

    def list_jobs(self, connection_id: str, limit: int = 20) -> List[SyncJob]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncJob)
                .where(SyncJob.connection_id == connection_id)
                .order_by(col(SyncJob.created_at).desc())
                .limit(limit)
            ).all())

    def fail_unfinished(self, job_id: str, reason: str) -> Optional[SyncJob]:
        """Force a non-terminal job to failed. Terminal jobs are left untouched."""
        now = self.clock()
        with Session(self.engine) as s:
            job = s.get(SyncJob, job_id)
            if job is None or job.is_terminal:
                return job
            self._apply_terminal(
                s, job_id, SyncJobStatus.FAILED, now,
                expected=IN_FLIGHT_STATUSES,
                error_message=reason,
            )
            s.commit()
        return self.get_job(job_id)

    # ─── Job execution ────────────────────────────────────────────────────────

    async def run_job(self, job_id: str) -> SyncJob:
        """
        Run a pending job to completion or failure.

        Per-record problems never escape as exceptions; they are reflected in
        the job's counters and diagnostics.

        Returns:
            The job row in its final state (or its current state if the job
            was not pending).
        """
        job = self._claim(job_id)
        if job is None:
            return self.get_job(job_id)
        ctx = _JobContext(job_id=job.id, connection_id=job.connection_id)

        with Session(self.engine) as s:
            connection = s.get(Connection, job.connection_id)
        if connection is None or connection.status != ConnectionStatus.ACTIVE.value:
            return self._finish(ctx, SyncJobStatus.FAILED, "connection not active")

        # 1. Credential, held in memory for this job only
        try:
            access_token = self._open_credential(connection)
        except CryptoError as exc:
            logger.error("Sync job %s: cannot open credential of connection %s: %s", job_id, connection.id, exc)
            self.store.mark_error(connection.id, CREDENTIAL_ERROR)
            return self._finish(ctx, SyncJobStatus.FAILED, CREDENTIAL_ERROR)

        client = self.client_factory(connection.provider)

        # 2. Directory and pay-run listing, all or nothing
        today = self.clock().date()
        try:
            directory = await client.fetch_directory(access_token)
            payments = await client.fetch_payments(
                access_token, today - timedelta(days=self.lookback_days), today
            )
        except AuthError:
            self.store.mark_error(connection.id, CREDENTIAL_REJECTED)
            return self._finish(ctx, SyncJobStatus.FAILED, CREDENTIAL_REJECTED)
        except (ProviderError, NormalizationError) as exc:
            logger.error("Sync job %s: directory fetch failed: %s", job_id, exc)
            return self._finish(ctx, SyncJobStatus.FAILED, f"directory fetch failed: {exc}")

        logger.info(
            "Sync job %s: %d individuals, %d pay runs to import",
            job_id, len(directory), len(payments),
        )

        # 3. Independent per-record work
        await self._run_records(ctx, client, access_token, directory, payments)

        if ctx.superseded:
            logger.warning("Sync job %s left processing while running; its results were discarded", job_id)
            return self.get_job(job_id)

        if ctx.auth_failure is not None:
            self.store.mark_error(connection.id, CREDENTIAL_REJECTED)
            return self._finish(ctx, SyncJobStatus.FAILED, CREDENTIAL_REJECTED)

        # 4. Partial success is success; the counters report the shortfall
        if ctx.failed == 0 or ctx.processed > 0:
            return self._finish(ctx, SyncJobStatus.COMPLETED)
        return self._finish(ctx, SyncJobStatus.FAILED, f"all {ctx.failed} records failed")

    async def _run_records(
        self,
        ctx: _JobContext,
        client: ProviderClient,
        access_token: str,
        directory: List[DirectoryEntry],
        payments: List[ProviderRecord],
    ) -> None:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def guarded(work, item):
            async with semaphore:
                # Stop calling the provider once it rejected the credential or
                # the job was failed under us
                if ctx.auth_failure is not None or ctx.superseded:
                    return
                await work(ctx, client, access_token, item)

        await asyncio.gather(
            *(guarded(self._sync_employee, entry) for entry in directory),
            *(guarded(self._sync_pay_run, payment) for payment in payments),
        )

    async def _sync_employee(
        self, ctx: _JobContext, client: ProviderClient, access_token: str, entry: DirectoryEntry
    ) -> None:
        record_id = entry.provider_record_id
        try:
            record = await client.fetch_individual(access_token, record_id)
            fields = client.normalize_individual(record, entry)
            ssn = fields.pop("ssn", None)
            fields["ssn_encrypted"] = self.vault.encrypt(ssn) if ssn else None
            with Session(self.engine) as s:
                self._upsert(s, Employee, ctx, fields)
                if not self._bump_counter(s, ctx.job_id, "records_processed"):
                    s.rollback()
                    ctx.superseded = True
                    return
                s.commit()
            ctx.processed += 1
        except AuthError as exc:
            ctx.auth_failure = ctx.auth_failure or exc
            self._record_failure(ctx, "employee", record_id, exc)
        except Exception as exc:  # per-record boundary: counted, logged, batch continues
            self._record_failure(ctx, "employee", record_id, exc)

    async def _sync_pay_run(
        self, ctx: _JobContext, client: ProviderClient, access_token: str, payment: ProviderRecord
    ) -> None:
        """One pay run record = the pay run row plus all of its pay statements."""
        record_id = payment.provider_record_id
        try:
            fields = client.normalize_payment(payment)
            payment_id = fields["provider_record_id"]
            statements = await client.fetch_pay_statements(access_token, payment_id)
            statement_fields = [client.normalize_pay_statement(payment_id, st) for st in statements]
            with Session(self.engine) as s:
                self._upsert(s, PayRun, ctx, fields)
                for sf in statement_fields:
                    self._upsert(s, PayStatement, ctx, sf)
                if not self._bump_counter(s, ctx.job_id, "records_processed"):
                    s.rollback()
                    ctx.superseded = True
                    return
                s.commit()
            ctx.processed += 1
        except AuthError as exc:
            ctx.auth_failure = ctx.auth_failure or exc
            self._record_failure(ctx, "pay_run", record_id, exc)
        except Exception as exc:  # per-record boundary: counted, logged, batch continues
            self._record_failure(ctx, "pay_run", record_id, exc)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _open_credential(self, connection: Connection) -> str:
        if not connection.access_token_encrypted:
            raise DecryptionError("no credential stored")
        token = self.vault.decrypt(connection.access_token_encrypted)
        if not token.strip():
            raise DecryptionError("empty credential")
        return token

    def _claim(self, job_id: str) -> Optional[SyncJob]:
        """pending → processing. Returns None if the job was not pending."""
        with Session(self.engine) as s:
            claimed = s.connection().execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.PENDING.value)
                .values(status=SyncJobStatus.PROCESSING.value, started_at=self.clock())
            ).rowcount
            s.commit()
        job = self.get_job(job_id)
        if not claimed:
            logger.warning("Sync job %s is %s, not pending; not running it", job_id, job.status)
            return None
        return job

    def _upsert(self, session: Session, model, ctx: _JobContext, fields: Dict[str, Any]) -> None:
        """Insert or overwrite one synced entity by its natural key, atomically."""
        now = self.clock()
        values = dict(fields)
        values.update(
            connection_id=ctx.connection_id,
            last_seen_job_id=ctx.job_id,
            last_synced_at=now,
            updated_at=now,
        )
        table = model.__table__
        insert = _DIALECT_INSERTS.get(self.engine.dialect.name)
        if insert is None:
            self._upsert_by_select(session, model, values)
            return

        stmt = insert(table).values(id=new_id(), created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(NATURAL_KEY),
            set_={k: v for k, v in values.items() if k not in INSERT_ONLY_COLUMNS},
        )
        session.connection().execute(stmt)

    @staticmethod
    def _upsert_by_select(session: Session, model, values: Dict[str, Any]) -> None:
        """Portable fallback for dialects without ON CONFLICT."""
        existing = session.exec(
            select(model).where(
                model.connection_id == values["connection_id"],
                model.provider_record_id == values["provider_record_id"],
            ).with_for_update()
        ).first()
        if existing:
            for k, v in values.items():
                setattr(existing, k, v)
            session.add(existing)
        else:
            session.add(model(**values))

    @staticmethod
    def _bump_counter(session: Session, job_id: str, column: str) -> bool:
        """Increment a counter of a processing job. False if the job left processing."""
        counter = getattr(SyncJob, column)
        result = session.connection().execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.PROCESSING.value)
            .values({column: counter + 1})
        )
        return result.rowcount > 0

    def _record_failure(self, ctx: _JobContext, record_type: str, record_id: str, exc: Exception) -> None:
        reason = f"{type(exc).__name__}: {exc}"
        ctx.failed += 1
        ctx.diagnostics.append({
            "record_type": record_type,
            "provider_record_id": record_id,
            "reason": reason,
        })
        logger.warning("Sync job %s: %s %s failed: %s", ctx.job_id, record_type, record_id, reason)
        with Session(self.engine) as s:
            if self._bump_counter(s, ctx.job_id, "records_failed"):
                s.commit()
            else:
                ctx.superseded = True

    def _finish(
        self, ctx: _JobContext, status: SyncJobStatus, error_message: Optional[str] = None
    ) -> SyncJob:
        now = self.clock()
        with Session(self.engine) as s:
            applied = self._apply_terminal(
                s, ctx.job_id, status, now,
                expected=(SyncJobStatus.PROCESSING.value,),
                error_message=error_message,
                diagnostics=ctx.diagnostics,
            )
            if applied and status == SyncJobStatus.COMPLETED:
                ConnectionStore.touch_last_sync(s, ctx.connection_id, now)
            s.commit()

        job = self.get_job(ctx.job_id)
        if not applied:
            logger.warning("Sync job %s was already %s; dropping its %s result", job.id, job.status, status.value)
            return job
        logger.info(
            "Sync job %s %s: %d processed, %d failed",
            job.id, job.status, job.records_processed, job.records_failed,
        )
        return job

    def _apply_terminal(
        self,
        session: Session,
        job_id: str,
        status: SyncJobStatus,
        now: datetime,
        *,
        expected,
        error_message: Optional[str] = None,
        diagnostics: Optional[List[Dict[str, str]]] = None,
    ) -> bool:
        """
        Move a job from one of the `expected` states to `status` and stage its
        audit event in `session` (caller commits).

        Returns False, writing nothing, when the job is no longer in an
        expected state.
        """
        values: Dict[str, Any] = {
            "status": status.value,
            "completed_at": now,
            "error_message": error_message if status == SyncJobStatus.FAILED else None,
        }
        if diagnostics is not None:
            values["diagnostics_json"] = json.dumps(diagnostics)
        result = session.connection().execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, col(SyncJob.status).in_(expected))
            .values(values)
        )
        if result.rowcount == 0:
            return False

        job = session.exec(
            select(SyncJob).where(SyncJob.id == job_id).execution_options(populate_existing=True)
        ).one()
        metadata = {
            "connectionId": job.connection_id,
            "recordsProcessed": job.records_processed,
            "recordsFailed": job.records_failed,
        }
        if job.error_message:
            metadata["errorMessage"] = job.error_message
        self.audit.record(
            session,
            event_type=SYNC_COMPLETED if status == SyncJobStatus.COMPLETED else SYNC_FAILED,
            entity_type=ENTITY_TYPE,
            entity_id=job.id,
            action="update",
            metadata=metadata,
        )
        return True
