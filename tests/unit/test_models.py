"""Tests for paysync models: defaults, owner rules, natural-key uniqueness."""
import json
from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from paysync.errors import ValidationError
from paysync.models.audit import AuditEvent
from paysync.models.connection import Connection, ConnectionStatus, OwnerRef, Provider
from paysync.models.payroll import Employee, PayRun, PayStatement
from paysync.models.sync import (
    FINCH_PAYROLL_SYNC,
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    SyncJob,
    SyncJobStatus,
)


class TestOwnerRef:
    def test_taxpayer_only(self):
        owner = OwnerRef(taxpayer_id="tp-1").validate()
        assert owner.actor_id == "tp-1"

    def test_business_only(self):
        assert OwnerRef(business_id="biz-1").validate().actor_id == "biz-1"

    def test_neither_rejected(self):
        with pytest.raises(ValidationError):
            OwnerRef().validate()

    def test_empty_strings_rejected(self):
        with pytest.raises(ValidationError):
            OwnerRef(taxpayer_id="", business_id="").validate()

    def test_both_rejected(self):
        with pytest.raises(ValidationError):
            OwnerRef(taxpayer_id="tp-1", business_id="biz-1").validate()

    def test_owns_taxpayer_connection(self):
        connection = Connection(taxpayer_id="tp-1", provider="finch")
        assert OwnerRef(taxpayer_id="tp-1").owns(connection)
        assert not OwnerRef(taxpayer_id="tp-2").owns(connection)
        assert not OwnerRef(business_id="tp-1").owns(connection)

    def test_owns_business_connection(self):
        connection = Connection(business_id="biz-1", provider="finch")
        assert OwnerRef(business_id="biz-1").owns(connection)
        assert not OwnerRef(taxpayer_id="biz-1").owns(connection)


class TestConnection:
    def test_defaults(self, test_session: Session):
        connection = Connection(taxpayer_id="tp-1", provider=Provider.FINCH.value)
        test_session.add(connection)
        test_session.commit()
        test_session.refresh(connection)

        assert connection.id
        assert connection.status == ConnectionStatus.ACTIVE.value
        assert connection.last_sync_at is None
        assert connection.scopes == []
        assert connection.created_at is not None

    def test_scopes_parsed(self):
        connection = Connection(provider="finch", scopes_json=json.dumps(["directory", "payment"]))
        assert connection.scopes == ["directory", "payment"]


class TestSyncJob:
    def test_defaults(self, test_session: Session, seeded_connection):
        job = SyncJob(connection_id=seeded_connection.id)
        test_session.add(job)
        test_session.commit()
        test_session.refresh(job)

        assert job.status == SyncJobStatus.PENDING.value
        assert job.job_type == FINCH_PAYROLL_SYNC
        assert job.records_processed == 0
        assert job.records_failed == 0
        assert job.error_message is None
        assert json.loads(job.diagnostics_json) == []
        assert not job.is_terminal

    @pytest.mark.parametrize("status", [SyncJobStatus.COMPLETED, SyncJobStatus.FAILED])
    def test_terminal(self, status):
        assert SyncJob(connection_id="c", status=status.value).is_terminal

    def test_status_groups_disjoint(self):
        assert not set(IN_FLIGHT_STATUSES) & set(TERMINAL_STATUSES)
        assert len(IN_FLIGHT_STATUSES) + len(TERMINAL_STATUSES) == len(SyncJobStatus)

    def test_second_in_flight_job_rejected(self, engine, seeded_connection):
        with Session(engine) as s:
            s.add(SyncJob(connection_id=seeded_connection.id, status=SyncJobStatus.PROCESSING.value))
            s.commit()
        with Session(engine) as s:
            s.add(SyncJob(connection_id=seeded_connection.id, status=SyncJobStatus.PENDING.value))
            with pytest.raises(IntegrityError):
                s.commit()

    def test_terminal_jobs_do_not_block_new_ones(self, engine, seeded_connection):
        with Session(engine) as s:
            for status in (SyncJobStatus.COMPLETED, SyncJobStatus.FAILED, SyncJobStatus.FAILED):
                s.add(SyncJob(connection_id=seeded_connection.id, status=status.value))
            s.add(SyncJob(connection_id=seeded_connection.id, status=SyncJobStatus.PENDING.value))
            s.commit()
            assert len(s.exec(select(SyncJob)).all()) == 4

    def test_timestamps_read_back_naive(self, engine, seeded_connection):
        started = datetime(2024, 3, 1, 12, 30)
        with Session(engine) as s:
            job = SyncJob(connection_id=seeded_connection.id, started_at=started)
            s.add(job)
            s.commit()
            job_id = job.id
        with Session(engine) as s:
            job = s.get(SyncJob, job_id)
            assert job.started_at == started
            assert job.started_at.tzinfo is None
            assert job.created_at.tzinfo is None


class TestNaturalKeys:
    @pytest.mark.parametrize("model,extra", [
        (Employee, {}),
        (PayRun, {}),
        (PayStatement, {"provider_payment_id": "pay-1", "provider_individual_id": "ind-1"}),
    ])
    def test_duplicate_natural_key_rejected(self, engine, seeded_connection, model, extra):
        with Session(engine) as s:
            s.add(model(connection_id=seeded_connection.id, provider_record_id="rec-1", **extra))
            s.commit()
        with Session(engine) as s:
            s.add(model(connection_id=seeded_connection.id, provider_record_id="rec-1", **extra))
            with pytest.raises(IntegrityError):
                s.commit()

    def test_same_record_id_on_other_connection_allowed(self, engine, seeded_connection):
        with Session(engine) as s:
            other = Connection(business_id="biz-9", provider="finch")
            s.add(other)
            s.commit()
            s.add(Employee(connection_id=seeded_connection.id, provider_record_id="ind-1"))
            s.add(Employee(connection_id=other.id, provider_record_id="ind-1"))
            s.commit()


class TestAuditEvent:
    def test_defaults(self, test_session: Session):
        event = AuditEvent(
            event_type="sync.started",
            entity_type="sync_job",
            entity_id="job-1",
            action="create",
        )
        test_session.add(event)
        test_session.commit()
        test_session.refresh(event)

        assert event.id
        assert event.actor_id is None
        assert event.created_at is not None
