"""Integration tests for ConnectionStore against in-memory SQLite."""
import json
from unittest.mock import AsyncMock

import pytest
from sqlmodel import Session, select

from paysync.errors import ConnectionNotFound, ProviderAuthError, ValidationError
from paysync.models.audit import AuditEvent
from paysync.models.connection import Connection, ConnectionStatus, OwnerRef
from paysync.providers.base import AuthError, CompanyInfo, TokenGrant, TransportError
from paysync.services.connection_store import ConnectionStore


def make_mock_client(grant=None, company=None):
    client = AsyncMock()
    client.provider = "finch"
    client.exchange_code = AsyncMock(return_value=grant or TokenGrant(
        access_token="tok-abc",
        provider_account_id="company-1",
        scopes=["directory", "payment"],
    ))
    client.fetch_company = AsyncMock(return_value=company or CompanyInfo(
        provider_account_id="company-1", legal_name="Acme Payroll Co", ein="12-3456789",
    ))
    return client


def events(engine, event_type):
    with Session(engine) as s:
        return list(s.exec(select(AuditEvent).where(AuditEvent.event_type == event_type)).all())


class TestCreateFromExchange:
    @pytest.mark.asyncio
    async def test_creates_active_connection(self, engine, vault):
        store = ConnectionStore(engine, vault)
        connection = await store.create_from_exchange(
            OwnerRef(taxpayer_id="tp-1"), make_mock_client(), "code-1", correlation_id="corr-1"
        )

        assert connection.status == ConnectionStatus.ACTIVE.value
        assert connection.provider == "finch"
        assert connection.provider_account_id == "company-1"
        assert connection.taxpayer_id == "tp-1"
        assert connection.business_id is None
        assert connection.scopes == ["directory", "payment"]
        metadata = json.loads(connection.metadata_json)
        assert metadata["company_name"] == "Acme Payroll Co"
        assert metadata["correlationId"] == "corr-1"

    @pytest.mark.asyncio
    async def test_token_stored_encrypted(self, engine, vault):
        store = ConnectionStore(engine, vault)
        connection = await store.create_from_exchange(OwnerRef(business_id="biz-1"), make_mock_client(), "code-1")

        assert connection.access_token_encrypted != "tok-abc"
        assert vault.decrypt(connection.access_token_encrypted) == "tok-abc"
        assert connection.refresh_token_encrypted is None

    @pytest.mark.asyncio
    async def test_audit_event_written(self, engine, vault):
        store = ConnectionStore(engine, vault)
        connection = await store.create_from_exchange(
            OwnerRef(taxpayer_id="tp-1"), make_mock_client(), "code-1", correlation_id="corr-1"
        )

        connected = events(engine, "integration.connected")
        assert len(connected) == 1
        assert connected[0].entity_id == connection.id
        assert connected[0].actor_id == "tp-1"
        assert json.loads(connected[0].metadata_json) == {
            "provider": "finch",
            "companyId": "company-1",
            "correlationId": "corr-1",
        }

    @pytest.mark.asyncio
    async def test_company_lookup_failure_is_tolerated(self, engine, vault):
        client = make_mock_client()
        client.fetch_company = AsyncMock(side_effect=TransportError("503"))
        connection = await ConnectionStore(engine, vault).create_from_exchange(
            OwnerRef(taxpayer_id="tp-1"), client, "code-1"
        )
        assert connection.status == ConnectionStatus.ACTIVE.value
        assert "company_name" not in json.loads(connection.metadata_json)

    @pytest.mark.asyncio
    async def test_rejected_code(self, engine, vault):
        client = make_mock_client()
        client.exchange_code = AsyncMock(side_effect=AuthError("invalid_grant"))

        with pytest.raises(ProviderAuthError):
            await ConnectionStore(engine, vault).create_from_exchange(OwnerRef(taxpayer_id="tp-1"), client, "bad")

        with Session(engine) as s:
            assert s.exec(select(Connection)).all() == []
        assert events(engine, "integration.connected") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner", [
        OwnerRef(),
        OwnerRef(taxpayer_id="tp-1", business_id="biz-1"),
    ])
    async def test_invalid_owner(self, engine, vault, owner):
        client = make_mock_client()
        with pytest.raises(ValidationError):
            await ConnectionStore(engine, vault).create_from_exchange(owner, client, "code-1")
        client.exchange_code.assert_not_awaited()


class TestReads:
    def test_get(self, engine, vault, seeded_connection):
        store = ConnectionStore(engine, vault)
        assert store.get(seeded_connection.id).id == seeded_connection.id
        assert store.get(seeded_connection.id, OwnerRef(taxpayer_id="tp-1")).id == seeded_connection.id

    def test_get_other_owner(self, engine, vault, seeded_connection):
        with pytest.raises(ConnectionNotFound):
            ConnectionStore(engine, vault).get(seeded_connection.id, OwnerRef(taxpayer_id="tp-2"))

    def test_get_missing(self, engine, vault):
        with pytest.raises(ConnectionNotFound):
            ConnectionStore(engine, vault).get("missing")

    def test_list_for_owner(self, engine, vault, seeded_connection):
        with Session(engine) as s:
            s.add(Connection(business_id="biz-1", provider="finch"))
            s.commit()

        store = ConnectionStore(engine, vault)
        assert [c.id for c in store.list_for_owner(OwnerRef(taxpayer_id="tp-1"))] == [seeded_connection.id]
        assert len(store.list_for_owner(OwnerRef(business_id="biz-1"))) == 1
        assert store.list_for_owner(OwnerRef(taxpayer_id="tp-9")) == []


class TestTransitions:
    def test_mark_error(self, engine, vault, seeded_connection):
        store = ConnectionStore(engine, vault)
        connection = store.mark_error(seeded_connection.id, "credential error")

        assert connection.status == ConnectionStatus.ERROR.value
        assert connection.status_reason == "credential error"
        assert len(events(engine, "integration.error")) == 1

    def test_mark_error_idempotent(self, engine, vault, seeded_connection):
        store = ConnectionStore(engine, vault)
        store.mark_error(seeded_connection.id, "first")
        connection = store.mark_error(seeded_connection.id, "second")

        assert connection.status_reason == "first"
        assert len(events(engine, "integration.error")) == 1

    def test_mark_error_missing(self, engine, vault):
        with pytest.raises(ConnectionNotFound):
            ConnectionStore(engine, vault).mark_error("missing", "x")

    def test_revoke(self, engine, vault, seeded_connection):
        store = ConnectionStore(engine, vault)
        connection = store.revoke(seeded_connection.id, OwnerRef(taxpayer_id="tp-1"))

        assert connection.status == ConnectionStatus.REVOKED.value
        assert connection.access_token_encrypted is None
        disconnected = events(engine, "integration.disconnected")
        assert len(disconnected) == 1
        assert disconnected[0].actor_id == "tp-1"

    def test_revoke_idempotent(self, engine, vault, seeded_connection):
        store = ConnectionStore(engine, vault)
        store.revoke(seeded_connection.id)
        store.revoke(seeded_connection.id)
        assert len(events(engine, "integration.disconnected")) == 1

    def test_revoked_connection_not_marked_error(self, engine, vault, seeded_connection):
        store = ConnectionStore(engine, vault)
        store.revoke(seeded_connection.id)
        assert store.mark_error(seeded_connection.id, "late").status == ConnectionStatus.REVOKED.value

    def test_revoke_other_owner(self, engine, vault, seeded_connection):
        with pytest.raises(ConnectionNotFound):
            ConnectionStore(engine, vault).revoke(seeded_connection.id, OwnerRef(business_id="biz-1"))


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_events_for_connection_in_order(self, engine, vault):
        store = ConnectionStore(engine, vault)
        connection = await store.create_from_exchange(OwnerRef(taxpayer_id="tp-1"), make_mock_client(), "code-1")
        store.mark_error(connection.id, "credential rejected by provider")
        store.revoke(connection.id)

        with Session(engine) as s:
            trail = store.audit.events_for(s, "connection", connection.id)
        assert [e.event_type for e in trail] == [
            "integration.connected",
            "integration.error",
            "integration.disconnected",
        ]
