"""Shared test fixtures."""
import json
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from paysync.models.audit import AuditEvent  # noqa: F401
from paysync.models.connection import Connection, ConnectionStatus
from paysync.models.payroll import Employee, PayRun, PayStatement  # noqa: F401
from paysync.models.sync import SyncJob  # noqa: F401
from paysync.vault import CredentialVault


# Deterministic 32-byte key for tests only
TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_ACCESS_TOKEN = "finch-sandbox-token"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="vault")
def vault_fixture() -> CredentialVault:
    return CredentialVault(TEST_KEY)


@pytest.fixture(name="seeded_connection")
def seeded_connection_fixture(test_session: Session, vault: CredentialVault) -> Connection:
    """An active Finch connection owned by taxpayer tp-1."""
    connection = Connection(
        taxpayer_id="tp-1",
        provider="finch",
        provider_account_id="company-1",
        access_token_encrypted=vault.encrypt(TEST_ACCESS_TOKEN),
        scopes_json=json.dumps(["directory", "individual", "payment", "pay_statement"]),
        status=ConnectionStatus.ACTIVE.value,
    )
    test_session.add(connection)
    test_session.commit()
    test_session.refresh(connection)
    return connection
