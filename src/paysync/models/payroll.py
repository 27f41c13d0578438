"""
Local mirrors of provider-owned payroll records.

Every table follows the same pattern: the natural key
(connection_id, provider_record_id) is unique and is the idempotency key for
upserts. Rows are overwritten on re-sync and never deleted by the engine.
last_seen_job_id records the most recent job that fetched the record, for
future deletion detection.
"""
from datetime import date, datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from paysync.models.base import new_id, utcnow


class Employee(SQLModel, table=True):
    """One row per provider individual."""

    __table_args__ = (UniqueConstraint("connection_id", "provider_record_id"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    connection_id: str = Field(foreign_key="connection.id", index=True)
    provider_record_id: str  # Finch individual_id

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    hire_date: Optional[date] = None
    termination_date: Optional[date] = None
    employment_status: Optional[str] = None  # "employee", "contractor"
    is_active: Optional[bool] = None  # deactivation is a flag, never a delete
    ssn_encrypted: Optional[str] = None  # CredentialVault envelope

    source_data: str = "{}"  # full normalized payload, JSON

    last_seen_job_id: Optional[str] = None
    last_synced_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PayRun(SQLModel, table=True):
    """One row per provider payment (a pay run across all employees)."""

    __table_args__ = (UniqueConstraint("connection_id", "provider_record_id"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    connection_id: str = Field(foreign_key="connection.id", index=True)
    provider_record_id: str  # Finch payment id

    pay_period_start: Optional[date] = None
    pay_period_end: Optional[date] = None
    pay_date: Optional[date] = None
    payrun_type: Optional[str] = None

    # Cents; Finch reports money as integer minor units
    gross_pay_cents: Optional[int] = None
    net_pay_cents: Optional[int] = None

    source_data: str = "{}"

    last_seen_job_id: Optional[str] = None
    last_synced_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PayStatement(SQLModel, table=True):
    """One employee's statement within a pay run. Key is "<payment_id>:<individual_id>"."""

    __table_args__ = (UniqueConstraint("connection_id", "provider_record_id"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    connection_id: str = Field(foreign_key="connection.id", index=True)
    provider_record_id: str

    provider_payment_id: str = Field(index=True)
    provider_individual_id: str = Field(index=True)
    statement_type: Optional[str] = None  # "regular_payroll", "off_cycle_payroll", ...
    payment_method: Optional[str] = None
    total_hours: Optional[float] = None

    gross_pay_cents: Optional[int] = None
    net_pay_cents: Optional[int] = None

    earnings_json: str = "[]"
    taxes_json: str = "[]"
    deductions_json: str = "[]"

    source_data: str = "{}"

    last_seen_job_id: Optional[str] = None
    last_synced_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
