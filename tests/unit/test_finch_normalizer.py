"""Tests for Finch response normalization (no DB, no network)."""
import json
from datetime import date
from pathlib import Path

import pytest

from paysync.providers.base import DirectoryEntry, NormalizationError, ProviderRecord
from paysync.providers.finch.normalizer import (
    normalize_directory_entry,
    normalize_individual,
    normalize_pay_statement,
    normalize_payment,
)

FIXTURES = Path(__file__).parent.parent / "fixtures"

DIRECTORY = json.loads((FIXTURES / "finch_directory.json").read_text())
INDIVIDUAL = json.loads((FIXTURES / "finch_individual.json").read_text())["responses"][0]["body"]
PAYMENTS = json.loads((FIXTURES / "finch_payments.json").read_text())
PAY_STATEMENTS = json.loads(
    (FIXTURES / "finch_pay_statements.json").read_text()
)["responses"][0]["body"]["pay_statements"]


class TestNormalizeDirectoryEntry:
    def test_basic_fields(self):
        entry = normalize_directory_entry(DIRECTORY["individuals"][0])
        assert entry.provider_record_id == "ind-001"
        assert entry.first_name == "Ada"
        assert entry.is_active is True
        assert entry.department == "Engineering"

    def test_null_department(self):
        entry = normalize_directory_entry(DIRECTORY["individuals"][2])
        assert entry.department is None
        assert entry.is_active is False

    def test_missing_id_raises(self):
        with pytest.raises(NormalizationError):
            normalize_directory_entry({"first_name": "Nobody"})


class TestNormalizeIndividual:
    @pytest.fixture
    def fields(self):
        return normalize_individual(ProviderRecord("ind-001", INDIVIDUAL))

    def test_natural_key(self, fields):
        assert fields["provider_record_id"] == "ind-001"

    def test_prefers_work_email(self, fields):
        assert fields["email"] == "ada@corp.example"

    def test_hire_date_from_start_date(self, fields):
        assert fields["hire_date"] == date(2021, 3, 1)

    def test_employment_type(self, fields):
        assert fields["employment_status"] == "employee"

    def test_ssn_returned_separately(self, fields):
        assert fields["ssn"] == "123-45-6789"

    def test_ssn_never_in_source_data(self, fields):
        source = json.loads(fields["source_data"])
        assert "ssn" not in source
        assert "123-45-6789" not in fields["source_data"]

    def test_source_data_keeps_payload(self, fields):
        source = json.loads(fields["source_data"])
        assert source["dob"] == "1985-12-10"

    def test_directory_fills_missing_fields(self):
        entry = DirectoryEntry("ind-009", first_name="Dir", last_name="Only", is_active=False, department="Ops")
        fields = normalize_individual(ProviderRecord("ind-009", {"id": "ind-009"}), entry)
        assert fields["first_name"] == "Dir"
        assert fields["last_name"] == "Only"
        assert fields["is_active"] is False
        assert json.loads(fields["source_data"])["department"] == "Ops"

    def test_no_email(self):
        fields = normalize_individual(ProviderRecord("ind-010", {"id": "ind-010"}))
        assert fields["email"] is None
        assert fields["ssn"] is None

    def test_bad_date_raises(self):
        with pytest.raises(NormalizationError):
            normalize_individual(ProviderRecord("ind-011", {"id": "ind-011", "start_date": "03/01/2021"}))

    def test_missing_id_raises(self):
        with pytest.raises(NormalizationError):
            normalize_individual(ProviderRecord("", {}))


class TestNormalizePayment:
    def test_pay_run_fields(self):
        fields = normalize_payment(ProviderRecord("pay-100", PAYMENTS[0]))
        assert fields["provider_record_id"] == "pay-100"
        assert fields["pay_period_start"] == date(2024, 1, 1)
        assert fields["pay_period_end"] == date(2024, 1, 15)
        assert fields["pay_date"] == date(2024, 1, 19)
        assert fields["payrun_type"] == "semimonthly"

    def test_money_in_cents(self):
        fields = normalize_payment(ProviderRecord("pay-100", PAYMENTS[0]))
        assert fields["gross_pay_cents"] == 1000000
        assert fields["net_pay_cents"] == 742000

    def test_null_amount(self):
        raw = dict(PAYMENTS[0], gross_pay={"amount": None, "currency": "usd"})
        assert normalize_payment(ProviderRecord("pay-100", raw))["gross_pay_cents"] is None

    def test_missing_id_raises(self):
        with pytest.raises(NormalizationError):
            normalize_payment(ProviderRecord("", {"pay_date": "2024-01-19"}))


class TestNormalizePayStatement:
    def test_composite_natural_key(self):
        fields = normalize_pay_statement("pay-100", ProviderRecord("pay-100:ind-001", PAY_STATEMENTS[0]))
        assert fields["provider_record_id"] == "pay-100:ind-001"
        assert fields["provider_payment_id"] == "pay-100"
        assert fields["provider_individual_id"] == "ind-001"

    def test_amounts_and_lines(self):
        fields = normalize_pay_statement("pay-100", ProviderRecord("pay-100:ind-001", PAY_STATEMENTS[0]))
        assert fields["gross_pay_cents"] == 600000
        assert fields["total_hours"] == 80.0
        assert json.loads(fields["deductions_json"])[0]["name"] == "401k"
        assert json.loads(fields["taxes_json"])[0]["type"] == "federal"

    def test_missing_individual_raises(self):
        with pytest.raises(NormalizationError):
            normalize_pay_statement("pay-100", ProviderRecord("pay-100:", {"type": "regular_payroll"}))
