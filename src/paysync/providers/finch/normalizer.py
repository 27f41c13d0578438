"""
Finch API response normalizer.

Converts raw Finch response bodies into clean field dicts that map directly
onto the paysync SyncedEntity models. No DB access here; the sync engine
handles persistence.

All functions return plain dicts so they're easy to test without any
SQLModel or DB dependencies.

Finch conventions worth knowing:

  - Money is an object {"amount": <integer cents>, "currency": "usd"};
    amount may be null when the payroll system does not report it.
  - Dates are "YYYY-MM-DD" strings.
  - /employer/individual bodies may carry "ssn" when the ssn product was
    granted. It is returned separately under the "ssn" key and stripped from
    source_data so it is never persisted in plaintext.
"""
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from paysync.providers.base import DirectoryEntry, NormalizationError, ProviderRecord

SENSITIVE_KEYS = ("ssn",)


def _parse_date(value: Any, field_name: str) -> Optional[date]:
    """Parse a Finch "YYYY-MM-DD" date. Tolerates a trailing time component."""
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError as exc:
        raise NormalizationError(f"{field_name}: unparseable date {value!r}") from exc


def _cents(money: Any) -> Optional[int]:
    """Extract integer cents from a Finch money object."""
    if not isinstance(money, dict):
        return None
    amount = money.get("amount")
    if amount is None:
        return None
    try:
        return int(amount)
    except (TypeError, ValueError) as exc:
        raise NormalizationError(f"unparseable money amount {amount!r}") from exc


def _first_email(body: Dict[str, Any]) -> Optional[str]:
    emails = body.get("emails") or []
    # Prefer the work address when the provider tags them
    for item in emails:
        if isinstance(item, dict) and item.get("type") == "work" and item.get("data"):
            return item["data"]
    for item in emails:
        if isinstance(item, dict) and item.get("data"):
            return item["data"]
    return None


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _scrub(body: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in body.items() if k not in SENSITIVE_KEYS}


def normalize_directory_entry(raw: Dict[str, Any]) -> DirectoryEntry:
    """One item of /employer/directory "individuals"."""
    individual_id = raw.get("id")
    if not individual_id:
        raise NormalizationError("directory entry without id")
    department = raw.get("department")
    return DirectoryEntry(
        provider_record_id=str(individual_id),
        first_name=raw.get("first_name"),
        last_name=raw.get("last_name"),
        is_active=raw.get("is_active"),
        department=department.get("name") if isinstance(department, dict) else department,
    )


def normalize_individual(
    record: ProviderRecord, entry: Optional[DirectoryEntry] = None
) -> Dict[str, Any]:
    """
    Normalize an /employer/individual body into Employee fields.

    Employment details (hire date, employment type) are read when the body
    carries them; directory data fills names and the active flag when the
    individual body omits them.

    Returns:
        Dict with keys matching Employee columns, plus "ssn" (plaintext or
        None) which the caller must encrypt or drop.
    """
    body = record.payload or {}
    individual_id = body.get("id") or record.provider_record_id
    if not individual_id:
        raise NormalizationError("individual without id")

    employment = body.get("employment")
    employment_type = employment.get("type") if isinstance(employment, dict) else employment

    is_active = body.get("is_active")
    if is_active is None and entry is not None:
        is_active = entry.is_active

    source = _scrub(body)
    if entry is not None and entry.department and "department" not in source:
        source["department"] = entry.department

    return {
        "provider_record_id": str(individual_id),
        "first_name": body.get("first_name") or (entry.first_name if entry else None),
        "last_name": body.get("last_name") or (entry.last_name if entry else None),
        "email": _first_email(body),
        "hire_date": _parse_date(body.get("start_date") or body.get("hire_date"), "hire_date"),
        "termination_date": _parse_date(body.get("end_date"), "termination_date"),
        "employment_status": employment_type,
        "is_active": is_active,
        "ssn": body.get("ssn") or None,
        "source_data": _dumps(source),
    }


def normalize_payment(record: ProviderRecord) -> Dict[str, Any]:
    """Normalize one /employer/payment item into PayRun fields."""
    body = record.payload or {}
    payment_id = body.get("id") or record.provider_record_id
    if not payment_id:
        raise NormalizationError("payment without id")

    pay_period = body.get("pay_period") or {}
    pay_frequencies = body.get("pay_frequencies") or []

    return {
        "provider_record_id": str(payment_id),
        "pay_period_start": _parse_date(pay_period.get("start_date"), "pay_period.start_date"),
        "pay_period_end": _parse_date(pay_period.get("end_date"), "pay_period.end_date"),
        "pay_date": _parse_date(body.get("pay_date"), "pay_date"),
        "payrun_type": pay_frequencies[0] if pay_frequencies else None,
        "gross_pay_cents": _cents(body.get("gross_pay")),
        "net_pay_cents": _cents(body.get("net_pay")),
        "source_data": _dumps(body),
    }


def normalize_pay_statement(payment_id: str, record: ProviderRecord) -> Dict[str, Any]:
    """Normalize one pay statement of a /employer/pay-statement response."""
    body = record.payload or {}
    individual_id = body.get("individual_id")
    if not individual_id:
        raise NormalizationError(f"pay statement in payment {payment_id} without individual_id")

    earnings: List[Any] = body.get("earnings") or []
    taxes: List[Any] = body.get("taxes") or []
    deductions: List[Any] = body.get("employee_deductions") or []

    total_hours = body.get("total_hours")
    return {
        "provider_record_id": f"{payment_id}:{individual_id}",
        "provider_payment_id": str(payment_id),
        "provider_individual_id": str(individual_id),
        "statement_type": body.get("type"),
        "payment_method": body.get("payment_method"),
        "total_hours": float(total_hours) if total_hours is not None else None,
        "gross_pay_cents": _cents(body.get("gross_pay")),
        "net_pay_cents": _cents(body.get("net_pay")),
        "earnings_json": _dumps(earnings),
        "taxes_json": _dumps(taxes),
        "deductions_json": _dumps(deductions),
        "source_data": _dumps(_scrub(body)),
    }
