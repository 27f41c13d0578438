"""
Provider client contract.

A provider client talks to one external payroll API on behalf of a
Connection. It is stateless with respect to credentials: every data call takes
the decrypted access token, which the sync engine holds in memory only for the
duration of a job.

Fetch methods return lightly-wrapped DTOs; normalize_* methods turn those into
field dicts that map directly onto the paysync SyncedEntity models. Keeping
both behind one interface means adding a provider never touches the engine.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional


# ── Exceptions ────────────────────────────────────────────────────────────────

class ProviderError(Exception):
    """Base class for every failure reported by a provider client."""


class AuthError(ProviderError):
    """Credential or authorization code rejected by the provider."""


class RateLimited(ProviderError):
    """Provider asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransportError(ProviderError):
    """Network failure, timeout or provider 5xx. Retryable."""


class NotFound(ProviderError):
    """Record disappeared between directory listing and detail fetch."""


class NormalizationError(ValueError):
    """Provider payload is missing required fields or has unparseable values."""


# ── DTOs ──────────────────────────────────────────────────────────────────────

@dataclass
class TokenGrant:
    access_token: str
    provider_account_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class CompanyInfo:
    provider_account_id: Optional[str]
    legal_name: Optional[str] = None
    ein: Optional[str] = None


@dataclass
class DirectoryEntry:
    provider_record_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: Optional[bool] = None
    department: Optional[str] = None


@dataclass
class ProviderRecord:
    """A detail payload for one provider record, keyed by its provider id."""

    provider_record_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


# ── Contract ──────────────────────────────────────────────────────────────────

class ProviderClient(ABC):
    """Interface every payroll provider integration implements."""

    provider: str

    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """URL the user is sent to in order to grant access."""

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        """Trade an OAuth authorization code for a credential. Raises AuthError on rejection."""

    @abstractmethod
    async def fetch_company(self, access_token: str) -> CompanyInfo:
        ...

    @abstractmethod
    async def fetch_directory(self, access_token: str) -> List[DirectoryEntry]:
        """Return every page of the employee directory as one list."""

    @abstractmethod
    async def fetch_individual(self, access_token: str, individual_id: str) -> ProviderRecord:
        ...

    @abstractmethod
    async def fetch_payments(
        self, access_token: str, start_date: date, end_date: date
    ) -> List[ProviderRecord]:
        """Return the pay runs whose pay date falls in [start_date, end_date]."""

    @abstractmethod
    async def fetch_pay_statements(self, access_token: str, payment_id: str) -> List[ProviderRecord]:
        ...

    @abstractmethod
    def normalize_individual(
        self, record: ProviderRecord, entry: Optional[DirectoryEntry] = None
    ) -> Dict[str, Any]:
        """Employee field dict. May include a plaintext "ssn" key for the caller to encrypt."""

    @abstractmethod
    def normalize_payment(self, record: ProviderRecord) -> Dict[str, Any]:
        ...

    @abstractmethod
    def normalize_pay_statement(self, payment_id: str, record: ProviderRecord) -> Dict[str, Any]:
        ...
