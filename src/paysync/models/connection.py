"""Connection model: one row per delegated-access grant to a payroll provider."""
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlmodel import Field, SQLModel

from paysync.errors import ValidationError
from paysync.models.base import new_id, utcnow


class Provider(str, Enum):
    FINCH = "finch"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    ERROR = "error"


@dataclass(frozen=True)
class OwnerRef:
    """The party that granted a connection: a taxpayer or a business, never both."""

    taxpayer_id: Optional[str] = None
    business_id: Optional[str] = None

    def validate(self) -> "OwnerRef":
        if not self.taxpayer_id and not self.business_id:
            raise ValidationError("taxpayer_id or business_id required")
        if self.taxpayer_id and self.business_id:
            raise ValidationError("A connection has exactly one owner; got both taxpayer_id and business_id")
        return self

    @property
    def actor_id(self) -> str:
        return self.taxpayer_id or self.business_id

    def owns(self, connection: "Connection") -> bool:
        if self.taxpayer_id:
            return connection.taxpayer_id == self.taxpayer_id
        return connection.business_id is not None and connection.business_id == self.business_id


class Connection(SQLModel, table=True):
    """A stored OAuth grant. Token columns hold CredentialVault envelopes, never plaintext."""

    id: str = Field(default_factory=new_id, primary_key=True)
    taxpayer_id: Optional[str] = Field(default=None, index=True)
    business_id: Optional[str] = Field(default=None, index=True)

    provider: str = Field(index=True)  # Provider value, e.g. "finch"
    provider_account_id: Optional[str] = None  # Finch company_id

    access_token_encrypted: Optional[str] = None
    refresh_token_encrypted: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scopes_json: str = "[]"

    status: str = Field(default=ConnectionStatus.ACTIVE.value, index=True)
    status_reason: Optional[str] = None
    last_sync_at: Optional[datetime] = None  # set only when a job completes

    # Company legal name, EIN, correlation id of the connect request
    metadata_json: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def scopes(self) -> List[str]:
        return json.loads(self.scopes_json or "[]")
