from __future__ import annotations

from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

TransactionType = Literal["income", "expense"]
IntegrationStatus = Literal["active", "revoked"]
SendOutcome = Literal["sent", "failed"]


class AccountPreferences(BaseModel):
    account_id: str
    locale: str = "en"
    currency: str = "USD"
    timezone: Optional[str] = None
    transaction_reminders: bool = True
    auto_categorize: bool = False


class Category(BaseModel):
    category_id: str
    name: str
    type: TransactionType = "expense"


class TransactionCandidate(BaseModel):
    amount: float
    type: TransactionType = "expense"
    category: str = "Other"
    description: str = ""
    date: Optional[int] = Field(default=None, description="Unix seconds, only when the message names a date")
    confidence: float = 1.0


class Transaction(BaseModel):
    transaction_id: str
    account_id: str
    amount: float
    currency: str = "USD"
    type: TransactionType
    category: str
    category_id: Optional[str] = None
    description: str = ""
    date: int
    ai_generated: bool = False
    created_at: int


class ActivationCode(BaseModel):
    account_id: str
    code: str
    created_at: int
    expires_at: int
    used_at: Optional[int] = None

    def usable_at(self, now: float) -> bool:
        return now < self.expires_at and self.used_at is None


class Integration(BaseModel):
    integration_id: str
    account_id: str
    external_identity: str
    display_name: Optional[str] = None
    status: IntegrationStatus = "active"
    activated_at: int


class NotificationLogEntry(BaseModel):
    entry_id: str
    account_id: Optional[str] = None
    category: str
    external_identity: str
    message: str
    outcome: SendOutcome
    sent_at: int
    error: Optional[str] = None


# --- HTTP payloads ---
class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConnectionStatus(_CamelModel):
    connected: bool
    status: str
    qr_code: Optional[str] = Field(default=None, alias="qrCode")


class ConnectResponse(ConnectionStatus):
    success: bool = True
    message: Optional[str] = None


class ActionResponse(_CamelModel):
    success: bool
    message: str


class GenerateCodeResponse(_CamelModel):
    success: bool = True
    code: str
    expires_at: int = Field(alias="expiresAt")


class ActivateRequest(_CamelModel):
    code: str = Field(min_length=1)
    external_identity: str = Field(alias="externalIdentity", min_length=1)
    display_name: Optional[str] = Field(default=None, alias="displayName")


class SendTestRequest(_CamelModel):
    external_identity: str = Field(alias="externalIdentity", min_length=1)
    message: str = Field(min_length=1)


class RelayEvent(_CamelModel):
    key: str
    event: str
    payload: dict = Field(default_factory=dict)


class ConnectionsResponse(_CamelModel):
    success: bool = True
    connections: List[Integration]


class ActiveCodesResponse(_CamelModel):
    success: bool = True
    active_codes: List[ActivationCode] = Field(alias="activeCodes")


class SweepReport(_CamelModel):
    accounts_checked: int = Field(default=0, alias="accountsChecked")
    accounts_reminded: int = Field(default=0, alias="accountsReminded")
    sent: int = 0
    failed: int = 0
    accounts_errored: int = Field(default=0, alias="accountsErrored")
