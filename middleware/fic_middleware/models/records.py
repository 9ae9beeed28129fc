"""
Persistence Records

Pydantic models for the rows kept in DynamoDB: provider accounts, webhook
subscriptions and ingested events.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    NEEDS_REFRESH = "needs_refresh"
    DISCONNECTED = "disconnected"


class ProviderAccount(BaseModel):
    """A connected Fatture in Cloud company and its OAuth credentials"""

    account_id: str = Field(description="Local account identifier used in webhook routes")
    company_id: int = Field(description="Fatture in Cloud company id")
    name: Optional[str] = None
    access_token: Optional[str] = Field(None, repr=False)
    refresh_token: Optional[str] = Field(None, repr=False)
    token_expires_at: Optional[datetime] = None
    status: AccountStatus = AccountStatus.ACTIVE
    status_note: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class Subscription(BaseModel):
    """Local mirror of an upstream webhook subscription, one per (account, event group)"""

    account_id: str
    event_group: str
    external_id: Optional[str] = Field(None, description="Upstream subscription id")
    secret: Optional[str] = Field(None, repr=False)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    sink: Optional[str] = None
    types: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return subscription_key(self.account_id, self.event_group)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


def subscription_key(account_id: str, event_group: str) -> str:
    return f"{account_id}#{event_group}"


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"


class IngestedEvent(BaseModel):
    """One row per (delivery, resource id), deduplicated by ``dedup_key``"""

    dedup_key: str
    account_id: str
    event_type: str
    resource_type: str
    fic_resource_id: int
    ce_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    status: EventStatus = EventStatus.PENDING
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
