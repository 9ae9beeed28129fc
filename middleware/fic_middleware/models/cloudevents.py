"""
CloudEvents Models

Pydantic models for decoded webhook deliveries and the queued job payload.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ContentMode(str, Enum):
    BINARY = "binary"
    STRUCTURED = "structured"


class CanonicalEvent(BaseModel):
    """A webhook delivery normalized from either CloudEvents content mode"""

    type: str = Field(description="Event type, e.g. it.fattureincloud.webhooks.entities.clients.create")
    time: Optional[datetime] = Field(None, description="When the event occurred upstream")
    subject: Optional[str] = Field(None, description="Event subject (company reference)")
    id: Optional[str] = Field(None, description="CloudEvents id, the correlation id")
    source: Optional[str] = None
    specversion: Optional[str] = None
    resource_ids: List[int] = Field(default_factory=list, description="Affected resource ids (data.ids)")
    data: Dict[str, Any] = Field(default_factory=dict)
    content_mode: ContentMode = ContentMode.BINARY


class WebhookJob(BaseModel):
    """Normalized job enqueued for the asynchronous processor"""

    event: str
    occurred_at: Optional[datetime] = None
    subject: Optional[str] = None
    ce_id: Optional[str] = None
    ce_source: Optional[str] = None
    ce_specversion: Optional[str] = None
    resource_ids: List[int] = Field(default_factory=list)
    account_id: str
    event_group: str

    @classmethod
    def from_event(cls, event: CanonicalEvent, account_id: str, event_group: str) -> "WebhookJob":
        return cls(
            event=event.type,
            occurred_at=event.time,
            subject=event.subject,
            ce_id=event.id,
            ce_source=event.source,
            ce_specversion=event.specversion,
            resource_ids=list(event.resource_ids),
            account_id=account_id,
            event_group=event_group,
        )

    def to_message(self) -> Dict[str, Any]:
        """Queue message body; resource ids travel under data.ids"""
        body = self.model_dump(mode="json", exclude={"resource_ids"})
        body["data"] = {"ids": list(self.resource_ids)}
        return body

    @classmethod
    def from_message(cls, body: Dict[str, Any]) -> "WebhookJob":
        values = dict(body)
        data = values.pop("data", None) or {}
        values["resource_ids"] = data.get("ids") or []
        return cls.model_validate(values)
