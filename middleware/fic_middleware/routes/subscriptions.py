"""
Subscription Management Endpoints

Registers webhook subscriptions with Fatture in Cloud and reconciles the
local copy. Protected by the admin API key.
"""

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from fic_middleware.container import ServiceContainer
from fic_middleware.models.records import Subscription
from fic_middleware.routes.dependencies import get_container, require_admin_key
from fic_middleware.services.subscription_lifecycle import ReconcileSummary

router = APIRouter(
    prefix="/subscriptions",
    tags=["subscriptions"],
    dependencies=[Depends(require_admin_key)],
)


class SubscriptionCreateRequest(BaseModel):
    account_id: str
    sink: str = Field(description="https URL the provider will deliver to")
    types: List[str] = Field(min_length=1, description="Event types to subscribe to")
    event_group: Optional[str] = Field(None, pattern=r"^[a-z_]+$")
    verification_method: Literal["header", "query"] = "header"


class SubscriptionResponse(BaseModel):
    account_id: str
    event_group: str
    external_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool
    sink: Optional[str] = None
    types: List[str] = Field(default_factory=list)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls.model_validate(subscription.model_dump(exclude={"secret"}))


@router.post("", status_code=201, response_model=SubscriptionResponse)
async def create_subscription(
    payload: SubscriptionCreateRequest,
    container: ServiceContainer = Depends(get_container),
):
    subscription = await container.lifecycle.create_subscription(
        payload.account_id,
        sink=payload.sink,
        types=payload.types,
        event_group=payload.event_group,
        verification_method=payload.verification_method,
    )
    return SubscriptionResponse.from_subscription(subscription)


@router.get("/{account_id}", response_model=List[SubscriptionResponse])
async def list_subscriptions(
    account_id: str,
    container: ServiceContainer = Depends(get_container),
):
    subscriptions = await container.subscriptions.list_for_account(account_id)
    return [SubscriptionResponse.from_subscription(s) for s in subscriptions]


@router.post("/{account_id}/reconcile", response_model=ReconcileSummary)
async def reconcile_subscriptions(
    account_id: str,
    dry_run: bool = False,
    container: ServiceContainer = Depends(get_container),
):
    return await container.lifecycle.reconcile(account_id, dry_run=dry_run)
