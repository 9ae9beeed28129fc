"""
Subscription Lifecycle Manager

Keeps webhook subscriptions alive and in step with the provider:
- registers new subscriptions after validating their sink
- renews subscriptions that expire within a look-ahead window
- reconciles local rows against the provider's subscription list

Runs once per scheduled tick; nothing here retries; the next tick does.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from fic_middleware.models.records import Subscription, utcnow
from fic_middleware.services.account_store import AccountStore
from fic_middleware.services.fic_api_client import FicApiClient
from fic_middleware.services.subscription_store import (
    DEFAULT_EVENT_GROUP,
    SubscriptionStore,
    build_webhook_url,
    extract_event_group_from_sink,
    infer_event_group,
)
from fic_middleware.utils.exceptions import (
    CredentialsUnavailableException,
    ProviderAPIException,
    ProviderAuthException,
    ProviderRateLimitException,
)
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)


class RenewalOutcome(str, Enum):
    RENEWED = "renewed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RenewalResult(BaseModel):
    account_id: str
    event_group: str
    external_id: Optional[str] = None
    outcome: RenewalOutcome
    message: str


class RenewalSummary(BaseModel):
    renewed: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[RenewalResult] = Field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """Any failure fails the run, however many renewals succeeded"""
        return 1 if self.failed > 0 else 0

    def record(self, result: RenewalResult) -> None:
        self.results.append(result)
        if result.outcome == RenewalOutcome.RENEWED:
            self.renewed += 1
        elif result.outcome == RenewalOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


class ReconcileSummary(BaseModel):
    account_id: str
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    dry_run: bool = False


class SubscriptionLifecycleManager:
    def __init__(
        self,
        subscription_store: SubscriptionStore,
        account_store: AccountStore,
        api_client: FicApiClient,
        webhook_base_url: str,
        renewal_days: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.subscriptions = subscription_store
        self.accounts = account_store
        self.api = api_client
        self.webhook_base_url = webhook_base_url
        self.renewal_days = renewal_days
        self.clock = clock

    async def find_expiring(self, within_days: Optional[int] = None) -> List[Subscription]:
        """Active subscriptions with an expiry on or before now + ``within_days``."""
        days = self.renewal_days if within_days is None else within_days
        cutoff = self.clock() + timedelta(days=days)
        return await self.subscriptions.find_expiring(cutoff)

    async def renew_all(self, subscriptions: List[Subscription], dry_run: bool = False) -> RenewalSummary:
        summary = RenewalSummary()
        for subscription in subscriptions:
            summary.record(await self.renew(subscription, dry_run=dry_run))

        logger.info(
            f"Summary: {summary.renewed} renewed, {summary.failed} failed",
            extra={"renewed": summary.renewed, "failed": summary.failed, "skipped": summary.skipped},
        )
        return summary

    async def renew(self, subscription: Subscription, dry_run: bool = False) -> RenewalResult:
        def result(outcome: RenewalOutcome, message: str) -> RenewalResult:
            return RenewalResult(
                account_id=subscription.account_id,
                event_group=subscription.event_group,
                external_id=subscription.external_id,
                outcome=outcome,
                message=message,
            )

        log_extra = {
            "account_id": subscription.account_id,
            "event_group": subscription.event_group,
            "subscription_id": subscription.external_id,
        }

        try:
            account = await self.accounts.get_credentials(subscription.account_id)
        except CredentialsUnavailableException as e:
            logger.error(f"Cannot renew subscription: {e.message}", extra=log_extra)
            return result(RenewalOutcome.FAILED, "no credential")

        if subscription.is_expired(self.clock()):
            logger.warning("Subscription already expired, skipping renewal", extra=log_extra)
            return result(RenewalOutcome.SKIPPED, "already expired")

        if not subscription.external_id:
            logger.error("Subscription has no upstream id", extra=log_extra)
            return result(RenewalOutcome.FAILED, "missing upstream subscription id")

        if dry_run:
            return result(RenewalOutcome.SKIPPED, "dry run")

        sink = build_webhook_url(self.webhook_base_url, subscription.account_id, subscription.event_group)

        try:
            renewed = await self.api.renew_subscription(
                account.company_id,
                account.access_token,
                subscription.external_id,
                sink=sink,
                types=subscription.types or None,
            )
        except ProviderRateLimitException as e:
            logger.error("Subscription renewal rate limited", extra={**log_extra, "retry_after": e.retry_after})
            return result(RenewalOutcome.FAILED, "rate limited")
        except ProviderAuthException:
            await self.accounts.mark_needs_refresh(subscription.account_id)
            logger.error("Subscription renewal authentication failed", extra=log_extra)
            return result(RenewalOutcome.FAILED, "authentication failed")
        except ProviderAPIException as e:
            logger.error(f"Subscription renewal failed: {e.message}", extra={**log_extra, "status_code": e.status_code})
            return result(RenewalOutcome.FAILED, e.message)

        await self.subscriptions.upsert(
            subscription.account_id,
            subscription.event_group,
            external_id=renewed.id,
            secret=renewed.secret or subscription.secret,
            expires_at=renewed.expires_at,
            is_active=True,
            sink=sink,
            types=renewed.types or subscription.types,
        )
        logger.info(
            "Subscription renewed",
            extra={**log_extra, "new_subscription_id": renewed.id, "expires_at": str(renewed.expires_at)},
        )
        return result(RenewalOutcome.RENEWED, "renewed")

    async def create_subscription(
        self,
        account_id: str,
        sink: str,
        types: List[str],
        event_group: Optional[str] = None,
        verification_method: str = "header",
    ) -> Subscription:
        """
        Register a subscription upstream and store it locally.

        The sink is validated before any upstream call.

        Raises:
            ValidationException / SinkEventGroupMismatchException: Bad sink or types
            CredentialsUnavailableException: Account cannot call the provider
            ProviderAPIException: Upstream rejected the registration
        """
        group = self.subscriptions.resolve_sink_group(sink, account_id, types, event_group)
        account = await self.accounts.get_credentials(account_id)

        try:
            created = await self.api.create_subscription(
                account.company_id,
                account.access_token,
                sink=sink,
                types=types,
                verification_method=verification_method,
            )
        except ProviderAuthException:
            await self.accounts.mark_needs_refresh(account_id)
            raise

        return await self.subscriptions.upsert(
            account_id,
            group,
            external_id=created.id,
            secret=created.secret,
            expires_at=created.expires_at,
            is_active=True,
            sink=sink,
            types=created.types or types,
        )

    async def reconcile(self, account_id: str, dry_run: bool = False) -> ReconcileSummary:
        """
        Align local subscriptions with the provider's list for one account.

        Upstream subscriptions are upserted (active only once verified);
        local active rows the provider no longer lists are deactivated.
        """
        account = await self.accounts.get_credentials(account_id)
        try:
            upstream = await self.api.list_subscriptions(account.company_id, account.access_token)
        except ProviderAuthException:
            await self.accounts.mark_needs_refresh(account_id)
            raise

        local = {s.event_group: s for s in await self.subscriptions.list_for_account(account_id)}
        summary = ReconcileSummary(account_id=account_id, dry_run=dry_run)
        seen = set()

        for remote in upstream:
            group = extract_event_group_from_sink(remote.sink, account_id)
            if group is None:
                group = infer_event_group(remote.types[0]) if remote.types else DEFAULT_EVENT_GROUP
            seen.add(group)

            existing = local.get(group)
            if existing is None:
                summary.created += 1
            else:
                summary.updated += 1

            if not dry_run:
                await self.subscriptions.upsert(
                    account_id,
                    group,
                    external_id=remote.id,
                    secret=remote.secret or (existing.secret if existing else None),
                    expires_at=remote.expires_at,
                    is_active=remote.verified,
                    sink=remote.sink,
                    types=remote.types,
                )

        for group, subscription in local.items():
            if group in seen or not subscription.is_active:
                continue
            summary.deactivated += 1
            if not dry_run:
                await self.subscriptions.deactivate(account_id, group)
            logger.info(
                "Subscription no longer listed upstream",
                extra={"account_id": account_id, "event_group": group, "dry_run": dry_run},
            )

        logger.info(
            "Subscriptions reconciled",
            extra={
                "account_id": account_id,
                "created_count": summary.created,
                "updated_count": summary.updated,
                "deactivated_count": summary.deactivated,
                "dry_run": dry_run,
            },
        )
        return summary
