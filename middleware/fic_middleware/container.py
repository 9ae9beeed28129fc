"""
Service Container

Builds every service from Settings and wires their dependencies explicitly.
The API app, the SQS worker and the scheduled jobs each own one container;
tests build their own with fakes in place of the queue, clock or HTTP
transport.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from fic_middleware.config import Settings
from fic_middleware.handlers.webhook_processor import WebhookProcessor
from fic_middleware.services.account_store import AccountStore
from fic_middleware.services.dynamodb_service import DynamoDBService
from fic_middleware.services.event_store import EventStore
from fic_middleware.services.fic_api_client import FicApiClient
from fic_middleware.services.ingestion_service import WebhookIngestionService, WebhookObserver
from fic_middleware.services.rate_limiter import FixedWindowRateLimiter
from fic_middleware.services.resource_store import ResourceStore
from fic_middleware.services.signature_verifier import WebhookSignatureVerifier
from fic_middleware.services.sqs_service import SQSService
from fic_middleware.services.subscription_lifecycle import SubscriptionLifecycleManager
from fic_middleware.services.subscription_store import SubscriptionStore
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        dynamodb: DynamoDBService,
        queue: SQSService,
        http_client: httpx.AsyncClient,
        clock: Optional[Callable[[], float]] = None,
        observer: Optional[WebhookObserver] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.dynamodb = dynamodb
        self.queue = queue
        self.http_client = http_client
        clock = clock or time.time

        self.api_client = FicApiClient(http_client, base_url=settings.fic_api_base_url)

        self.accounts = AccountStore(dynamodb, settings.dynamodb_accounts_table)
        self.subscriptions = SubscriptionStore(dynamodb, settings.dynamodb_subscriptions_table)
        self.events = EventStore(dynamodb, settings.dynamodb_events_table)
        self.resources = ResourceStore(dynamodb, settings.dynamodb_resources_table)

        self.rate_limiter = FixedWindowRateLimiter(
            dynamodb,
            table_name=settings.dynamodb_rate_limit_table,
            scope="fic-webhook",
            limit=settings.webhook_rate_limit,
            window_seconds=settings.webhook_rate_limit_window,
            clock=clock,
        )
        self.verifier = WebhookSignatureVerifier.from_base64(
            settings.fic_webhook_public_key,
            issuer=settings.fic_webhook_issuer,
            leeway=settings.fic_webhook_jwt_leeway,
            clock=clock,
        )
        self.ingestion = WebhookIngestionService(
            self.subscriptions,
            self.events,
            queue,
            self.verifier,
            verify_jwt=settings.fic_webhook_verify_jwt,
            observer=observer,
        )
        self.processor = WebhookProcessor(
            self.api_client,
            self.accounts,
            self.events,
            self.resources,
            max_attempts=settings.job_max_attempts,
            backoff_seconds=settings.job_backoff_seconds,
            timeout_seconds=settings.job_timeout_seconds,
            sleep=sleep,
        )
        self.lifecycle = SubscriptionLifecycleManager(
            self.subscriptions,
            self.accounts,
            self.api_client,
            webhook_base_url=settings.webhook_base_url,
            renewal_days=settings.subscription_renewal_days,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContainer":
        """Production wiring: real DynamoDB, SQS and HTTP client."""
        if settings.fic_webhook_verify_jwt and not settings.fic_webhook_public_key:
            logger.warning("Webhook JWT verification is enabled but no public key is configured")

        return cls(
            settings,
            dynamodb=DynamoDBService(region_name=settings.aws_region),
            queue=SQSService(queue_url=settings.sqs_queue_url),
            http_client=httpx.AsyncClient(
                timeout=settings.fic_api_timeout,
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            ),
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.dynamodb.disconnect()
