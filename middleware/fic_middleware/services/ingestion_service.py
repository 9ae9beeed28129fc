"""
Webhook Ingestion Service

Synchronous half of webhook handling. A POST delivery goes through:

    decode -> route to subscription -> authenticate -> validate
           -> persist pending events -> enqueue job -> 202

Every rejection is raised as a MiddlewareException carrying its HTTP
status; nothing here is retried, the provider redelivers on non-2xx.
"""

import re
from typing import Awaitable, Callable, Mapping, Optional

from fic_middleware.handlers.event_mapping import map_event_type
from fic_middleware.models.cloudevents import CanonicalEvent, WebhookJob
from fic_middleware.models.records import Subscription
from fic_middleware.services import cloudevents_decoder
from fic_middleware.services.event_store import EventStore
from fic_middleware.services.signature_verifier import WebhookSignatureVerifier
from fic_middleware.services.sqs_service import SQSService
from fic_middleware.services.subscription_store import SubscriptionStore, infer_event_group
from fic_middleware.utils.exceptions import (
    ConfigurationException,
    QueueException,
    SubscriptionNotFoundException,
    TokenVerificationException,
    WebhookAuthException,
    WebhookProtocolException,
)
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)

BEARER_PATTERN = re.compile(r"Bearer\s+(.+)$", re.IGNORECASE)

# Called with the queued job once enqueueing succeeded
WebhookObserver = Callable[[WebhookJob], Awaitable[None]]


def read_challenge(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    header_name: str = "x-fic-verification-challenge",
) -> str:
    """
    Pull the subscription verification challenge from the header, falling
    back to a query parameter of the same name.

    Raises:
        WebhookProtocolException: No challenge supplied
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    challenge = lowered.get(header_name.lower()) or query_params.get(header_name)
    if not challenge:
        raise WebhookProtocolException("Missing verification challenge")
    return challenge


class WebhookIngestionService:
    def __init__(
        self,
        subscription_store: SubscriptionStore,
        event_store: EventStore,
        queue: SQSService,
        verifier: WebhookSignatureVerifier,
        verify_jwt: bool = True,
        observer: Optional[WebhookObserver] = None,
    ):
        self.subscriptions = subscription_store
        self.events = event_store
        self.queue = queue
        self.verifier = verifier
        self.verify_jwt = verify_jwt
        self.observer = observer

    async def ingest(
        self,
        account_id: str,
        event_group: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> WebhookJob:
        """
        Accept one notification delivery.

        Returns:
            The job that was enqueued

        Raises:
            WebhookProtocolException: Undecodable delivery or no resource ids (400)
            SubscriptionNotFoundException: No active subscription routes it (404)
            WebhookAuthException: Missing or invalid bearer token (401)
            QueueException: The job could not be enqueued (500)
        """
        event = cloudevents_decoder.decode(headers, body)

        subscription = await self._resolve_subscription(account_id, event_group, event)

        if self.verify_jwt:
            self._authenticate(headers, event, account_id)

        if not event.type:
            raise WebhookProtocolException("Missing required CloudEvents type attribute")
        if not event.resource_ids:
            logger.warning(
                "Webhook delivery without resource ids",
                extra={"account_id": account_id, "event_type": event.type, "ce_id": event.id},
            )
            raise WebhookProtocolException("Empty IDs array in payload")

        job = WebhookJob.from_event(event, account_id, subscription.event_group)
        await self._persist_pending(job)

        try:
            await self.queue.send_job(job)
        except QueueException as e:
            logger.error(
                "Failed to queue webhook",
                extra={"account_id": account_id, "event_type": job.event, "error": e.message},
            )
            raise QueueException("Failed to queue webhook", details=e.details) from e

        logger.info(
            "Webhook queued for processing",
            extra={
                "account_id": account_id,
                "event_group": job.event_group,
                "event_type": job.event,
                "ce_id": job.ce_id,
                "content_mode": event.content_mode.value,
                "ids_count": len(job.resource_ids),
            },
        )

        await self._notify(job)
        return job

    async def _resolve_subscription(
        self, account_id: str, event_group: str, event: CanonicalEvent
    ) -> Subscription:
        subscription = await self.subscriptions.find_active(account_id, event_group)
        if subscription:
            return subscription

        # The sink may carry a stale group segment; try the one the event implies
        inferred = infer_event_group(event.type)
        if inferred != event_group:
            subscription = await self.subscriptions.find_active(account_id, inferred)
            if subscription:
                logger.info(
                    "Webhook routed by inferred event group",
                    extra={"account_id": account_id, "route_group": event_group, "inferred_group": inferred},
                )
                return subscription

        logger.warning(
            "Subscription not found or inactive",
            extra={"account_id": account_id, "event_group": event_group, "event_type": event.type},
        )
        raise SubscriptionNotFoundException(details={"account_id": account_id, "event_group": event_group})

    def _authenticate(self, headers: Mapping[str, str], event: CanonicalEvent, account_id: str) -> None:
        lowered = {key.lower(): value for key, value in headers.items()}
        authorization = lowered.get("authorization")
        if not authorization:
            raise WebhookAuthException("Missing Authorization header")

        match = BEARER_PATTERN.match(authorization.strip())
        if not match:
            raise WebhookAuthException("Invalid Authorization header format")

        try:
            self.verifier.verify(
                match.group(1).strip(),
                expected_jti=event.id,
                expected_subject=event.subject,
            )
        except TokenVerificationException as e:
            logger.warning(
                f"Webhook JWT rejected: {e.message}",
                extra={"account_id": account_id, "reason": e.reason, "ce_id": event.id},
            )
            raise WebhookAuthException("Invalid JWT token", details={"reason": e.reason}) from e
        except ConfigurationException as e:
            logger.error(
                f"Webhook JWT cannot be verified: {e.message}",
                extra={"account_id": account_id},
            )
            raise WebhookAuthException("Invalid JWT token") from e

    async def _persist_pending(self, job: WebhookJob) -> None:
        mapping = map_event_type(job.event)
        if mapping is None:
            logger.info(
                "Unrecognized event type, no events recorded",
                extra={"account_id": job.account_id, "event_type": job.event},
            )
            return

        payload = job.to_message()
        for resource_id in job.resource_ids:
            await self.events.create_pending(
                account_id=job.account_id,
                event_type=job.event,
                resource_type=mapping.resource_type.value,
                resource_id=resource_id,
                ce_id=job.ce_id,
                occurred_at=job.occurred_at,
                payload=payload,
            )

    async def _notify(self, job: WebhookJob) -> None:
        if self.observer is None:
            return
        try:
            await self.observer(job)
        except Exception as e:
            # Best effort: the job is already queued and acknowledged
            logger.warning(
                f"Webhook observer failed: {e}",
                extra={"account_id": job.account_id, "event_type": job.event, "error_type": type(e).__name__},
            )
