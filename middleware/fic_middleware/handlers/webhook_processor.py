"""
Webhook Job Processor

Asynchronous half of webhook handling. For each resource id in a queued
job it fetches the authoritative record from Fatture in Cloud, upserts the
local copy and marks the ingested event processed.

Retry policy (per job):
- up to ``max_attempts`` attempts, fixed ``backoff_seconds`` between them
- each attempt bounded by ``timeout_seconds``
- only transient failures retry: provider 429/5xx, transport errors, timeouts
- provider 401 marks the account ``needs_refresh`` and fails the job at once

A job that still fails is logged and its events are marked ``error``; the
rows are kept so the job can be replayed with ``reprocess_failed``.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from fic_middleware.handlers.event_mapping import EventMapping, map_event_type
from fic_middleware.models.cloudevents import WebhookJob
from fic_middleware.models.records import EventStatus, ProviderAccount
from fic_middleware.models.resources import ResourceAction
from fic_middleware.services.account_store import AccountStore
from fic_middleware.services.event_store import EventStore
from fic_middleware.services.fic_api_client import FicApiClient
from fic_middleware.services.resource_store import ResourceStore
from fic_middleware.utils.exceptions import (
    MiddlewareException,
    ProviderAPIException,
    ProviderAuthException,
    RetryableException,
)
from fic_middleware.utils.logging_config import get_logger, sanitize_payload
from fic_middleware.utils.retry import retry_async

logger = get_logger(__name__)


class ProcessingStatus(str, Enum):
    SUCCEEDED = "succeeded"
    IGNORED = "ignored"
    FAILED = "failed"


class ProcessingResult(BaseModel):
    status: ProcessingStatus
    event: str
    account_id: str
    processed_ids: List[int] = Field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None


class WebhookProcessor:
    def __init__(
        self,
        api_client: FicApiClient,
        account_store: AccountStore,
        event_store: EventStore,
        resource_store: ResourceStore,
        max_attempts: int = 3,
        backoff_seconds: float = 60,
        timeout_seconds: float = 120,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api = api_client
        self.accounts = account_store
        self.events = event_store
        self.resources = resource_store
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep

    async def process(self, job: WebhookJob) -> ProcessingResult:
        """
        Run one job to completion, retrying transient failures.

        Errors from the job itself are recorded and returned as a FAILED
        result; only infrastructure errors (e.g. DynamoDB) propagate so the
        queue can redeliver the message.
        """
        if not job.resource_ids:
            logger.info("Job has no resource ids, nothing to do", extra={"event": job.event})
            return ProcessingResult(status=ProcessingStatus.SUCCEEDED, event=job.event, account_id=job.account_id)

        mapping = map_event_type(job.event)
        if mapping is None:
            logger.info(
                "Unrecognized event type, job ignored",
                extra={"event": job.event, "account_id": job.account_id},
            )
            return ProcessingResult(status=ProcessingStatus.IGNORED, event=job.event, account_id=job.account_id)

        completed: List[int] = []
        attempts = 0

        async def attempt() -> None:
            nonlocal attempts
            attempts += 1
            await self._sync_remaining(job, mapping, completed)

        run = retry_async(
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_seconds,
            backoff_strategy="fixed",
            attempt_timeout=self.timeout_seconds,
            retryable_exceptions=(RetryableException,),
            sleep=self.sleep,
        )(attempt)

        try:
            await run()
        except MiddlewareException as e:
            await self._record_failure(job, mapping, completed, e, attempts)
            return ProcessingResult(
                status=ProcessingStatus.FAILED,
                event=job.event,
                account_id=job.account_id,
                processed_ids=completed,
                attempts=attempts,
                error=e.message,
            )

        logger.info(
            "Webhook job processed",
            extra={
                "event": job.event,
                "account_id": job.account_id,
                "event_group": job.event_group,
                "resource_type": mapping.resource_type.value,
                "action": mapping.action.value,
                "ids_count": len(completed),
                "attempts": attempts,
            },
        )
        return ProcessingResult(
            status=ProcessingStatus.SUCCEEDED,
            event=job.event,
            account_id=job.account_id,
            processed_ids=completed,
            attempts=attempts,
        )

    async def _sync_remaining(self, job: WebhookJob, mapping: EventMapping, completed: List[int]) -> None:
        account: Optional[ProviderAccount] = None

        for resource_id in job.resource_ids:
            if resource_id in completed:
                continue

            if mapping.action == ResourceAction.DELETED:
                deleted = await self.resources.delete(job.account_id, mapping.resource_type, resource_id)
                logger.info(
                    "Resource deleted locally",
                    extra={
                        "account_id": job.account_id,
                        "resource_type": mapping.resource_type.value,
                        "fic_id": resource_id,
                        "existed": deleted,
                    },
                )
            else:
                if account is None:
                    account = await self.accounts.get_credentials(job.account_id)
                await self._fetch_and_store(account, job, mapping, resource_id)

            await self.events.mark_processed(
                account_id=job.account_id,
                event_type=job.event,
                resource_type=mapping.resource_type.value,
                resource_id=resource_id,
                ce_id=job.ce_id,
                occurred_at=job.occurred_at,
                payload=job.to_message(),
            )
            completed.append(resource_id)

    async def _fetch_and_store(
        self,
        account: ProviderAccount,
        job: WebhookJob,
        mapping: EventMapping,
        resource_id: int,
    ) -> None:
        try:
            data = await self.api.fetch_resource(
                account.company_id, account.access_token, mapping.resource_type, resource_id
            )
        except ProviderAuthException:
            await self.accounts.mark_needs_refresh(job.account_id)
            raise
        except ProviderAPIException as e:
            if e.is_transient:
                raise RetryableException(
                    e.message,
                    max_retries=self.max_attempts,
                    details={"status_code": e.status_code, "fic_id": resource_id},
                ) from e
            raise

        await self.resources.upsert(job.account_id, mapping.resource_type, data)

        logger.debug(
            "Resource synced",
            extra={
                "account_id": job.account_id,
                "resource_type": mapping.resource_type.value,
                "action": mapping.action.value,
                "fic_id": resource_id,
                "data": sanitize_payload(data),
            },
        )

    async def _record_failure(
        self,
        job: WebhookJob,
        mapping: EventMapping,
        completed: List[int],
        error: MiddlewareException,
        attempts: int,
    ) -> None:
        logger.error(
            "Webhook job failed",
            extra={
                "event": job.event,
                "account_id": job.account_id,
                "event_group": job.event_group,
                "attempts": attempts,
                "error": error.message,
                "error_code": error.error_code,
                "exception": type(error).__name__,
            },
        )

        for resource_id in job.resource_ids:
            if resource_id in completed:
                continue
            await self.events.mark_error(
                account_id=job.account_id,
                event_type=job.event,
                resource_type=mapping.resource_type.value,
                resource_id=resource_id,
                error=error.message,
                ce_id=job.ce_id,
                occurred_at=job.occurred_at,
                payload=job.to_message(),
            )

    async def reprocess_failed(self, account_id: str) -> List[ProcessingResult]:
        """Replay the jobs behind every ``error`` event of an account."""
        failed = await self.events.list_for_account(account_id, status=EventStatus.ERROR)

        jobs: Dict[str, WebhookJob] = {}
        for event in failed:
            if not event.payload:
                continue
            original = WebhookJob.from_message(event.payload)
            key = f"{original.ce_id}|{original.event}|{original.occurred_at}"
            job = jobs.setdefault(key, original.model_copy(update={"resource_ids": []}))
            if event.fic_resource_id not in job.resource_ids:
                job.resource_ids.append(event.fic_resource_id)

        logger.info(
            "Reprocessing failed webhook jobs",
            extra={"account_id": account_id, "events": len(failed), "jobs": len(jobs)},
        )
        return [await self.process(job) for job in jobs.values()]
