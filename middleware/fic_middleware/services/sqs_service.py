"""
Webhook Job Queue

SQS queue carrying WebhookJob messages from the ingestion endpoint to the
processor. Every botocore failure surfaces as a QueueException.
"""

import json
from typing import Any, Dict, List, Optional

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from fic_middleware.config import settings
from fic_middleware.models.cloudevents import WebhookJob
from fic_middleware.utils.exceptions import QueueException
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)

# SQS caps a single receive at 10 messages
MAX_RECEIVE = 10


def _queue_error(action: str, error: Exception, queue_url: str) -> QueueException:
    if isinstance(error, ClientError):
        reason = error.response.get("Error", {}).get("Code", "Unknown")
    else:
        reason = type(error).__name__
    logger.error(
        f"Job queue {action} failed: {reason}",
        extra={"queue_url": queue_url, "error": str(error)},
    )
    return QueueException(f"Failed to {action}: {reason}", details={"error": str(error)})


class SQSService:
    """Job queue bound to one SQS queue URL"""

    def __init__(self, queue_url: Optional[str] = None, session: Optional[aioboto3.Session] = None):
        self.session = session or aioboto3.Session(
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )
        self.queue_url = queue_url or settings.sqs_queue_url
        self.endpoint_url = settings.aws_endpoint_url if not settings.is_lambda else None

    def _client(self):
        return self.session.client("sqs", endpoint_url=self.endpoint_url)

    async def send_job(self, job: WebhookJob) -> str:
        """
        Queue a webhook job.

        The event type and account id are copied into message attributes so
        they can be filtered on without parsing the body.

        Returns:
            The SQS message id
        """
        attributes = {
            "event_type": {"DataType": "String", "StringValue": job.event},
            "account_id": {"DataType": "String", "StringValue": job.account_id},
        }
        try:
            async with self._client() as sqs:
                response = await sqs.send_message(
                    QueueUrl=self.queue_url,
                    MessageBody=json.dumps(job.to_message()),
                    MessageAttributes=attributes,
                )
        except (ClientError, BotoCoreError) as e:
            raise _queue_error("queue job", e, self.queue_url)

        message_id = response.get("MessageId")
        logger.info(
            "Webhook job queued",
            extra={"message_id": message_id, "account_id": job.account_id, "event_type": job.event},
        )
        return message_id

    async def receive(
        self,
        max_messages: int = 1,
        visibility_timeout: Optional[int] = None,
        wait_time_seconds: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Long-poll for up to ``max_messages`` job messages."""
        params: Dict[str, Any] = {
            "QueueUrl": self.queue_url,
            "MaxNumberOfMessages": min(max_messages, MAX_RECEIVE),
            "WaitTimeSeconds": settings.sqs_wait_time_seconds if wait_time_seconds is None else wait_time_seconds,
            "MessageAttributeNames": ["All"],
        }
        if visibility_timeout:
            params["VisibilityTimeout"] = visibility_timeout

        try:
            async with self._client() as sqs:
                response = await sqs.receive_message(**params)
        except (ClientError, BotoCoreError) as e:
            raise _queue_error("receive jobs", e, self.queue_url)

        messages = response.get("Messages", [])
        logger.debug("Jobs received", extra={"record_count": len(messages)})
        return messages

    async def delete(self, receipt_handle: str) -> None:
        """Acknowledge a handled job."""
        try:
            async with self._client() as sqs:
                await sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
        except (ClientError, BotoCoreError) as e:
            raise _queue_error("acknowledge job", e, self.queue_url)

    async def approximate_depth(self) -> int:
        """Jobs waiting in the queue, reported by the readiness check."""
        try:
            async with self._client() as sqs:
                response = await sqs.get_queue_attributes(
                    QueueUrl=self.queue_url,
                    AttributeNames=["ApproximateNumberOfMessages"],
                )
        except (ClientError, BotoCoreError) as e:
            raise _queue_error("read queue depth", e, self.queue_url)

        return int(response.get("Attributes", {}).get("ApproximateNumberOfMessages", 0))
