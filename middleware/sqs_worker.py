"""
SQS Worker

Consumes webhook jobs queued by the API and runs them through the
WebhookProcessor. Two ways to run it:

1. As a Lambda SQS trigger (``lambda_handler``), reporting partial batch
   failures so only broken messages are redelivered
2. As a long-polling process (``python sqs_worker.py``)

Job-level failures are recorded by the processor itself and the message is
acknowledged; only unexpected errors leave a message on the queue.
"""

import asyncio
import json
import os
import signal
from typing import Any, Dict, List, Optional

from fic_middleware.config import settings
from fic_middleware.container import ServiceContainer
from fic_middleware.handlers.webhook_processor import ProcessingResult
from fic_middleware.models.cloudevents import WebhookJob
from fic_middleware.utils.logging_config import get_logger, set_correlation_id, setup_logging

setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = get_logger(__name__)


async def process_message(container: ServiceContainer, body: str) -> ProcessingResult:
    """
    Process a single queued job.

    Args:
        body: Raw SQS message body (JSON job payload)
    """
    job = WebhookJob.from_message(json.loads(body))
    set_correlation_id(job.ce_id)

    logger.info(
        "Processing webhook job",
        extra={"event": job.event, "account_id": job.account_id, "ids_count": len(job.resource_ids)},
    )
    return await container.processor.process(job)


async def process_sqs_records(
    records: List[Dict[str, Any]],
    container: Optional[ServiceContainer] = None,
) -> Dict[str, Any]:
    """
    Process multiple SQS records (batch processing).

    Returns:
        Batch processing results
    """
    owns_container = container is None
    container = container or ServiceContainer.from_settings(settings)

    results: Dict[str, Any] = {
        "successful": [],
        "failed": [],
        "total": len(records),
    }

    try:
        for record in records:
            try:
                result = await process_message(container, record["body"])
                results["successful"].append(
                    {"message_id": record["messageId"], "status": result.status.value}
                )
            except Exception as e:
                logger.error(
                    f"Failed to process SQS record: {e}",
                    extra={
                        "message_id": record.get("messageId"),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                results["failed"].append(
                    {
                        "message_id": record["messageId"],
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
    finally:
        if owns_container:
            await container.aclose()

    logger.info(
        "Batch processing complete",
        extra={
            "total": results["total"],
            "successful": len(results["successful"]),
            "failed": len(results["failed"]),
        },
    )

    return results


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    AWS Lambda handler for SQS-triggered job processing.

    The function's SQS visibility timeout must cover a job's worst case:
    attempts * per-attempt timeout + backoffs between attempts.

    Returns:
        Processing results and any failed message IDs (for partial batch failures)
    """
    records = event.get("Records", [])
    logger.info(
        "SQS Worker Lambda invoked",
        extra={
            "request_id": getattr(context, "aws_request_id", None),
            "record_count": len(records),
        },
    )

    if not records:
        logger.warning("No SQS records found in event")
        return {"batchItemFailures": []}

    results = asyncio.run(process_sqs_records(records))

    failures = [{"itemIdentifier": f["message_id"]} for f in results["failed"]]
    if failures:
        logger.warning(
            "Partial batch failure",
            extra={"failed_count": len(failures)},
        )

    return {"batchItemFailures": failures}


async def run_polling_worker(
    container: Optional[ServiceContainer] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Long-poll the queue until ``stop_event`` is set."""
    owns_container = container is None
    container = container or ServiceContainer.from_settings(settings)
    stop_event = stop_event or asyncio.Event()

    logger.info("SQS polling worker started", extra={"queue_url": container.queue.queue_url})

    try:
        while not stop_event.is_set():
            messages = await container.queue.receive(
                max_messages=container.settings.sqs_max_messages,
                visibility_timeout=container.settings.sqs_visibility_timeout,
            )
            for message in messages:
                try:
                    await process_message(container, message["Body"])
                except Exception as e:
                    # Left on the queue; redelivered after the visibility timeout
                    logger.error(
                        f"Failed to process message: {e}",
                        extra={"message_id": message.get("MessageId"), "error_type": type(e).__name__},
                    )
                    continue
                await container.queue.delete(message["ReceiptHandle"])
    finally:
        if owns_container:
            await container.aclose()
        logger.info("SQS polling worker stopped")


async def _main() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    await run_polling_worker(stop_event=stop_event)


if __name__ == "__main__":
    asyncio.run(_main())
