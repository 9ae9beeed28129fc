"""
Health Check and Monitoring Endpoints

Liveness plus a readiness check over the DynamoDB tables and the job queue.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from fic_middleware.container import ServiceContainer
from fic_middleware.routes.dependencies import get_container
from fic_middleware.utils.exceptions import QueueException
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(container: ServiceContainer = Depends(get_container)):
    """
    Basic health check endpoint.
    Returns 200 if application is running.
    """
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": container.settings.app_version,
        },
    )


@router.get("/health/ready")
async def readiness_check(container: ServiceContainer = Depends(get_container)):
    """
    Readiness check endpoint.
    Verifies every DynamoDB table and the SQS job queue are reachable.
    """
    settings = container.settings
    dependencies: Dict[str, Any] = {}
    overall_healthy = True

    tables = {
        "accounts": settings.dynamodb_accounts_table,
        "subscriptions": settings.dynamodb_subscriptions_table,
        "events": settings.dynamodb_events_table,
        "resources": settings.dynamodb_resources_table,
        "rate_limits": settings.dynamodb_rate_limit_table,
    }
    for name, table_name in tables.items():
        try:
            info = await container.dynamodb.describe_table(table_name)
            dependencies[f"dynamodb_{name}"] = {"status": "healthy", **info}
        except (ClientError, BotoCoreError) as e:
            dependencies[f"dynamodb_{name}"] = {"status": "unhealthy", "table_name": table_name, "error": str(e)}
            overall_healthy = False

    try:
        depth = await container.queue.approximate_depth()
        dependencies["sqs_job_queue"] = {"status": "healthy", "approximate_messages": depth}
    except QueueException as e:
        dependencies["sqs_job_queue"] = {"status": "unhealthy", "error": e.message}
        overall_healthy = False

    dependencies["webhook_verification"] = {
        "status": "healthy" if container.verifier.is_configured or not settings.fic_webhook_verify_jwt else "degraded",
        "verify_jwt": settings.fic_webhook_verify_jwt,
        "public_key_configured": container.verifier.is_configured,
    }

    if not overall_healthy:
        logger.warning("Readiness check failed", extra={"dependencies": dependencies})

    return JSONResponse(
        status_code=200 if overall_healthy else 503,
        content={
            "status": "ready" if overall_healthy else "not_ready",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dependencies": dependencies,
        },
    )
