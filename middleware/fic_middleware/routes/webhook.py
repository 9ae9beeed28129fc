"""
Fatture in Cloud Webhook Endpoint

Receives subscription verification challenges (GET) and CloudEvents
notifications (POST). The per-IP rate limit runs before anything else.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from fic_middleware.container import ServiceContainer
from fic_middleware.routes.dependencies import client_ip, get_container
from fic_middleware.services.ingestion_service import read_challenge
from fic_middleware.utils.exceptions import MethodNotAllowedException
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.api_route(
    "/{account_id}/{event_group}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
)
async def fic_webhook(
    account_id: str,
    event_group: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    Fatture in Cloud webhook endpoint.

    GET echoes the verification challenge; POST validates the delivery,
    records pending events and queues a job for the worker.

    Returns:
        200 {"verification": "..."} for challenges,
        202 {"status": "accepted", ...} for queued notifications
    """
    await container.rate_limiter.enforce(client_ip(request, container.settings))

    if request.method == "GET":
        challenge = read_challenge(
            request.headers,
            request.query_params,
            header_name=container.settings.webhook_challenge_header,
        )
        logger.info(
            "Webhook verification challenge answered",
            extra={"account_id": account_id, "event_group": event_group},
        )
        return JSONResponse(status_code=200, content={"verification": challenge})

    if request.method != "POST":
        raise MethodNotAllowedException()

    body = await request.body()
    await container.ingestion.ingest(account_id, event_group, request.headers, body)

    return JSONResponse(
        status_code=202,
        content={"status": "accepted", "message": "Webhook queued for processing"},
    )
