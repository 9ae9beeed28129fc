"""
Test Fatture in Cloud Webhook Endpoint

Tests the verification challenge, CloudEvents ingestion, JWT checks,
subscription routing and per-IP rate limiting.
"""

import json
from unittest.mock import AsyncMock

import pytest
from starlette.requests import Request

from fic_middleware.models.records import EventStatus
from fic_middleware.routes.dependencies import client_ip
from fic_middleware.services.event_store import build_dedup_key
from fic_middleware.utils.exceptions import QueueException
from tests.factories import ACCOUNT_ID, CLIENT_CREATE, COMPANY_ID, INVOICE_UPDATE

WEBHOOK_URL = f"/webhooks/{ACCOUNT_ID}/entity"


@pytest.mark.asyncio
async def test_challenge_is_echoed_from_header(async_client):
    """GET answers the subscription verification challenge"""
    response = await async_client.get(
        WEBHOOK_URL, headers={"x-fic-verification-challenge": "challenge-123"}
    )

    assert response.status_code == 200
    assert response.json() == {"verification": "challenge-123"}


@pytest.mark.asyncio
async def test_challenge_is_read_from_query_string(async_client):
    response = await async_client.get(
        WEBHOOK_URL, params={"x-fic-verification-challenge": "from-query"}
    )

    assert response.status_code == 200
    assert response.json() == {"verification": "from-query"}


@pytest.mark.asyncio
async def test_challenge_missing(async_client):
    response = await async_client.get(WEBHOOK_URL)

    assert response.status_code == 400
    assert response.json() == {"error": "Missing verification challenge"}


@pytest.mark.asyncio
async def test_valid_delivery_is_queued(
    async_client, container, entity_subscription, cloudevent, mock_sqs_service
):
    """A signed delivery is recorded as pending and queued, then acknowledged"""
    response = await async_client.post(WEBHOOK_URL, **cloudevent(ids=[123]))

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "message": "Webhook queued for processing"}

    mock_sqs_service.send_job.assert_called_once()
    message = mock_sqs_service.send_job.call_args.args[0].to_message()
    assert message["event"] == CLIENT_CREATE
    assert message["account_id"] == ACCOUNT_ID
    assert message["event_group"] == "entity"
    assert message["ce_id"] == "evt-0001"
    assert message["subject"] == f"company:{COMPANY_ID}"
    assert message["data"] == {"ids": [123]}

    event = await container.events.get(build_dedup_key(ACCOUNT_ID, 123, CLIENT_CREATE, ce_id="evt-0001"))
    assert event is not None
    assert event.status == EventStatus.PENDING
    assert event.resource_type == "client"


@pytest.mark.asyncio
async def test_observer_failure_does_not_affect_response(async_client, container, entity_subscription, cloudevent):
    container.ingestion.observer = AsyncMock(side_effect=RuntimeError("push channel down"))

    response = await async_client.post(WEBHOOK_URL, **cloudevent(ids=[123]))

    assert response.status_code == 202
    job = container.ingestion.observer.await_args.args[0]
    assert job.resource_ids == [123]
    assert await container.events.get(build_dedup_key(ACCOUNT_ID, 123, CLIENT_CREATE, ce_id="evt-0001")) is not None


@pytest.mark.asyncio
async def test_redelivery_does_not_duplicate_events(
    async_client, container, entity_subscription, cloudevent, fake_clock
):
    delivery = cloudevent(ids=[123, 456])

    first = await async_client.post(WEBHOOK_URL, **delivery)
    fake_clock.advance(1)
    second = await async_client.post(WEBHOOK_URL, **delivery)

    assert first.status_code == 202
    assert second.status_code == 202

    events = await container.events.list_for_account(ACCOUNT_ID)
    assert sorted(e.fic_resource_id for e in events) == [123, 456]


@pytest.mark.asyncio
async def test_empty_ids_rejected(async_client, entity_subscription, cloudevent, mock_sqs_service):
    response = await async_client.post(WEBHOOK_URL, **cloudevent(ids=[]))

    assert response.status_code == 400
    assert response.json() == {"error": "Empty IDs array in payload"}
    mock_sqs_service.send_job.assert_not_called()


@pytest.mark.asyncio
async def test_non_integer_ids_rejected(async_client, entity_subscription, cloudevent):
    response = await async_client.post(WEBHOOK_URL, **cloudevent(ids=["not-a-number"]))

    assert response.status_code == 400
    assert response.json() == {"error": "data.ids must contain integers"}


@pytest.mark.asyncio
async def test_fractional_ids_rejected(async_client, container, entity_subscription, cloudevent, mock_sqs_service):
    response = await async_client.post(WEBHOOK_URL, **cloudevent(ids=[1.5]))

    assert response.status_code == 400
    assert response.json() == {"error": "data.ids must contain integers"}
    assert await container.events.list_for_account(ACCOUNT_ID) == []
    mock_sqs_service.send_job.assert_not_called()


@pytest.mark.asyncio
async def test_missing_type_rejected_before_subscription_lookup(async_client, cloudevent):
    """No subscription exists, yet the decode error wins"""
    delivery = cloudevent()
    del delivery["headers"]["ce-type"]

    response = await async_client.post(WEBHOOK_URL, **delivery)

    assert response.status_code == 400
    assert response.json() == {"error": "Missing required CloudEvents type attribute"}


@pytest.mark.asyncio
async def test_invalid_json_rejected(async_client, entity_subscription, cloudevent):
    delivery = cloudevent()
    delivery["content"] = "{not json"

    response = await async_client.post(WEBHOOK_URL, **delivery)

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON payload"}


@pytest.mark.asyncio
async def test_missing_authorization_header(async_client, entity_subscription, cloudevent):
    response = await async_client.post(WEBHOOK_URL, **cloudevent(sign=False))

    assert response.status_code == 401
    assert response.json() == {"error": "Missing Authorization header"}


@pytest.mark.asyncio
async def test_non_bearer_authorization_header(async_client, entity_subscription, cloudevent):
    delivery = cloudevent()
    delivery["headers"]["Authorization"] = "Basic dXNlcjpwYXNz"

    response = await async_client.post(WEBHOOK_URL, **delivery)

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid Authorization header format"}


@pytest.mark.asyncio
async def test_token_bound_to_another_event(
    async_client, entity_subscription, cloudevent, sign_token, mock_sqs_service
):
    """A valid signature is not enough: jti must match the CloudEvents id"""
    token = sign_token(jti="evt-9999", sub=f"company:{COMPANY_ID}")

    response = await async_client.post(WEBHOOK_URL, **cloudevent(token=token))

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid JWT token"}
    mock_sqs_service.send_job.assert_not_called()


@pytest.mark.asyncio
async def test_expired_token_rejected(async_client, entity_subscription, cloudevent, sign_token, fake_clock):
    token = sign_token(
        jti="evt-0001",
        sub=f"company:{COMPANY_ID}",
        iat=int(fake_clock.now) - 600,
        exp=int(fake_clock.now) - 300,
    )

    response = await async_client.post(WEBHOOK_URL, **cloudevent(token=token))

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unknown_subscription(async_client, cloudevent):
    response = await async_client.post(
        f"/webhooks/{ACCOUNT_ID}/issued_documents", **cloudevent(event_type=INVOICE_UPDATE)
    )

    assert response.status_code == 404
    assert response.json() == {"error": "Subscription not found or inactive"}


@pytest.mark.asyncio
async def test_inactive_subscription(async_client, container, entity_subscription, cloudevent):
    await container.subscriptions.deactivate(ACCOUNT_ID, "entity")

    response = await async_client.post(WEBHOOK_URL, **cloudevent())

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_stale_route_group_falls_back_to_inferred_group(
    async_client, entity_subscription, cloudevent, mock_sqs_service
):
    """A sink registered under an old group still reaches the entity subscription"""
    response = await async_client.post(f"/webhooks/{ACCOUNT_ID}/default", **cloudevent())

    assert response.status_code == 202
    message = mock_sqs_service.send_job.call_args.args[0].to_message()
    assert message["event_group"] == "entity"


@pytest.mark.asyncio
async def test_structured_mode_delivery(
    async_client, entity_subscription, sign_token, fake_clock, mock_sqs_service
):
    body = {
        "specversion": "1.0",
        "type": CLIENT_CREATE,
        "id": "evt-structured",
        "subject": f"company:{COMPANY_ID}",
        "source": "https://api-v2.fattureincloud.it",
        "time": fake_clock.datetime().isoformat(),
        "data": {"ids": [7, 8]},
    }
    token = sign_token(jti="evt-structured", sub=f"company:{COMPANY_ID}")

    response = await async_client.post(
        WEBHOOK_URL,
        content=json.dumps(body),
        headers={
            "Content-Type": "application/cloudevents+json; charset=utf-8",
            "Authorization": f"Bearer {token}",
        },
    )

    assert response.status_code == 202
    message = mock_sqs_service.send_job.call_args.args[0].to_message()
    assert message["ce_id"] == "evt-structured"
    assert message["data"] == {"ids": [7, 8]}


@pytest.mark.asyncio
async def test_queue_failure_returns_500(async_client, entity_subscription, cloudevent, mock_sqs_service):
    mock_sqs_service.send_job.side_effect = QueueException("Failed to queue job: Throttling")

    response = await async_client.post(WEBHOOK_URL, **cloudevent())

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to queue webhook"}


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["PUT", "PATCH", "DELETE"])
async def test_other_methods_not_allowed(async_client, method):
    response = await async_client.request(method, WEBHOOK_URL)

    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed"}


@pytest.mark.asyncio
async def test_rate_limit_per_client_ip(async_client, fake_clock):
    headers = {"x-fic-verification-challenge": "c"}

    first = await async_client.get(WEBHOOK_URL, headers=headers)
    second = await async_client.get(WEBHOOK_URL, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json() == {"error": "Too many requests"}
    assert second.headers["Retry-After"] == "1"

    # A forged X-Forwarded-For does not buy a fresh budget
    for spoofed in ("10.0.0.1", "10.0.0.2"):
        other = await async_client.get(WEBHOOK_URL, headers={**headers, "X-Forwarded-For": spoofed})
        assert other.status_code == 429

    fake_clock.advance(1)
    third = await async_client.get(WEBHOOK_URL, headers=headers)
    assert third.status_code == 200


@pytest.mark.asyncio
async def test_rate_limit_applies_before_validation(async_client):
    """Even rejected requests spend the budget"""
    await async_client.put(WEBHOOK_URL)

    response = await async_client.get(WEBHOOK_URL, headers={"x-fic-verification-challenge": "c"})

    assert response.status_code == 429


def _request(forwarded=None):
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers, "client": ("192.0.2.10", 5000)})


def test_client_ip_ignores_forwarded_header_by_default(test_settings):
    assert client_ip(_request("10.0.0.1"), test_settings) == "192.0.2.10"


def test_client_ip_behind_trusted_proxy_uses_appended_hop(test_settings):
    proxied = test_settings.model_copy(update={"trust_forwarded_for": True})

    assert client_ip(_request("10.0.0.1, 198.51.100.7"), proxied) == "198.51.100.7"
    assert client_ip(_request(), proxied) == "192.0.2.10"


@pytest.mark.asyncio
async def test_token_with_non_numeric_expiry_is_unauthorized(
    async_client, entity_subscription, cloudevent, sign_token, mock_sqs_service
):
    token = sign_token(jti="evt-0001", sub=f"company:{COMPANY_ID}", exp="never")

    response = await async_client.post(WEBHOOK_URL, **cloudevent(token=token))

    assert response.status_code == 401
    mock_sqs_service.send_job.assert_not_called()
