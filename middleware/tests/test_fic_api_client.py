"""
Tests for the Fatture in Cloud API client over a mocked HTTP transport.
"""

import json

import httpx
import pytest

from fic_middleware.models.resources import ResourceType
from fic_middleware.services.fic_api_client import FicApiClient
from fic_middleware.utils.exceptions import (
    ProviderAPIException,
    ProviderAuthException,
    ProviderRateLimitException,
)
from tests.factories import ACCESS_TOKEN, COMPANY_ID, FicApiStub

CLIENT_PATH = f"/c/{COMPANY_ID}/entities/clients/123"


@pytest.fixture
async def api():
    stub = FicApiStub()
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        yield stub, FicApiClient(http_client)


@pytest.mark.asyncio
async def test_fetch_resource_sends_bearer_token(api):
    stub, client = api
    stub.add("GET", CLIENT_PATH, json={"data": {"id": 123, "name": "Mario Rossi"}})

    data = await client.fetch_resource(COMPANY_ID, ACCESS_TOKEN, ResourceType.CLIENT, 123)

    assert data == {"id": 123, "name": "Mario Rossi"}
    request = stub.requests[0]
    assert request.headers["Authorization"] == f"Bearer {ACCESS_TOKEN}"
    assert str(request.url) == f"https://api-v2.fattureincloud.it{CLIENT_PATH}"


@pytest.mark.asyncio
async def test_rate_limited_call_reports_retry_after(api):
    stub, client = api
    stub.add("GET", CLIENT_PATH, status_code=429, json={}, headers={"Retry-After": "17"})

    with pytest.raises(ProviderRateLimitException) as exc_info:
        await client.fetch_resource(COMPANY_ID, ACCESS_TOKEN, ResourceType.CLIENT, 123)

    assert exc_info.value.retry_after == 17
    assert exc_info.value.message == "Rate limit exceeded. Please retry after 17 seconds."
    assert exc_info.value.is_transient


@pytest.mark.asyncio
async def test_rate_limit_defaults_to_sixty_seconds(api):
    stub, client = api
    stub.add("GET", CLIENT_PATH, status_code=429, json={})

    with pytest.raises(ProviderRateLimitException) as exc_info:
        await client.fetch_resource(COMPANY_ID, ACCESS_TOKEN, ResourceType.CLIENT, 123)

    assert exc_info.value.retry_after == 60


@pytest.mark.asyncio
async def test_unauthorized(api):
    stub, client = api
    stub.add("GET", CLIENT_PATH, status_code=401, json={"error": {"message": "invalid token"}})

    with pytest.raises(ProviderAuthException) as exc_info:
        await client.fetch_resource(COMPANY_ID, ACCESS_TOKEN, ResourceType.CLIENT, 123)

    assert exc_info.value.message == "Access token expired or invalid"
    assert not exc_info.value.is_transient


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, transient", [(500, True), (503, True), (404, False), (422, False)])
async def test_http_errors(api, status_code, transient):
    stub, client = api
    stub.add("GET", CLIENT_PATH, status_code=status_code, json={"error": {"message": "upstream says no"}})

    with pytest.raises(ProviderAPIException) as exc_info:
        await client.fetch_resource(COMPANY_ID, ACCESS_TOKEN, ResourceType.CLIENT, 123)

    assert exc_info.value.status_code == status_code
    assert exc_info.value.is_transient is transient
    assert "upstream says no" in exc_info.value.message


@pytest.mark.asyncio
async def test_transport_failure_is_transient(api):
    stub, client = api
    stub.add("GET", CLIENT_PATH, error=httpx.ConnectError("connection refused"))

    with pytest.raises(ProviderAPIException) as exc_info:
        await client.fetch_resource(COMPANY_ID, ACCESS_TOKEN, ResourceType.CLIENT, 123)

    assert exc_info.value.status_code is None
    assert exc_info.value.is_transient


@pytest.mark.asyncio
async def test_create_subscription_payload(api):
    stub, client = api
    stub.add(
        "POST",
        f"/c/{COMPANY_ID}/subscriptions",
        json={"data": {"id": "SUB-1", "verification_token": "tok", "verified": False}},
    )

    result = await client.create_subscription(
        COMPANY_ID,
        ACCESS_TOKEN,
        sink="https://hooks.example.com/webhooks/42/entity",
        types=["it.fattureincloud.webhooks.entities.clients.create"],
    )

    assert result.id == "SUB-1"
    assert result.secret == "tok"
    sent = json.loads(stub.requests[0].content)
    assert sent == {
        "data": {
            "sink": "https://hooks.example.com/webhooks/42/entity",
            "verification_method": "header",
            "config": {"mapping": "binary"},
            "types": ["it.fattureincloud.webhooks.entities.clients.create"],
        }
    }


@pytest.mark.asyncio
async def test_renew_subscription_keeps_id_when_response_omits_it(api):
    stub, client = api
    stub.add("PUT", f"/c/{COMPANY_ID}/subscriptions/SUB-1", json={"data": {"expires_at": "2026-03-01T00:00:00Z"}})

    result = await client.renew_subscription(
        COMPANY_ID, ACCESS_TOKEN, "SUB-1", sink="https://hooks.example.com/webhooks/42/entity"
    )

    assert result.id == "SUB-1"
    assert result.expires_at.year == 2026
    assert "types" not in json.loads(stub.requests[0].content)["data"]


@pytest.mark.asyncio
async def test_iter_resources_walks_every_page(api):
    stub, client = api
    path = f"/c/{COMPANY_ID}/entities/suppliers"
    stub.add("GET", path, json={"data": [{"id": 1}, {"id": 2}], "current_page": 1, "last_page": 2})
    stub.add("GET", path, json={"data": [{"id": 3}], "current_page": 2, "last_page": 2})

    ids = [item["id"] async for item in client.iter_resources(COMPANY_ID, ACCESS_TOKEN, ResourceType.SUPPLIER)]

    assert ids == [1, 2, 3]
    assert [r.url.params["page"] for r in stub.requests] == ["1", "2"]


@pytest.mark.asyncio
async def test_get_subscription(api):
    stub, client = api
    stub.add(
        "GET",
        f"/c/{COMPANY_ID}/subscriptions/SUB-1",
        json={"data": {"id": "SUB-1", "verified": True, "sink": "https://hooks.example.com/webhooks/42/entity"}},
    )

    result = await client.get_subscription(COMPANY_ID, ACCESS_TOKEN, "SUB-1")

    assert result.verified is True
    assert result.sink.endswith("/webhooks/42/entity")
    assert result.types == []


@pytest.mark.asyncio
async def test_fetch_resource_without_payload_is_a_permanent_error(api):
    stub, client = api
    stub.add("GET", CLIENT_PATH, json={"data": {}})

    with pytest.raises(ProviderAPIException) as exc_info:
        await client.fetch_resource(COMPANY_ID, ACCESS_TOKEN, ResourceType.CLIENT, 123)

    assert exc_info.value.message == "Fatture in Cloud returned no client 123"
    assert not exc_info.value.is_transient
