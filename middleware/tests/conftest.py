"""
Pytest Configuration and Fixtures

Provides common fixtures and test utilities for middleware tests: mocked
DynamoDB tables, an ES256 signing key, a stubbed Fatture in Cloud API and a
fully wired service container.
"""

import os

# Settings are loaded at import time; configure the environment first
os.environ["ENVIRONMENT"] = "development"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["AWS_REGION"] = "us-east-1"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["SQS_QUEUE_URL"] = "https://sqs.us-east-1.amazonaws.com/123456789012/fic-webhook-jobs"

import base64
import json
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jose import jwt
from moto import mock_aws

from fic_middleware.config import FIC_API_BASE_URL, Settings
from fic_middleware.container import ServiceContainer
from fic_middleware.models.records import ProviderAccount
from fic_middleware.services.dynamodb_service import DynamoDBService
from tests.factories import (
    ACCESS_TOKEN,
    ACCOUNT_ID,
    ADMIN_API_KEY,
    CLIENT_CREATE,
    COMPANY_ID,
    QUEUE_URL,
    REGION,
    WEBHOOK_BASE_URL,
    FakeClock,
    FicApiStub,
    create_tables,
)


@pytest.fixture
def signing_key() -> Dict[str, str]:
    """Fresh P-256 key pair; the public half base64-encoded like the env var"""
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return {
        "private_pem": private_pem,
        "public_pem": public_pem,
        "public_b64": base64.b64encode(public_pem.encode("utf-8")).decode("ascii"),
    }


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sign_token(signing_key, fake_clock) -> Callable[..., str]:
    """Factory for provider-style webhook JWTs; keyword arguments override claims"""

    def _sign(private_pem: Optional[str] = None, **claims: Any) -> str:
        payload = {
            "iss": FIC_API_BASE_URL,
            "iat": int(fake_clock.now),
            "exp": int(fake_clock.now) + 300,
        }
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, private_pem or signing_key["private_pem"], algorithm="ES256")

    return _sign


@pytest.fixture
def cloudevent(sign_token, fake_clock) -> Callable[..., Dict[str, Any]]:
    """
    Factory for a binary-mode delivery: returns {"headers": ..., "content": ...}
    ready to pass to the test client.
    """

    def _build(
        event_type: str = CLIENT_CREATE,
        ids: Optional[List[Any]] = None,
        ce_id: Optional[str] = "evt-0001",
        subject: Optional[str] = f"company:{COMPANY_ID}",
        token: Optional[str] = None,
        sign: bool = True,
    ) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "ce-type": event_type,
            "ce-time": fake_clock.datetime().isoformat(),
            "ce-source": "https://api-v2.fattureincloud.it",
            "ce-specversion": "1.0",
        }
        if ce_id is not None:
            headers["ce-id"] = ce_id
        if subject is not None:
            headers["ce-subject"] = subject
        if sign:
            headers["Authorization"] = f"Bearer {token or sign_token(jti=ce_id, sub=subject)}"

        body = {"data": {"ids": [123] if ids is None else ids}}
        return {"headers": headers, "content": json.dumps(body)}

    return _build


@pytest.fixture
def test_settings(signing_key) -> Settings:
    return Settings(
        environment="development",
        sqs_queue_url=QUEUE_URL,
        aws_region=REGION,
        fic_webhook_public_key=signing_key["public_b64"],
        webhook_base_url=WEBHOOK_BASE_URL,
        admin_api_key=ADMIN_API_KEY,
        log_level="DEBUG",
    )


@pytest.fixture
def dynamodb_service(test_settings):
    """DynamoDB service backed by moto with every middleware table created"""
    with mock_aws():
        create_tables(test_settings)
        yield DynamoDBService(region_name=REGION)


@pytest.fixture
def mock_sqs_service():
    """Mock job queue"""
    mock = AsyncMock()
    mock.queue_url = QUEUE_URL
    mock.send_job.return_value = "test-message-id"
    mock.approximate_depth.return_value = 0
    return mock


@pytest.fixture
def fic_api() -> FicApiStub:
    return FicApiStub()


@pytest.fixture
def mock_sleep():
    return AsyncMock()


@pytest.fixture
async def container(test_settings, dynamodb_service, mock_sqs_service, fic_api, fake_clock, mock_sleep):
    """Service container wired to moto, the mock queue and the API stub"""
    http_client = httpx.AsyncClient(transport=fic_api.transport)
    container = ServiceContainer(
        test_settings,
        dynamodb=dynamodb_service,
        queue=mock_sqs_service,
        http_client=http_client,
        clock=fake_clock,
        sleep=mock_sleep,
    )
    yield container
    await container.aclose()


@pytest.fixture
async def async_client(container):
    """Async HTTP client for the app, using the injected container"""
    from fic_middleware.main import create_app

    app = create_app(container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def account(container) -> ProviderAccount:
    """Connected account with a usable access token"""
    return await container.accounts.save(
        ProviderAccount(
            account_id=ACCOUNT_ID,
            company_id=COMPANY_ID,
            name="Rossi S.r.l.",
            access_token=ACCESS_TOKEN,
            refresh_token="r/test-refresh-token",
        )
    )


@pytest.fixture
async def entity_subscription(container, fake_clock):
    """Active subscription for the account's entity events"""
    return await container.subscriptions.upsert(
        ACCOUNT_ID,
        "entity",
        external_id="SUB-100",
        secret="sub-secret",
        expires_at=fake_clock.datetime() + timedelta(days=30),
        sink=f"{WEBHOOK_BASE_URL}/webhooks/{ACCOUNT_ID}/entity",
        types=[CLIENT_CREATE],
    )
