"""
Fatture in Cloud API Client

Thin wrapper over the REST API v2 for the calls the middleware needs:
webhook subscriptions (create, renew, list, get) and resources (fetch by
id, list pages).

The client never retries. Failures are surfaced as:
- ProviderRateLimitException (429, with the Retry-After hint)
- ProviderAuthException (401)
- ProviderAPIException (any other 4xx/5xx, or a transport failure)
"""

from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from fic_middleware.config import FIC_API_BASE_URL
from fic_middleware.models.resources import RESOURCE_PATHS, ResourceType
from fic_middleware.utils.exceptions import (
    ProviderAPIException,
    ProviderAuthException,
    ProviderRateLimitException,
)
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_RETRY_AFTER = 60


class SubscriptionResult(BaseModel):
    """Subscription as returned by the provider"""

    id: str
    secret: Optional[str] = Field(None, repr=False)
    expires_at: Optional[datetime] = None
    verified: bool = False
    sink: Optional[str] = None
    types: List[str] = Field(default_factory=list)

    @classmethod
    def from_response(cls, data: Dict[str, Any], fallback_id: Optional[str] = None) -> "SubscriptionResult":
        return cls(
            id=str(data.get("id") or fallback_id),
            secret=data.get("secret") or data.get("verification_token"),
            expires_at=data.get("expires_at"),
            verified=bool(data.get("verified", False)),
            sink=data.get("sink"),
            types=data.get("types") or [],
        )


def _retry_after(response: httpx.Response) -> int:
    value = response.headers.get("Retry-After")
    try:
        return int(value) if value else DEFAULT_RETRY_AFTER
    except ValueError:
        return DEFAULT_RETRY_AFTER


class FicApiClient:
    """
    API client bound to an injected ``httpx.AsyncClient``.

    Every call takes the company id and access token explicitly; the client
    holds no credentials of its own.
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str = FIC_API_BASE_URL):
        self.http = http_client
        self.base_url = base_url.rstrip("/")

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

        try:
            response = await self.http.request(
                method, url, headers=headers, json=json_data, params=params
            )
        except httpx.RequestError as e:
            logger.error(
                f"Fatture in Cloud request failed: {e}",
                extra={"method": method, "path": path, "error_type": type(e).__name__},
            )
            raise ProviderAPIException(f"Request to Fatture in Cloud failed: {e}")

        if response.status_code == 429:
            retry_after = _retry_after(response)
            logger.warning(
                "Fatture in Cloud rate limit hit",
                extra={"method": method, "path": path, "retry_after": retry_after},
            )
            raise ProviderRateLimitException(retry_after=retry_after, body=response.text)

        if response.status_code == 401:
            logger.warning(
                "Fatture in Cloud rejected the access token",
                extra={"method": method, "path": path},
            )
            raise ProviderAuthException(body=response.text)

        if response.status_code >= 400:
            message = response.text
            try:
                error = response.json().get("error")
                if isinstance(error, dict):
                    message = error.get("message") or message
                elif error:
                    message = str(error)
            except (ValueError, AttributeError):
                pass
            logger.error(
                f"Fatture in Cloud returned HTTP {response.status_code}",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            raise ProviderAPIException(
                f"Fatture in Cloud returned HTTP {response.status_code}: {message}",
                status_code=response.status_code,
                body=response.text,
            )

        if not response.content:
            return {}
        return response.json()

    # Subscriptions

    @staticmethod
    def _subscription_payload(
        sink: str,
        types: Optional[List[str]],
        verification_method: str = "header",
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "sink": sink,
            "verification_method": verification_method,
            "config": {"mapping": "binary"},
        }
        if types:
            data["types"] = list(types)
        return {"data": data}

    async def create_subscription(
        self,
        company_id: int,
        access_token: str,
        sink: str,
        types: List[str],
        verification_method: str = "header",
    ) -> SubscriptionResult:
        response = await self._request(
            "POST",
            f"/c/{company_id}/subscriptions",
            access_token,
            json_data=self._subscription_payload(sink, types, verification_method),
        )
        result = SubscriptionResult.from_response(response.get("data") or response)
        logger.info(
            "Subscription created upstream",
            extra={"company_id": company_id, "subscription_id": result.id, "types": types},
        )
        return result

    async def renew_subscription(
        self,
        company_id: int,
        access_token: str,
        subscription_id: str,
        sink: str,
        types: Optional[List[str]] = None,
    ) -> SubscriptionResult:
        """Renewing re-submits the subscription, which extends its expiry."""
        response = await self._request(
            "PUT",
            f"/c/{company_id}/subscriptions/{subscription_id}",
            access_token,
            json_data=self._subscription_payload(sink, types),
        )
        return SubscriptionResult.from_response(response.get("data") or response, fallback_id=subscription_id)

    async def get_subscription(
        self, company_id: int, access_token: str, subscription_id: str
    ) -> SubscriptionResult:
        response = await self._request(
            "GET", f"/c/{company_id}/subscriptions/{subscription_id}", access_token
        )
        return SubscriptionResult.from_response(response.get("data") or response, fallback_id=subscription_id)

    async def list_subscriptions(self, company_id: int, access_token: str) -> List[SubscriptionResult]:
        response = await self._request("GET", f"/c/{company_id}/subscriptions", access_token)
        return [SubscriptionResult.from_response(item) for item in response.get("data") or []]

    # Resources

    async def fetch_resource(
        self,
        company_id: int,
        access_token: str,
        resource_type: ResourceType,
        resource_id: int,
    ) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            f"/c/{company_id}/{RESOURCE_PATHS[resource_type]}/{resource_id}",
            access_token,
        )
        data = response.get("data")
        if not isinstance(data, dict) or data.get("id") is None:
            raise ProviderAPIException(
                f"Fatture in Cloud returned no {resource_type.value} {resource_id}",
                status_code=200,
                details={"resource_type": resource_type.value, "fic_id": resource_id},
            )
        return data

    async def list_resources(
        self,
        company_id: int,
        access_token: str,
        resource_type: ResourceType,
        page: int = 1,
        per_page: int = 50,
    ) -> Dict[str, Any]:
        """One page of resources, with the provider's pagination fields."""
        params = {"page": page, "per_page": per_page}
        return await self._request(
            "GET",
            f"/c/{company_id}/{RESOURCE_PATHS[resource_type]}",
            access_token,
            params=params,
        )

    async def iter_resources(
        self,
        company_id: int,
        access_token: str,
        resource_type: ResourceType,
        per_page: int = 50,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Walk every page of a resource list."""
        page = 1
        while True:
            response = await self.list_resources(
                company_id, access_token, resource_type, page=page, per_page=per_page
            )
            for item in response.get("data") or []:
                yield item

            last_page = response.get("last_page") or page
            if page >= last_page:
                break
            page += 1
