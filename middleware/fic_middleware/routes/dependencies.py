"""
Route Dependencies

FastAPI dependencies shared by the routers.
"""

import hmac
from typing import Optional

from fastapi import Header, Request

from fic_middleware.config import Settings, settings
from fic_middleware.container import ServiceContainer
from fic_middleware.utils.exceptions import AdminAuthException


def get_container(request: Request) -> ServiceContainer:
    """The app's service container, built on first use when lifespan is off (Lambda)"""
    container = getattr(request.app.state, "container", None)
    if container is None:
        container = ServiceContainer.from_settings(settings)
        request.app.state.container = container
    return container


def client_ip(request: Request, app_settings: Settings) -> str:
    """
    Source address used for rate limiting.

    With ``trust_forwarded_for`` the right-most X-Forwarded-For entry is
    used: it is the one appended by the proxy, the others come from the
    caller.
    """
    if app_settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
            if hops:
                return hops[-1]
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def require_admin_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
) -> None:
    expected = get_container(request).settings.admin_api_key
    if not expected or not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise AdminAuthException()
