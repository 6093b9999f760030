"""Bearer token authentication for FastAPI."""

from __future__ import annotations

from fastapi import Depends, Request

from feedpulse.api.container import ServiceContainer, get_container
from feedpulse.core.constants import BEARER_SCHEME, MSG_UNAUTHORIZED
from feedpulse.core.exceptions import AuthenticationError
from feedpulse.core.logging import get_logger
from feedpulse.core.types import Claims

log = get_logger(__name__)


def extract_bearer_token(request: Request) -> str | None:
    """Return the token from ``Authorization: Bearer <token>``. The scheme is case-insensitive."""
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.strip().partition(" ")
    if scheme.lower() != BEARER_SCHEME:
        return None
    token = token.strip()
    return token or None


def require_bearer_token(request: Request) -> str:
    token = extract_bearer_token(request)
    if token is None:
        log.debug("auth_missing_token", path=request.url.path)
        raise AuthenticationError(MSG_UNAUTHORIZED)
    return token


async def get_current_claims(
    token: str = Depends(require_bearer_token),
    container: ServiceContainer = Depends(get_container),
) -> Claims:
    """Verify the bearer token and return its claims. 401 on absence or invalidity."""
    return container.token_issuer.validate_token(token)
