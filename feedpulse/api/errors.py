"""Exception handlers — render FeedPulseError as a structured JSON error."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from feedpulse.core.constants import MSG_UNAUTHORIZED
from feedpulse.core.exceptions import AuthenticationError, FeedPulseError, QuotaExceededError
from feedpulse.core.logging import get_logger

log = get_logger(__name__)


def error_body(
    code: str, message: str, details: dict[str, Any] | None = None
) -> dict[str, dict[str, Any]]:
    body: dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    return {"error": body}


async def feedpulse_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, FeedPulseError):
        raise exc

    if isinstance(exc, AuthenticationError):
        # Causes are never revealed to the client.
        code, message = "UNAUTHORIZED", MSG_UNAUTHORIZED
        if exc.code in ("INVALID_CREDENTIALS", "EMAIL_NOT_VERIFIED"):
            code, message = exc.code, exc.message
    else:
        code, message = exc.code, exc.message

    # Quota denials tell the client how far over the plan it is.
    details = dict(exc.context) if isinstance(exc, QuotaExceededError) else None

    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        log.info("request_rejected", path=request.url.path, code=exc.code, status=exc.status_code)

    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, message, details),
        headers=headers,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FeedPulseError, feedpulse_error_handler)
