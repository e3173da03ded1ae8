"""
Exception handlers

Maps the engine's exception tree onto HTTP responses. Provider-side
messages are passed through sanitize_error_message() so credentials or
driver details in a vendor error never reach the client.
"""
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from shipping_engine.core.config import settings
from shipping_engine.core.exceptions import (
    InvalidShippingRequestError,
    ProviderError,
    ProviderNotFoundError,
    ShippingEngineError,
    WebhookVerificationError,
)

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "api_key",
    "license_key",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "sqlite",
    "traceback",
]


def sanitize_error_message(message: str) -> str:
    if settings.DEBUG:
        return message
    lowered = message.lower()
    if any(pattern in lowered for pattern in SENSITIVE_PATTERNS):
        return "An internal error occurred. Please try again later."
    if len(message) > 200:
        return message[:200] + "..."
    return message


def status_for(exc: ShippingEngineError) -> int:
    if isinstance(exc, ProviderNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, InvalidShippingRequestError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, WebhookVerificationError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, ProviderError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def shipping_error_handler(request: Request, exc: ShippingEngineError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"[HTTP] {request.method} {request.url.path} failed: {exc!r}")
    else:
        logger.warning(f"[HTTP] {request.method} {request.url.path} -> {status_code}: {exc.code}")

    body = exc.to_dict()
    body["message"] = sanitize_error_message(exc.message)
    if not settings.DEBUG:
        body.pop("details", None)
    return JSONResponse(status_code=status_code, content={"error": body})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ShippingEngineError, shipping_error_handler)
