from __future__ import annotations

from fastapi import HTTPException, status

from turnflow.core.errors import (
    CapabilityNotSupportedError,
    ConversationValidationError,
    ToolTurnLimitError,
    TurnflowError,
)
from turnflow.schemas.common import ErrorResponse

_BAD_REQUEST_CODES = {
    "API_KEY_REQUIRED",
    "PROVIDER_UNSUPPORTED",
    "PROVIDER_MODEL_INVALID",
    "PROVIDER_BASE_URL_MISSING",
    "PROVIDER_INVALID_PARAMETER",
    "SEARCH_ENGINE_ID_REQUIRED",
}


def error_status(exc: TurnflowError) -> int:
    """Map a turnflow error onto an HTTP status code."""

    if isinstance(exc, (ConversationValidationError, ToolTurnLimitError)):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, CapabilityNotSupportedError):
        return status.HTTP_400_BAD_REQUEST
    if exc.code in _BAD_REQUEST_CODES:
        return status.HTTP_400_BAD_REQUEST
    if exc.code == "PROVIDER_RATE_LIMIT" or exc.status_code == 429:
        return status.HTTP_429_TOO_MANY_REQUESTS
    return status.HTTP_502_BAD_GATEWAY


def to_http_exception(exc: TurnflowError) -> HTTPException:
    payload = ErrorResponse(
        code=exc.code,
        message=exc.message,
        phase=exc.phase.value if exc.phase is not None else None,
    )
    return HTTPException(status_code=error_status(exc), detail=payload.model_dump())
