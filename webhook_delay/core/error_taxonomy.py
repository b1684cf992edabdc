from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any

from aiohttp import ClientConnectionError, ClientError

MAX_ERROR_LENGTH = 500
TRUNCATION_MARKER = "..."


class ErrorCategory(str, Enum):
    TRANSIENT_NETWORK = "transient_network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    CONFIG_INVALID = "config_invalid"
    INTERNAL = "internal"


class TriggerError(RuntimeError):
    """Failure of a single trigger call, tagged with its category."""

    def __init__(self, message: str, *, category: ErrorCategory, status: int | None = None):
        super().__init__(message)
        self.category = category
        self.status = status


_CATEGORY_TO_MESSAGE: dict[ErrorCategory, str] = {
    ErrorCategory.TRANSIENT_NETWORK: "Could not reach the build webhook.",
    ErrorCategory.TIMEOUT: "Build webhook did not respond in time.",
    ErrorCategory.HTTP_STATUS: "Build webhook rejected the request.",
    ErrorCategory.CONFIG_INVALID: "No webhook URL available for execution.",
    ErrorCategory.INTERNAL: "Build webhook call failed due to an internal error.",
}


def classify_exception(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, TriggerError):
        return exc.category
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, (ClientConnectionError, OSError)):
        return ErrorCategory.TRANSIENT_NETWORK
    if isinstance(exc, ClientError):
        return ErrorCategory.TRANSIENT_NETWORK
    return ErrorCategory.INTERNAL


def is_retryable(category: ErrorCategory) -> bool:
    return category is not ErrorCategory.CONFIG_INVALID


def message_for_category(category: ErrorCategory) -> str:
    return _CATEGORY_TO_MESSAGE.get(category, _CATEGORY_TO_MESSAGE[ErrorCategory.INTERNAL])


def describe_error(error: Any) -> str:
    if isinstance(error, BaseException):
        text = str(error)
        if not text:
            category = classify_exception(error)
            text = f"{type(error).__name__}: {message_for_category(category)}"
        return text
    if isinstance(error, str):
        return error
    try:
        return json.dumps(error)
    except (TypeError, ValueError):
        return repr(error)


def truncate_error(error: Any, *, limit: int = MAX_ERROR_LENGTH) -> str:
    message = describe_error(error)
    if len(message) <= limit:
        return message
    return message[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
