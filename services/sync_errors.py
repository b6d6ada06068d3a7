"""Error taxonomy for push/pull and its mapping onto queue error messages."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx


RETRYABLE_PREFIX = "[RETRYABLE]"
PERMANENT_PREFIX = "[PERMANENT]"
CONFLICT_PREFIX = "[CONFLICT]"

RETRYABLE_STATUS = {404, 408, 409, 412, 429, 500, 502, 503, 504}
MAX_ERROR_LENGTH = 1000


class SyncError(Exception):
    """Base class for sync failures."""


class SyncConfigurationError(SyncError):
    """The remote client cannot be used at all; fatal to the whole run."""


class RemoteError(SyncError):
    def __init__(self, message: str, status_code: Optional[int] = None, *, retryable: Optional[bool] = None):
        super().__init__(message)
        self.status_code = status_code
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return classify_error(self).transient


@dataclass(frozen=True)
class ErrorCategory:
    transient: bool
    retry_delay_sec: Optional[int] = None


def _status_of(exc: BaseException) -> int:
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    try:
        return int(status or 0)
    except (TypeError, ValueError):
        return 0


def classify_error(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, RemoteError) and exc._retryable is not None:
        return ErrorCategory(transient=exc._retryable, retry_delay_sec=5 if exc._retryable else None)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorCategory(transient=True, retry_delay_sec=5)
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ErrorCategory(transient=True, retry_delay_sec=5)

    status = _status_of(exc)
    if status == 429:
        return ErrorCategory(transient=True, retry_delay_sec=60)
    if 500 <= status < 600:
        return ErrorCategory(transient=True, retry_delay_sec=10)
    if status in RETRYABLE_STATUS:
        return ErrorCategory(transient=True, retry_delay_sec=2)
    if 400 <= status < 500:
        return ErrorCategory(transient=False)

    message = str(exc).lower()
    if "timeout" in message or "econnreset" in message or "etimedout" in message:
        return ErrorCategory(transient=True, retry_delay_sec=5)
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        # malformed payloads do not get better by resending them
        return ErrorCategory(transient=False)
    return ErrorCategory(transient=True, retry_delay_sec=5)


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) and not str(exc):
        return "Request timed out"
    text = str(exc) or exc.__class__.__name__
    return text


def format_item_error(exc: BaseException) -> str:
    prefix = RETRYABLE_PREFIX if classify_error(exc).transient else PERMANENT_PREFIX
    return f"{prefix} {describe_error(exc)}"[:MAX_ERROR_LENGTH]


def is_auto_retryable(message: Optional[str]) -> bool:
    """Unprefixed messages count as retryable; permanent and conflict ones wait for an operator."""

    if not message:
        return True
    return not (message.startswith(PERMANENT_PREFIX) or message.startswith(CONFLICT_PREFIX))


__all__ = [
    "CONFLICT_PREFIX",
    "ErrorCategory",
    "MAX_ERROR_LENGTH",
    "PERMANENT_PREFIX",
    "RETRYABLE_PREFIX",
    "RemoteError",
    "SyncConfigurationError",
    "SyncError",
    "classify_error",
    "describe_error",
    "format_item_error",
    "is_auto_retryable",
]
