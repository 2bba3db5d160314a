"""
utils/api_errors.py
-------------------
Transport error taxonomy for outbound HTTP calls (ticketing API, LLM).

Every failure is an ``ApiError`` carrying a closed ``ApiErrorKind``.  The
subclasses exist so callers can narrow with ``except NotFoundError``; code
that needs to branch on every case switches on ``err.kind`` instead.

    404            -> NOT_FOUND  (never retried)
    other 4xx      -> CLIENT     (retried only for 429)
    5xx            -> SERVER     (retried)
    no response    -> NETWORK    (status_code=0, retried)
    token failures -> AUTH       (never retried)
"""

from __future__ import annotations

import enum
from typing import Optional


class ApiErrorKind(str, enum.Enum):
    NETWORK = "network"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    CLIENT = "client"
    SERVER = "server"


class ApiError(Exception):
    """Base error for every outbound API failure."""

    kind: ApiErrorKind = ApiErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        endpoint: Optional[str] = None,
        kind: Optional[ApiErrorKind] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        if self.kind in (ApiErrorKind.NETWORK, ApiErrorKind.SERVER):
            return True
        if self.kind is ApiErrorKind.CLIENT:
            return self.status_code == 429
        return False

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value}, status_code={self.status_code}, "
            f"endpoint={self.endpoint!r}, message={str(self)!r})"
        )


class AuthError(ApiError):
    kind = ApiErrorKind.AUTH


class NotFoundError(ApiError):
    kind = ApiErrorKind.NOT_FOUND

    def __init__(self, message: str, endpoint: Optional[str] = None) -> None:
        super().__init__(message, status_code=404, endpoint=endpoint)


class ClientError(ApiError):
    kind = ApiErrorKind.CLIENT


class ServerError(ApiError):
    kind = ApiErrorKind.SERVER


def error_for_status(status_code: int, endpoint: str, detail: str = "") -> ApiError:
    """Map a non-2xx status onto the matching error type."""
    msg = f"{endpoint} returned {status_code}"
    if detail:
        msg = f"{msg}: {detail}"
    if status_code == 404:
        return NotFoundError(msg, endpoint=endpoint)
    if status_code == 401:
        return AuthError(msg, status_code=status_code, endpoint=endpoint)
    if 400 <= status_code < 500:
        return ClientError(msg, status_code=status_code, endpoint=endpoint)
    return ServerError(msg, status_code=status_code, endpoint=endpoint)
