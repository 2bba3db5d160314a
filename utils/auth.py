"""
utils/auth.py
-------------
OAuth2 client-credentials access to the ticketing API, with an in-memory
token cache.

The cache is an explicit object owned by the token provider (one per API
client).  Tokens are refreshed 5 minutes before the upstream expiry (or at
half their lifetime when that is shorter than 10 minutes) and are never
persisted.  Concurrent callers may both refresh; the cache keeps
whichever token expires last, so a late write from an abandoned (timed out)
fetch can never replace a fresher token.
"""

# =========================
# Imports & Config
# =========================
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from utils.api_errors import ApiError, ApiErrorKind, AuthError, ServerError
from utils.resilience import RetryPolicy, retry_with_backoff, with_timeout
from utils.settings import _get_float, _get_int

log = logging.getLogger("utils.auth")

TOKEN_TIMEOUT_S: float   = _get_float("TOKEN_TIMEOUT_S", 10.0)
EXPIRY_MARGIN_S: int     = _get_int("TOKEN_EXPIRY_MARGIN_S", 300)
DEFAULT_EXPIRES_IN: int  = 3600

TOKEN_RETRY = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=5.0)


# =========================
# Token cache
# =========================
@dataclass(frozen=True)
class CachedToken:
    access_token: str
    expires_at: float  # epoch seconds, already reduced by the safety margin


class TokenCache:
    def __init__(self, clock: Callable[[], float] = time.time, margin_s: int = EXPIRY_MARGIN_S) -> None:
        self._clock = clock
        self._margin_s = margin_s
        self._token: Optional[CachedToken] = None

    def get(self) -> Optional[str]:
        """Return the cached token while ``now < expires_at``."""
        tok = self._token
        if tok is not None and self._clock() < tok.expires_at:
            return tok.access_token
        return None

    def put(self, access_token: str, expires_in: Optional[int]) -> CachedToken:
        lifetime = DEFAULT_EXPIRES_IN if expires_in is None else int(expires_in)
        # short-lived tokens keep half their lifetime instead of the full margin
        usable = max(lifetime - self._margin_s, lifetime // 2, 0)
        entry = CachedToken(access_token=access_token, expires_at=self._clock() + usable)
        current = self._token
        if entry.expires_at > self._clock() and (current is None or entry.expires_at >= current.expires_at):
            self._token = entry
        return entry

    def invalidate(self) -> None:
        self._token = None

    @property
    def expires_at(self) -> Optional[float]:
        return self._token.expires_at if self._token else None


# =========================
# Client credentials
# =========================
class ClientCredentialsAuth:
    """Client-credentials flow -> bearer token for the ticketing API."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_url: str,
        client_id: str,
        client_secret: str,
        cache: Optional[TokenCache] = None,
        retry_policy: RetryPolicy = TOKEN_RETRY,
    ) -> None:
        self._http = http
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self.cache = cache or TokenCache()
        self._retry_policy = retry_policy

    async def get_access_token(self) -> str:
        cached = self.cache.get()
        if cached:
            return cached

        try:
            payload = await retry_with_backoff(
                lambda: with_timeout(self._fetch_token(), TOKEN_TIMEOUT_S, "oauth_token"),
                self._retry_policy,
                "oauth_token",
            )
        except AuthError:
            raise
        except Exception as e:
            log.error("oauth_token_failed", extra={"kv": {"error": str(e)}})
            raise AuthError(f"Failed to obtain access token: {e}", status_code=getattr(e, "status_code", 0)) from e

        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthError("Token response did not contain an access_token", endpoint="oauth_token")
        expires_in = payload.get("expires_in")
        entry = self.cache.put(token, expires_in if isinstance(expires_in, (int, float)) else None)
        if self.cache.get() != token:
            log.warning("oauth_token_not_cached", extra={"kv": {"expires_in": expires_in}})
        log.info("oauth_token_refreshed", extra={"kv": {
            "expires_in": expires_in if expires_in is not None else DEFAULT_EXPIRES_IN,
            "expires_at": int(entry.expires_at),
        }})
        return token

    def invalidate(self) -> None:
        self.cache.invalidate()

    async def _fetch_token(self) -> dict:
        data = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        try:
            res = await self._http.post(
                self._token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ApiError(f"Token endpoint unreachable: {type(e).__name__}", endpoint="oauth_token",
                           kind=ApiErrorKind.NETWORK) from e

        if res.status_code >= 500:
            log.warning("oauth_token_http_error", extra={"kv": {"status_code": res.status_code}})
            raise ServerError(f"Token endpoint returned {res.status_code}",
                              status_code=res.status_code, endpoint="oauth_token")
        if res.status_code >= 400:
            # body may echo the client id; keep it out of the message
            log.warning("oauth_token_http_error", extra={"kv": {"status_code": res.status_code}})
            raise AuthError(f"Token endpoint returned {res.status_code}",
                            status_code=res.status_code, endpoint="oauth_token")
        try:
            body = res.json()
        except ValueError as e:
            raise AuthError("Token endpoint returned a non-JSON body", endpoint="oauth_token") from e
        if not isinstance(body, dict):
            raise AuthError("Token endpoint returned an unexpected body", endpoint="oauth_token")
        return body
