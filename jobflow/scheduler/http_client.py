"""Outbound HTTP client for webhook jobs and steps.

The client is an explicitly owned object handed to the JobExecutor, not
module state. Credentials for third-party APIs live in a BearerTokenAuth
attached to the client, which fetches a token on first use, caches it, and
refreshes it when it is about to expire or when the server answers 401.

Requires no environment variables; OUTBOUND_TIMEOUT_SECONDS overrides the
default 10s request timeout.
"""

import json
import logging
import os
import threading
import time
from typing import Any, Callable, Optional

import httpx

from jobflow.errors import TransportError

logger = logging.getLogger(__name__)

OUTBOUND_TIMEOUT_SECONDS = float(os.environ.get("OUTBOUND_TIMEOUT_SECONDS", "10"))

# fetch_token() -> (token, expires_in_seconds or None)
TokenFetcher = Callable[[], tuple[str, Optional[float]]]


class BearerTokenAuth(httpx.Auth):
    """httpx auth flow with a cached, self-refreshing bearer token."""

    def __init__(self, fetch_token: TokenFetcher, refresh_margin: float = 30.0):
        self._fetch_token = fetch_token
        self._refresh_margin = refresh_margin
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._lock = threading.Lock()

    def _expired(self) -> bool:
        if self._token is None:
            return True
        if self._expires_at is None:
            return False
        return time.monotonic() >= self._expires_at - self._refresh_margin

    def get_token(self, force_refresh: bool = False) -> str:
        with self._lock:
            if force_refresh or self._expired():
                token, expires_in = self._fetch_token()
                self._token = token
                self._expires_at = time.monotonic() + expires_in if expires_in else None
                logger.info("Outbound bearer token refreshed")
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = None

    def auth_flow(self, request: httpx.Request):
        request.headers["Authorization"] = f"Bearer {self.get_token()}"
        response = yield request
        if response.status_code == 401:
            # Token revoked or rotated early: refresh once and replay
            request.headers["Authorization"] = f"Bearer {self.get_token(force_refresh=True)}"
            yield request


def _header_value(value: Any) -> str:
    # Typed placeholders can leave ints, bools or mappings in header values
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value)


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class OutboundClient:
    """Performs one HTTP request per webhook descriptor.

    Non-2xx responses, timeouts, connection errors and requests that cannot
    be built (malformed URL, bad header) all raise TransportError. Header
    values that are not strings are sent as their JSON text. The client
    never retries; retry policy belongs to the job store.
    """

    def __init__(
        self,
        timeout: float = OUTBOUND_TIMEOUT_SECONDS,
        auth: Optional[httpx.Auth] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.timeout = timeout
        self._client = httpx.Client(
            timeout=timeout,
            auth=auth,
            transport=transport,
            follow_redirects=True,
        )

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, Any]] = None,
        body: Any = None,
    ) -> Any:
        """Send the request and return the parsed response body."""
        kwargs: dict[str, Any] = {}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif isinstance(body, bytes):
            kwargs["content"] = body
        elif body is not None:
            kwargs["content"] = str(body)

        headers = {str(k): _header_value(v) for k, v in (headers or {}).items()}

        try:
            response = self._client.request(method.upper(), url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method.upper()} {url} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method.upper()} {url} failed: {e}") from e
        except (httpx.InvalidURL, TypeError, ValueError) as e:
            # Raised while building the request, before anything is sent
            raise TransportError(f"Invalid request {method.upper()} {url}: {e}") from e

        parsed = _parse_body(response)
        if not response.is_success:
            raise TransportError(
                f"Request failed with status code {response.status_code}",
                status_code=response.status_code,
                body=parsed,
            )
        logger.debug(f"{method.upper()} {url} → {response.status_code}")
        return parsed

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
