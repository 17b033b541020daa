"""Shared synchronous REST plumbing for the daemon APIs.

All three API families (admin, market, activity) speak JSON over HTTP to the
same local daemon. :class:`RestClient` owns the ``httpx.Client``, the bearer
app-key header and the retry policy:

* transport failures and 5xx answers are retried with exponential backoff
  ``backoff_base * 2 ** attempt``, then re-raised as :class:`ApiUnreachable`
  or :class:`ApiError`;
* 4xx answers are raised immediately as :class:`ApiError`, callers map the
  interesting statuses (404, 408, 410) to domain outcomes.

Bodies are decoded as JSON when possible; the daemon answers plain ids as JSON
strings (``"f5c2..."``) and some endpoints with an empty body.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from requestor.core.errors import ApiError, ApiUnreachable, CoreError

LOGGER = logging.getLogger(__name__)


class RestClient:
    """Base class for the admin/market/activity clients.

    Parameters
    ----------
    base_url:
        API root, e.g. ``http://127.0.0.1:7465/market-api/v1/``.
    app_key:
        Optional bearer token attached to every request.
    session:
        Optional pre-configured :class:`httpx.Client` (its ``base_url`` is used
        as-is).
    transport:
        Optional :class:`httpx.BaseTransport` for a client built here, e.g.
        ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        base_url: str,
        *,
        app_key: str | None = None,
        session: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 0.25,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url
        self._headers: Dict[str, str] = {"Accept": "application/json"}
        if app_key:
            self._headers["Authorization"] = f"Bearer {app_key}"
        self._owns_client = session is None
        self._client = session or httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._max_retries = max(1, max_retries)
        self._backoff_base = backoff_base
        self._sleep = sleep

    def close(self) -> None:
        """Close the underlying HTTP client if it was created here."""

        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RestClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """Perform an HTTP request with retry/backoff and return the decoded body."""

        kwargs: Dict[str, Any] = {"params": dict(params or {}), "headers": self._headers}
        if json_body is not None:
            kwargs["json"] = json_body
        if timeout is not None:
            kwargs["timeout"] = timeout
        attempt = 0
        while True:
            try:
                response = self._client.request(method, path, **kwargs)
            except httpx.TransportError as exc:
                error: CoreError = ApiUnreachable(f"{method} {self._describe(path)} unreachable: {exc}")
            else:
                if response.is_success:
                    return _decode(response)
                error = ApiError(response.status_code, _error_message(response), _decode(response))
                if response.status_code < 500:
                    raise error
            attempt += 1
            if attempt >= self._max_retries:
                raise error
            LOGGER.warning(
                "%s %s failed (attempt %s/%s): %s",
                method,
                path,
                attempt,
                self._max_retries,
                error,
            )
            self._sleep(self._backoff_base * (2 ** (attempt - 1)))

    def _describe(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


def parse_id(result: Any, key: str) -> str:
    """Ids come back either as a bare JSON string or wrapped in an object."""

    if isinstance(result, str) and result:
        return result.strip('"')
    if isinstance(result, Mapping) and result.get(key):
        return str(result[key])
    raise CoreError(f"Expected {key} in response, got {result!r}")


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(response: httpx.Response) -> str:
    payload = _decode(response)
    if isinstance(payload, Mapping):
        for key in ("message", "error", "reason"):
            if payload.get(key):
                return str(payload[key])
    if payload:
        return str(payload)
    return response.reason_phrase or "no response body"


__all__ = ["RestClient", "parse_id"]
