"""Authenticated, rate-limit-aware HTTP gateway for the Podio API.

Every remote call in the engine goes through ``PodioHttpClient.request``:

1. Attach ``Authorization: OAuth2 <token>`` from the AuthManager
2. Issue the request on a shared ``requests.Session``
3. Feed the rate-limit headers of the response to the RateLimitTracker
4. On 401 (unless auth was skipped) force a token refresh and repeat the
   call exactly once
5. Turn any other failure into a ``PodioApiError`` and let the retry policy
   decide whether it is transient
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import requests

from .exceptions import PodioApiError
from .retry import DEFAULT_RETRY_CONFIG, RetryConfig, with_retry

if TYPE_CHECKING:
    from .auth import AuthManager
    from .config import PodioConfig
    from .rate_limit import RateLimitTracker

logger: logging.Logger = logging.getLogger(__name__)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(int(value.strip()))
    except ValueError:
        return None


def error_from_response(response: requests.Response) -> PodioApiError:
    """Build a PodioApiError from a non-2xx response."""
    try:
        body: Any = response.json()
    except ValueError:
        body = response.text
    data = body if isinstance(body, dict) else {}
    message = data.get("error_description") or data.get("error") or f"Podio API error: {response.status_code}"
    detail = data.get("error_detail")
    return PodioApiError(
        str(message),
        status_code=response.status_code,
        error_code=data.get("error"),
        error_detail=str(detail) if detail is not None else None,
        response_body=body,
        retry_after=_parse_retry_after(response.headers.get("Retry-After")),
    )


class PodioHttpClient:
    """Gateway to the Podio REST API.

    Usage:
        client = PodioHttpClient(config, auth, tracker)
        app = client.get("/app/123")
    """

    def __init__(
        self,
        config: PodioConfig,
        auth: AuthManager,
        tracker: RateLimitTracker,
        *,
        session: requests.Session | None = None,
        retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._auth = auth
        self.tracker = tracker
        self._session = session or requests.Session()
        self.retry_config = retry_config
        self._sleep = sleep

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: Any = None,
        files: Any = None,
        skip_auth: bool = False,
        raw: bool = False,
        retry_config: RetryConfig | None = None,
    ) -> Any:
        """Perform one API call with authentication, 401 recovery and retries.

        Args:
            method: HTTP method
            path: Path below the API base, e.g. ``/item/123``
            params: Query parameters
            json: JSON body
            data: Form body (used for multipart uploads together with ``files``)
            files: Multipart files, passed through to requests
            skip_auth: Send the request without a token and never refresh on 401
            raw: Return the response bytes instead of parsed JSON
            retry_config: Override the client's retry policy for this call

        Returns:
            Parsed JSON body, None for empty responses, or bytes if ``raw``.

        Raises:
            PodioApiError: When the call fails for good.
        """
        url = f"{self._config.api_base}{path}"
        context = f"{method} {path}"

        def attempt() -> Any:
            response = self._send(method, url, params=params, json=json, data=data, files=files, skip_auth=skip_auth)
            if response.status_code == 401 and not skip_auth:
                logger.info(f"Got 401 for {context}, refreshing token and retrying once")
                self._auth.force_refresh()
                response = self._send(
                    method, url, params=params, json=json, data=data, files=files, skip_auth=skip_auth
                )
            return self._handle_response(response, context, raw=raw)

        return with_retry(
            attempt,
            retry_config or self.retry_config,
            tracker=self.tracker,
            sleep=self._sleep,
            context=context,
        )

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
        data: Any,
        files: Any,
        skip_auth: bool,
    ) -> requests.Response:
        headers: dict[str, str] = {}
        if not skip_auth:
            headers["Authorization"] = f"OAuth2 {self._auth.get_access_token()}"

        logger.debug(f"{method} {url}")
        started = time.monotonic()
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json,
                data=data,
                files=files,
                headers=headers,
                timeout=self._config.request_timeout,
            )
        except requests.RequestException as e:
            msg = f"Network error during {method} {url}: {e}"
            raise PodioApiError(msg) from e
        logger.debug(f"{method} {url} -> {response.status_code} in {time.monotonic() - started:.2f}s")

        self.tracker.update_from_headers(response.headers)
        return response

    def _handle_response(self, response: requests.Response, context: str, *, raw: bool) -> Any:
        if not response.ok:
            error = error_from_response(response)
            logger.debug(f"{context} failed: HTTP {response.status_code} {error}")
            raise error
        if raw:
            return response.content
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            msg = f"Invalid JSON in response to {context}"
            raise PodioApiError(msg, status_code=response.status_code, response_body=response.text) from e

    def get(self, path: str, **kwargs: Any) -> Any:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return self.request("POST", path, json=body, **kwargs)

    def put(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return self.request("PUT", path, json=body, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> Any:
        return self.request("DELETE", path, **kwargs)
