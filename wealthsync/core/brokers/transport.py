"""Rate-limited HTTP transport shared by broker clients."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from wealthsync.core.brokers.errors import BrokerAPIError, BrokerThrottledError

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
MAX_ATTEMPTS = 2  # Original request plus one retry after a 429
DEFAULT_TIMEOUT_SECONDS = 30.0


class SessionCredentials(Protocol):
    """Anything that can authenticate a request."""

    def auth_headers(self) -> Dict[str, str]: ...

    def auth_cookies(self) -> Dict[str, str]: ...


class RateLimitedTransport:
    """Spaces requests to one broker and retries a throttled request once.

    Requests are serialized through a single lock around the last-request
    time, so concurrent callers on the same transport queue up behind each
    other rather than bursting.
    """

    def __init__(
        self,
        min_interval: float,
        throttle_backoff: float,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = min_interval
        self.throttle_backoff = throttle_backoff
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._last_request: Optional[float] = None

    def _wait_for_slot(self) -> None:
        with self._lock:
            if self._last_request is not None:
                elapsed = self._clock() - self._last_request
                if elapsed < self.min_interval:
                    self._sleep(self.min_interval - elapsed)
            self._last_request = self._clock()

    def request(
        self,
        method: str,
        url: str,
        auth: Optional[SessionCredentials] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send a request, honoring the spacing and throttle rules.

        Args:
            method: HTTP method
            url: Absolute URL
            auth: Broker session whose headers and cookies are attached
            headers: Extra headers for this request
            **kwargs: Passed through to requests (params, data, json, ...)

        Returns:
            The response. Status codes other than 429 are left to the caller.

        Raises:
            BrokerThrottledError: Broker answered 429 twice in a row
            BrokerAPIError: Network failure
        """
        request_headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        cookies = None
        if auth is not None:
            request_headers.update(auth.auth_headers())
            cookies = auth.auth_cookies() or None
        if headers:
            request_headers.update(headers)
        kwargs.setdefault("timeout", self.timeout)

        for attempt in range(MAX_ATTEMPTS):
            self._wait_for_slot()
            try:
                response = self.session.request(
                    method, url, headers=request_headers, cookies=cookies, **kwargs
                )
            except requests.RequestException as e:
                raise BrokerAPIError(f"Request to {url} failed: {e}") from e

            if response.status_code != 429:
                return response

            logger.warning(f"Rate limited by broker on {method} {url} (attempt {attempt + 1})")
            if attempt + 1 < MAX_ATTEMPTS:
                self._sleep(self.throttle_backoff)

        raise BrokerThrottledError(url)

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)
