import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from app.core.exceptions import UpstreamError, UpstreamTransientError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = (502, 503)


class RetryingClient:
    """
    Authenticated httpx client for a backend REST API.

    502/503 responses are retried with a linear delay (attempt * retry_delay); any other
    status is handed back to the caller untouched. Once every attempt returned 502/503 the
    call raises UpstreamTransientError. Connection and timeout failures are not retried and
    surface as UpstreamError.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        max_attempts: int = 5,
        retry_delay: float = 3.0,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"}

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def _build(
        self,
        method: str,
        path: str,
        json: Any = None,
        content: Optional[bytes] = None,
        params: Optional[Dict[str, str]] = None,
        content_type: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Request:
        headers = dict(self._headers)
        kwargs: Dict[str, Any] = {"headers": headers, "params": params}
        if content is not None:
            headers["Content-Type"] = content_type or "application/octet-stream"
            kwargs["content"] = content
        elif json is not None:
            kwargs["json"] = json
        if timeout is not None:
            kwargs["timeout"] = timeout
        return self.client.build_request(method, f"{self.base_url}{path}", **kwargs)

    def _send(self, request: httpx.Request, stream: bool) -> httpx.Response:
        if not stream:
            return self.client.send(request)
        response = self.client.send(request, stream=True)
        try:
            if not response.is_success:
                response.read()
        finally:
            response.close()
        return response

    def send_once(self, method: str, path: str, *, timeout: Optional[float] = None) -> httpx.Response:
        """Single attempt, no retry and no error mapping."""
        return self.client.send(self._build(method, path, timeout=timeout))

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        content: Optional[bytes] = None,
        params: Optional[Dict[str, str]] = None,
        content_type: Optional[str] = None,
        timeout: Optional[float] = None,
        stream: bool = False,
    ) -> httpx.Response:
        """
        Send with retries. With stream=True a successful response is closed unread, so
        endpoints that stream indefinitely return as soon as the status line arrives.
        """
        for attempt in range(1, self.max_attempts + 1):
            request = self._build(method, path, json, content, params, content_type, timeout)
            try:
                response = self._send(request, stream)
            except httpx.HTTPError as e:
                logger.error(f"{method} {path} failed before a response arrived: {e}")
                raise UpstreamError(f"{method} {path} failed: {e}") from e
            if response.status_code not in TRANSIENT_STATUS_CODES:
                return response

            body = response.text
            if attempt < self.max_attempts:
                delay = attempt * self.retry_delay
                logger.warning(
                    f"{response.status_code} on {method} {path} (attempt {attempt}/{self.max_attempts}): "
                    f"{body[:200]}; retrying in {delay:g}s"
                )
                self.sleep(delay)
                continue

            logger.error(
                f"{response.status_code} on {method} {path} after {self.max_attempts} attempts, giving up"
            )
            raise UpstreamTransientError(
                f"{method} {path} failed with {response.status_code} after {self.max_attempts} attempts",
                upstream_status=response.status_code,
                body=body,
            )

        raise UpstreamError(f"{method} {path} made no attempts")


def raise_for_upstream(response: httpx.Response, action: str) -> None:
    """Raise UpstreamError with status and body for any non-2xx response."""
    if response.is_success:
        return
    body = response.text
    raise UpstreamError(
        f"Failed to {action} ({response.status_code}): {body}",
        upstream_status=response.status_code,
        body=body,
    )
