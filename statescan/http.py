"""HTTP client with retry/backoff and per-response accounting hooks."""
from __future__ import annotations

import json
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class RateLimitedError(RuntimeError):
    """The remote service answered 429; callers decide whether to retry."""

    def __init__(self, url: str, retry_after: Optional[float] = None) -> None:
        super().__init__(f"Rate limited by {url}")
        self.url = url
        self.retry_after = retry_after


class RequestCancelled(RuntimeError):
    """The caller's cancel event fired before or during a request."""


class PlacesApiError(RuntimeError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Places API: {status_code} {message}".strip())
        self.status_code = status_code


ResponseHook = Callable[[str, int], None]


class HttpClient:
    def __init__(
        self,
        api_key: str,
        timeout: int = 20,
        retry_max: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        on_response: Optional[ResponseHook] = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.retry_max = max(1, int(retry_max))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.on_response = on_response
        self.session = requests.Session()

    def post_json(
        self,
        url: str,
        body: Dict[str, Any],
        field_mask: str,
        extra_headers: Optional[Dict[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        headers = {
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": field_mask,
            "Content-Type": "application/json",
        }
        if extra_headers:
            headers.update(extra_headers)

        payload = json.dumps(body)
        for attempt in range(1, self.retry_max + 1):
            _raise_if_cancelled(url, cancel_event)
            try:
                resp = self.session.post(url, data=payload, headers=headers, timeout=self.timeout)
            except requests.RequestException:
                if attempt >= self.retry_max:
                    raise
                self._sleep_backoff(attempt, cancel_event)
                continue

            status = resp.status_code
            if self.on_response is not None:
                self.on_response(url, status)
            # A response that lands after cancellation is discarded.
            _raise_if_cancelled(url, cancel_event)

            if status == 200:
                try:
                    data = resp.json()
                except ValueError:
                    logger.error("Non-JSON response from %s", url)
                    raise
                if not isinstance(data, dict):
                    raise PlacesApiError(status, f"unexpected payload type {type(data).__name__}")
                return data

            if status == 429:
                logger.warning("HTTP 429 from %s", url)
                raise RateLimitedError(url, retry_after=_parse_retry_after(resp))

            if status in (500, 502, 503, 504):
                logger.warning("HTTP %s from %s (attempt %s)", status, url, attempt)
                if attempt >= self.retry_max:
                    raise PlacesApiError(status, _error_message(resp))
                self._sleep_backoff(attempt, cancel_event)
                continue

            # Non-retryable
            logger.error("HTTP %s from %s", status, url)
            raise PlacesApiError(status, _error_message(resp))

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _sleep_backoff(self, attempt: int, cancel_event: Optional[threading.Event] = None) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        delay = base + random.uniform(0, self.backoff_base)
        if cancel_event is None:
            time.sleep(delay)
        else:
            cancel_event.wait(delay)


def _raise_if_cancelled(url: str, cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RequestCancelled(f"Request to {url} cancelled")


def _parse_retry_after(resp: requests.Response) -> Optional[float]:
    retry_after = resp.headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return max(0.0, float(retry_after))
    except ValueError:
        return None


def _error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or "")[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return ""
