from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable

import requests

logger = logging.getLogger(__name__)

USER_AGENT = "testflight-pm/0.1 (+https://github.com/)"
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class ApiError(RuntimeError):
    """Raised for HTTP failures that are not worth retrying (or ran out of retries)."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def send_with_retries(
    session: requests.Session,
    method: str,
    url: str,
    *,
    retries: int,
    retry_delay_seconds: float,
    timeout_seconds: float,
    jitter: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> requests.Response:
    """Send a request, retrying connection errors, timeouts, 429 and 5xx responses.

    The delay doubles on every attempt. Any other 4xx response raises ApiError
    immediately so authentication and validation problems surface on the first try.
    """
    last_error = "no attempt made"

    for attempt in range(retries + 1):
        try:
            response = session.request(method, url, timeout=timeout_seconds, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as exc:
            last_error = f"{type(exc).__name__}: {exc}"
        else:
            if response.status_code < 400:
                return response
            message = f"{method} {url} returned {response.status_code}: {_error_text(response)}"
            if response.status_code not in _RETRYABLE_STATUS:
                raise ApiError(message, status=response.status_code)
            last_error = message

        if attempt == retries:
            break

        delay = retry_delay_seconds * 2**attempt
        if jitter:
            delay += random.uniform(0, retry_delay_seconds)
        logger.warning(
            "Request failed (attempt %d/%d), retrying in %.2fs: %s",
            attempt + 1,
            retries + 1,
            delay,
            last_error,
        )
        sleep(delay)

    raise ApiError(f"Request failed after {retries + 1} attempts: {last_error}")


def _error_text(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or response.reason or "").strip()[:300]

    if isinstance(payload, dict):
        if isinstance(payload.get("message"), str):
            return payload["message"]
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            parts = []
            for error in errors:
                if isinstance(error, dict):
                    title = error.get("title") or error.get("message") or ""
                    detail = error.get("detail") or ""
                    parts.append(f"{title}: {detail}" if detail else str(title))
            if parts:
                return "; ".join(parts)
    return str(payload)[:300]
