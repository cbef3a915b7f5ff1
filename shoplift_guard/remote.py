"""Retrying JSON POST shared by the remote judge and remote TTS.

Only 429, 5xx, timeouts and connection errors are retried. Everything else
fails fast so callers can drop to their local strategy.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import requests
from loguru import logger


class RemoteCallError(RuntimeError):
    def __init__(self, message: str, retryable: bool = False, status: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status < 600


def backoff_delay(attempt: int, base_s: float = 1.0, cap_s: float = 5.0) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
    return min(base_s * (2 ** (attempt - 1)), cap_s)


def _post_once(session, url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout_s: float) -> Dict[str, Any]:
    try:
        response = session.post(url, json=payload, headers=headers, timeout=timeout_s)
    except (requests.Timeout, requests.ConnectionError) as e:
        raise RemoteCallError(f"{type(e).__name__}: {e}", retryable=True) from e
    except requests.RequestException as e:
        raise RemoteCallError(f"{type(e).__name__}: {e}") from e

    if response.status_code >= 400:
        raise RemoteCallError(
            f"HTTP {response.status_code}",
            retryable=is_retryable_status(response.status_code),
            status=response.status_code,
        )
    try:
        data = response.json()
    except ValueError as e:
        raise RemoteCallError("Response body is not JSON", status=response.status_code) from e
    if not isinstance(data, dict):
        raise RemoteCallError("Response body is not a JSON object", status=response.status_code)
    return data


def post_json(
    url: str,
    payload: Dict[str, Any],
    api_key: str,
    timeout_s: float,
    max_retries: int = 2,
    backoff_base_s: float = 1.0,
    backoff_cap_s: float = 5.0,
    session=None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """POST `payload` and return the decoded JSON object.

    Raises RemoteCallError after the last attempt, or immediately for a
    non-retryable failure. A negative `max_retries` means a single attempt.
    """
    session = session or requests
    headers = {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}
    attempts = max(0, max_retries) + 1
    attempt = 0
    while True:
        try:
            return _post_once(session, url, payload, headers, timeout_s)
        except RemoteCallError as e:
            attempt += 1
            if not e.retryable or attempt >= attempts:
                raise
            logger.warning(f"Remote call to {url} failed ({e}), retryable")
        delay = backoff_delay(attempt, backoff_base_s, backoff_cap_s)
        logger.debug(f"Retrying {url} in {delay:.1f}s (attempt {attempt + 1}/{attempts})")
        sleep(delay)
